from .models import Format, JobState, MediaKind, PassResult, Variant

__all__ = ["Format", "JobState", "MediaKind", "PassResult", "Variant"]
