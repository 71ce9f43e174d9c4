"""Variant, asset and pass-result models."""
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class Format(str, Enum):
    WEBP = "webp"
    AVIF = "avif"
    AV1 = "av1"
    WEBM = "webm"
    ORIGINAL = "original"

    @property
    def mime(self) -> str:
        return FORMAT_MIME.get(self, "")

    @property
    def media_kind(self) -> Optional[MediaKind]:
        if self in IMAGE_FORMATS:
            return MediaKind.IMAGE
        if self in VIDEO_FORMATS:
            return MediaKind.VIDEO
        return None

    @classmethod
    def parse(cls, value: str) -> Optional["Format"]:
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return None


class JobState(str, Enum):
    NONE = "none"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Job states that mean "a pass is already in flight for this asset"
BLOCKING_JOB_STATES = (JobState.QUEUED, JobState.PROCESSING)

IMAGE_FORMATS = (Format.WEBP, Format.AVIF)
VIDEO_FORMATS = (Format.AV1, Format.WEBM)

FORMAT_MIME = {
    Format.WEBP: "image/webp",
    Format.AVIF: "image/avif",
    Format.AV1: "video/mp4; codecs=av01",
    Format.WEBM: "video/webm",
}

# Output file suffix appended to the source stem
FORMAT_SUFFIX = {
    Format.WEBP: ".webp",
    Format.AVIF: ".avif",
    Format.AV1: ".av1.mp4",
    Format.WEBM: ".webm",
}

FULL_SIZE = "full"


def parse_formats(values, kind: Optional[MediaKind] = None) -> list[Format]:
    """Known formats from values, de-duplicated in order; restricted to kind when given."""
    out: list[Format] = []
    for v in values or []:
        fmt = v if isinstance(v, Format) else Format.parse(str(v))
        if fmt is None or fmt is Format.ORIGINAL or fmt in out:
            continue
        if kind is not None and fmt.media_kind is not kind:
            continue
        out.append(fmt)
    return out


def same_path(a: Path, b: Path) -> bool:
    return Path(a).resolve() == Path(b).resolve()


def output_path_for(source: Path, fmt: Format, *taken: Path) -> Path:
    """Variant path beside source: photo.jpg -> photo.webp. When that would be source itself
    or one of taken (an upload already in the target format), keep the full name: pic.webp -> pic.webp.webp."""
    suffix = FORMAT_SUFFIX[fmt]
    dest = source.with_name(source.stem + suffix)
    if any(same_path(dest, p) for p in (source, *taken)):
        dest = source.with_name(source.name + suffix)
    return dest


@dataclass
class Variant:
    format: Format
    url: str
    filesize: int = 0

    def to_dict(self) -> dict:
        return {"url": self.url, "filesize": self.filesize}


@dataclass
class ConversionState:
    disabled: bool = False
    last_converted_at: Optional[str] = None


@dataclass
class EncodeOptions:
    """Parameters handed to an encoder. Values are already clamped to the encoder's domain."""
    quality: Optional[int] = None
    speed: Optional[int] = None
    crf: Optional[int] = None
    lossless: bool = False
    # Resize hints (animated sources are encoded from the full-size file)
    width: Optional[int] = None
    height: Optional[int] = None
    crop: bool = False
    animated: bool = False


@dataclass
class SizeRendition:
    file: str
    width: int
    height: int


@dataclass
class Asset:
    asset_id: str
    file_path: str
    media_kind: MediaKind
    mime_type: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    sizes: dict[str, SizeRendition] = field(default_factory=dict)
    job_state: JobState = JobState.NONE
    created_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "Asset":
        sizes = {
            name: SizeRendition(file=s["file"], width=int(s["width"]), height=int(s["height"]))
            for name, s in (row.get("sizes") or {}).items()
            if isinstance(s, dict) and s.get("file")
        }
        try:
            job_state = JobState(row.get("job_state") or "none")
        except ValueError:
            job_state = JobState.NONE
        return cls(
            asset_id=row["asset_id"],
            file_path=row["file_path"],
            media_kind=MediaKind(row["media_kind"]),
            mime_type=row.get("mime_type"),
            width=row.get("width"),
            height=row.get("height"),
            sizes=sizes,
            job_state=job_state,
            created_at=row.get("created_at"),
        )

    def to_dict(self) -> dict:
        d = asdict(self)
        d["media_kind"] = self.media_kind.value
        d["job_state"] = self.job_state.value
        return d


@dataclass
class PassResult:
    success: bool = False
    converted_formats: list[Format] = field(default_factory=list)
    converted_locations: dict[Format, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    cleanup_happened: bool = False
    skipped: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "converted_formats": [f.value for f in self.converted_formats],
            "converted_locations": {f.value: loc for f, loc in self.converted_locations.items()},
            "errors": list(self.errors),
            "cleanup_happened": self.cleanup_happened,
            "skipped": self.skipped,
        }
