"""Exceptions raised by the variant engine."""


class VariantError(Exception):
    pass


class StoreError(VariantError):
    """Metadata could not be read or written. Aborts the conversion pass."""


class EncodeError(VariantError):
    """An encoder ran and failed for one (size, format)."""


class SourceMissingError(VariantError):
    pass


class AssetNotFoundError(VariantError):
    pass
