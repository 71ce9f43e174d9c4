"""Read-time variant selection. Never raises: missing data degrades to the original location."""
import html
import logging
import mimetypes
import re
from typing import Callable, Optional

from mediavariants.conversion.models import FORMAT_MIME, FULL_SIZE, Format
from mediavariants.conversion.store import VariantStore, modern_formats

logger = logging.getLogger("mediavariants.selector")

# Fixed priority, best first
IMAGE_PRIORITY = (Format.AVIF, Format.WEBP)
VIDEO_PRIORITY = (Format.AV1, Format.WEBM)

_WXH = re.compile(r"^(\d+)x(\d+)$")


def build_srcset(entries: list[tuple[str, int]]) -> str:
    return ", ".join(f"{url} {width}w" for url, width in entries)


def _attrs(attrs: dict) -> str:
    parts = []
    for key, value in attrs.items():
        if value is None or value is False:
            continue
        if value is True:
            parts.append(f" {key}")
        else:
            parts.append(f' {key}="{html.escape(str(value), quote=True)}"')
    return "".join(parts)


class VariantSelector:
    """Picks the best stored variant per size: AVIF > WebP > original (AV1 > WebM > original for video)."""

    def __init__(
        self,
        store: Optional[VariantStore] = None,
        dimensions: Optional[Callable[[str], dict]] = None,
    ):
        self.store = store or VariantStore()
        # asset id -> {size name: (width, height)} from the host size registry
        self.dimensions = dimensions or (lambda asset_id: {})

    def _variants(self, asset_id: str, size: str) -> dict:
        try:
            return self.store.get_variants(asset_id, size)
        except Exception as e:
            logger.warning("Variant lookup failed for asset %s size %s: %s", asset_id, size, e)
            return {}

    def select(self, asset_id: str, size: str, original_url: str) -> str:
        files = self._variants(asset_id, size)
        for fmt in IMAGE_PRIORITY:
            variant = files.get(fmt)
            if variant is not None and variant.url:
                return variant.url
        return original_url

    def select_fallback_chain(
        self,
        asset_id: str,
        size: str,
        original_url: str,
        original_mime: Optional[str] = None,
    ) -> list[tuple[str, str]]:
        """Every available modern format in priority order, then the original."""
        files = self._variants(asset_id, size)
        chain = [
            (FORMAT_MIME[fmt], files[fmt].url)
            for fmt in IMAGE_PRIORITY
            if fmt in files and files[fmt].url
        ]
        mime = original_mime or mimetypes.guess_type(original_url)[0] or ""
        chain.append((mime, original_url))
        return chain

    def _all_variants(self, asset_id: str) -> dict:
        try:
            return self.store.get_all_variants(asset_id)
        except Exception as e:
            logger.warning("Variant lookup failed for asset %s: %s", asset_id, e)
            return {}

    def _width_for(self, size: str, dims: dict) -> Optional[int]:
        if size in dims and dims[size] and dims[size][0]:
            return int(dims[size][0])
        match = _WXH.match(size)
        if match:
            return int(match.group(1))
        return None

    def preferred_format(self, asset_id: str) -> Optional[Format]:
        """Modern format present at the most sizes; ties go to the higher-priority format."""
        variants = self._all_variants(asset_id)
        best, best_count = None, 0
        for fmt in IMAGE_PRIORITY:
            count = sum(1 for files in variants.values() if fmt in files)
            if count > best_count:
                best, best_count = fmt, count
        return best

    def build_responsive_set(self, asset_id: str) -> list[tuple[str, int]]:
        """(url, width) per size holding the preferred format, ascending by width. Sizes without a known width are left out."""
        variants = self._all_variants(asset_id)
        fmt = self.preferred_format(asset_id)
        if fmt is None:
            return []
        dims = self.dimensions(asset_id) or {}
        entries: dict[int, str] = {}
        for size, files in variants.items():
            variant = files.get(fmt)
            if variant is None:
                continue
            width = self._width_for(size, dims)
            if width is None:
                logger.debug("No width for size %s of asset %s", size, asset_id)
                continue
            entries.setdefault(width, variant.url)
        return sorted(((url, width) for width, url in entries.items()), key=lambda e: e[1])

    def render_picture(
        self,
        asset_id: str,
        size: str,
        original_url: str,
        alt: str = "",
        img_attrs: Optional[dict] = None,
    ) -> str:
        """<picture> with one <source> per modern format and the original <img> as the last resort."""
        files = self._variants(asset_id, size)
        responsive = self.build_responsive_set(asset_id)
        preferred = self.preferred_format(asset_id)
        sources = []
        for fmt in IMAGE_PRIORITY:
            variant = files.get(fmt)
            if variant is None:
                continue
            srcset = build_srcset(responsive) if fmt is preferred and len(responsive) > 1 else variant.url
            sources.append(f"<source{_attrs({'type': FORMAT_MIME[fmt], 'srcset': srcset})}>")
        img = f"<img{_attrs({'src': original_url, 'alt': alt, **(img_attrs or {})})}>"
        if not sources:
            return img
        return "<picture>" + "".join(sources) + img + "</picture>"

    def select_video(self, asset_id: str, original_url: str) -> str:
        files = self._variants(asset_id, FULL_SIZE)
        for fmt in VIDEO_PRIORITY:
            variant = files.get(fmt)
            if variant is not None and variant.url:
                return variant.url
        return original_url

    def video_sources(self, asset_id: str, original_url: str, original_mime: Optional[str] = None) -> list[tuple[str, str]]:
        files = self._variants(asset_id, FULL_SIZE)
        chain = [(FORMAT_MIME[fmt], files[fmt].url) for fmt in VIDEO_PRIORITY if fmt in files]
        chain.append((original_mime or mimetypes.guess_type(original_url)[0] or "", original_url))
        return chain

    def render_video(self, asset_id: str, original_url: str, hybrid: bool = True, attrs: Optional[dict] = None) -> str:
        """<video> with <source> alternatives (hybrid) or a single best src."""
        attrs = dict(attrs or {"controls": True})
        if not hybrid:
            return f"<video{_attrs({**attrs, 'src': self.select_video(asset_id, original_url)})}></video>"
        sources = []
        for mime, url in self.video_sources(asset_id, original_url):
            sources.append(f"<source{_attrs({'src': url, 'type': mime or None})}>")
        return f"<video{_attrs(attrs)}>" + "".join(sources) + "</video>"
