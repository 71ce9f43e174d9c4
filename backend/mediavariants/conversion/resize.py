"""Resize images to registered size boxes (keep aspect, or centre crop), including animated frames."""
import logging
from typing import Optional, Tuple

from PIL import Image, ImageSequence

logger = logging.getLogger("mediavariants.resize")


def normalize_mode(img: Image.Image) -> Image.Image:
    """RGB or RGBA, keeping transparency when the source has any."""
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA")
    return img.convert("RGB")


def target_dimensions(
    width: int,
    height: int,
    max_width: int,
    max_height: int,
    crop: bool = False,
) -> Optional[Tuple[int, int]]:
    """
    Dimensions of the rendition for a (max_width, max_height) box, or None when the
    source already fits (renditions are never upscaled). 0 means unbounded.
    """
    if width <= 0 or height <= 0:
        return None
    if crop and max_width > 0 and max_height > 0:
        if width <= max_width and height <= max_height:
            return None
        return (min(width, max_width), min(height, max_height))
    scales = []
    if max_width > 0:
        scales.append(max_width / width)
    if max_height > 0:
        scales.append(max_height / height)
    if not scales:
        return None
    scale = min(scales)
    if scale >= 1:
        return None
    return (max(1, int(round(width * scale))), max(1, int(round(height * scale))))


def resize_to_fit(img: Image.Image, target_width: int, target_height: int) -> Image.Image:
    """Centre-crop the source so it covers exactly (target_width, target_height)."""
    w, h = img.size
    tw, th = target_width, target_height
    if w == tw and h == th:
        return img.copy()
    scale = max(tw / w, th / h)
    new_w, new_h = max(tw, int(round(w * scale))), max(th, int(round(h * scale)))
    resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    left = (new_w - tw) // 2
    top = (new_h - th) // 2
    return resized.crop((left, top, left + tw, top + th))


def resize_keep_aspect(
    img: Image.Image,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
) -> Image.Image:
    """
    Scale image to fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    """
    w, h = img.size
    if not target_width and not target_height:
        return img.copy()
    if target_width and target_height:
        scale = min(target_width / w, target_height / h)
    elif target_width:
        scale = target_width / w
    else:
        scale = target_height / h
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    return img.resize((new_w, new_h), Image.Resampling.LANCZOS)


def resize_for_size(img: Image.Image, width: int, height: int, crop: bool = False) -> Image.Image:
    """Resize one frame for a registered size box. Returns a copy when no resize is needed."""
    dims = target_dimensions(img.width, img.height, width or 0, height or 0, crop)
    if dims is None:
        return img.copy()
    if crop and width and height:
        return resize_to_fit(img, dims[0], dims[1])
    return resize_keep_aspect(img, dims[0], dims[1])


def resize_frames(img: Image.Image, width: int, height: int, crop: bool = False) -> list[Image.Image]:
    """Every frame of an animated image resized for a size box."""
    frames = []
    for frame in ImageSequence.Iterator(img):
        frames.append(resize_for_size(normalize_mode(frame.copy()), width, height, crop))
    logger.debug("Resized %d frames to box %sx%s", len(frames), width, height)
    return frames
