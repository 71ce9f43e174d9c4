"""Animated GIF detection."""
import logging
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("mediavariants.gif")

MAX_SCAN_BYTES = 50 * 1024 * 1024
GIF_SIGNATURES = (b"GIF87a", b"GIF89a")


def is_animated_gif(path: Path) -> bool:
    """True when path is a GIF with more than one frame. Unreadable or oversized files count as static."""
    path = Path(path)
    try:
        if not path.is_file():
            return False
        if path.stat().st_size > MAX_SCAN_BYTES:
            logger.warning("Skipping animation check for %s: larger than %s bytes", path.name, MAX_SCAN_BYTES)
            return False
        with open(path, "rb") as f:
            if f.read(6) not in GIF_SIGNATURES:
                return False
        with Image.open(path) as img:
            return bool(getattr(img, "is_animated", False)) and getattr(img, "n_frames", 1) > 1
    except (OSError, EOFError, UnidentifiedImageError) as e:
        logger.warning("Could not inspect GIF %s: %s", path, e)
        return False
