from PIL import Image

from conftest import make_animated_gif, make_image
from mediavariants.conversion.gif import is_animated_gif
from mediavariants.conversion.resize import normalize_mode, resize_for_size, resize_frames, target_dimensions


def test_target_dimensions():
    assert target_dimensions(1200, 800, 300, 300) == (300, 200)
    assert target_dimensions(1200, 800, 768, 0) == (768, 512)
    assert target_dimensions(1200, 800, 0, 0) is None
    assert target_dimensions(1200, 800, 150, 150, crop=True) == (150, 150)
    assert target_dimensions(100, 80, 150, 150, crop=True) is None
    assert target_dimensions(200, 100, 150, 150, crop=True) == (150, 100)
    assert target_dimensions(100, 80, 300, 300) is None


def test_resize_for_size_crops_and_fits():
    img = Image.new("RGB", (1200, 800))
    assert resize_for_size(img, 150, 150, crop=True).size == (150, 150)
    assert resize_for_size(img, 300, 300).size == (300, 200)
    assert resize_for_size(img, 2000, 2000).size == (1200, 800)


def test_normalize_mode_keeps_transparency():
    assert normalize_mode(Image.new("LA", (4, 4))).mode == "RGBA"
    assert normalize_mode(Image.new("L", (4, 4))).mode == "RGB"
    assert normalize_mode(Image.new("CMYK", (4, 4))).mode == "RGB"


def test_resize_frames(tmp_path):
    path = make_animated_gif(tmp_path / "anim.gif", size=(400, 200), frames=4)
    with Image.open(path) as img:
        frames = resize_frames(img, 100, 100, crop=True)
    assert len(frames) == 4
    assert all(f.size == (100, 100) for f in frames)


def test_is_animated_gif(tmp_path):
    animated = make_animated_gif(tmp_path / "anim.gif")
    still = make_image(tmp_path / "still.gif", size=(50, 50), fmt="GIF")
    jpeg = make_image(tmp_path / "photo.jpg", size=(50, 50))

    assert is_animated_gif(animated)
    assert not is_animated_gif(still)
    assert not is_animated_gif(jpeg)
    assert not is_animated_gif(tmp_path / "missing.gif")
