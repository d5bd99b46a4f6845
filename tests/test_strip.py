"""Comic strip layout and reference image handling."""

import pytest
from PIL import Image

from comicgen import InvalidInputError, create_comic_strip, encode_reference_image
from conftest import make_png


class TestCreateComicStrip:

    def test_two_by_two_canvas(self):
        strip = create_comic_strip([make_png()] * 4, panel_size=32)
        # 2 * 32 + 12 spacing + 2 * 20 margin
        assert strip.size == (116, 116)
        assert strip.mode == "RGB"

    def test_missing_panels_become_placeholders(self):
        strip = create_comic_strip([make_png((255, 0, 0)), None, b"not an image", None], panel_size=32)
        assert strip.size == (116, 116)
        # first panel keeps its colour, second is a grey placeholder
        assert strip.getpixel((20 + 16, 20 + 16)) == (255, 0, 0)
        assert strip.getpixel((20 + 32 + 12 + 1, 21)) == (235, 235, 235)

    def test_odd_count_adds_a_row(self):
        strip = create_comic_strip([make_png()] * 3, panel_size=32)
        assert strip.size == (116, 116)

    def test_non_square_images_are_cropped_to_fill(self):
        wide = make_png((0, 255, 0), (64, 16))
        strip = create_comic_strip([wide], panel_size=32)
        assert strip.getpixel((20, 20)) == (0, 255, 0)
        assert strip.getpixel((20 + 31, 20 + 31)) == (0, 255, 0)


class TestEncodeReferenceImage:

    def test_png(self, reference_png):
        b64, mime = encode_reference_image(reference_png, "ref.png")
        assert mime == "image/png"
        assert b64.isascii()

    def test_jpeg_detected_from_content(self, tmp_path):
        path = tmp_path / "photo.bin"
        Image.new("RGB", (8, 8), "blue").save(path, format="JPEG")
        _, mime = encode_reference_image(path.read_bytes(), path.name)
        assert mime == "image/jpeg"

    @pytest.mark.parametrize("data", [b"", b"definitely not an image"])
    def test_rejects_garbage(self, data):
        with pytest.raises(InvalidInputError):
            encode_reference_image(data, "x.png")
