from __future__ import annotations

import base64
from io import BytesIO

import pytest
from PIL import Image

from layrr.bridge.screenshot import ScreenshotError, ScreenshotStore, decode_screenshot


def _encode(fmt: str, size: tuple[int, int] = (8, 5)) -> str:
    buf = BytesIO()
    Image.new("RGB", size, (10, 120, 250)).save(buf, format=fmt)
    return base64.b64encode(buf.getvalue()).decode("ascii")


def test_decode_png_with_data_url_prefix() -> None:
    shot = decode_screenshot("data:image/png;base64," + _encode("PNG"))

    assert (shot.width, shot.height, shot.format) == (8, 5, "PNG")
    assert shot.describe().startswith("PNG 8x5 (")


@pytest.mark.parametrize("raw", ["", "   ", "data:image/png;base64,", base64.b64encode(b"plain text").decode()])
def test_decode_rejects_non_images(raw: str) -> None:
    with pytest.raises(ScreenshotError):
        decode_screenshot(raw)


def test_store_writes_png_as_is(tmp_path) -> None:  # noqa: ANN001
    shot = decode_screenshot(_encode("PNG"))

    path = ScreenshotStore(tmp_path / "shots").save(7, shot)

    assert path.name == "selection-7.png"
    assert path.read_bytes() == shot.data


def test_store_converts_jpeg_to_png(tmp_path) -> None:  # noqa: ANN001
    shot = decode_screenshot(_encode("JPEG", (16, 9)))
    assert shot.format == "JPEG"

    path = ScreenshotStore(tmp_path).save(9, shot)

    with Image.open(path) as img:
        assert img.format == "PNG"
        assert img.size == (16, 9)
