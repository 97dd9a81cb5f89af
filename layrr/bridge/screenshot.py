from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger("layrr.bridge.screenshot")


class ScreenshotError(ValueError):
    pass


@dataclass(frozen=True)
class Screenshot:
    data: bytes
    width: int
    height: int
    format: str

    def describe(self) -> str:
        return f"{self.format} {self.width}x{self.height} ({len(self.data)} bytes)"


def decode_screenshot(raw: str) -> Screenshot:
    """Decode a base64 (optionally data-URL prefixed) screenshot and validate it."""
    text = (raw or "").strip()
    if text.startswith("data:"):
        _, _, text = text.partition(",")
    if not text:
        raise ScreenshotError("empty screenshot")

    try:
        data = base64.b64decode(text, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ScreenshotError(f"screenshot is not valid base64: {exc}") from exc

    try:
        with Image.open(BytesIO(data)) as img:
            img.verify()
        # verify() invalidates the image; reopen for metadata.
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
            fmt = str(img.format or "unknown").upper()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ScreenshotError(f"screenshot is not a readable image: {exc}") from exc

    return Screenshot(data=data, width=int(width), height=int(height), format=fmt)


class ScreenshotStore:
    """Keeps selection screenshots next to each other for later inspection."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def save(self, request_id: int, shot: Screenshot) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"selection-{int(request_id)}.png"
        if shot.format == "PNG":
            path.write_bytes(shot.data)
        else:
            with Image.open(BytesIO(shot.data)) as img:
                img.save(path, format="PNG")
        logger.info("screenshot_saved id=%s path=%s", request_id, path)
        return path
