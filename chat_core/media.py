from __future__ import annotations

import base64
from pathlib import Path

from .types import ImagePart, TextPart

_FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff", "svg": "svg+xml"}


def image_format_for(path: str | Path) -> str:
    suffix = Path(path).suffix.lower().lstrip(".")
    if not suffix:
        raise ValueError(f"Cannot infer image format from file name: {path}")
    return _FORMAT_ALIASES.get(suffix, suffix)


def image_data_url(path: str | Path, image_format: str | None = None) -> str:
    """Read an image file and return it as a ``data:image/...;base64,...`` URL."""
    image_path = Path(path)
    if not image_path.is_file():
        raise FileNotFoundError(f"Could not read image file: {image_path}")
    fmt = image_format.lower().lstrip(".") if image_format else image_format_for(image_path)
    fmt = _FORMAT_ALIASES.get(fmt, fmt)
    encoded = base64.b64encode(image_path.read_bytes()).decode("ascii")
    return f"data:image/{fmt};base64,{encoded}"


def image_question(question: str, path: str | Path, *, detail: str = "low") -> tuple[TextPart, ImagePart]:
    return (TextPart(text=question), ImagePart(url=image_data_url(path), detail=detail))
