# services/ingestion/payload.py
from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

PERMITTED_MIME_TYPES: Tuple[str, ...] = ("image/jpeg", "image/png", "image/webp")

_DATA_URL_RE = re.compile(r"^data:image/([A-Za-z0-9.+-]+);base64,(.+)$", re.DOTALL)


class SourceKind(str, Enum):
    FILE = "file"
    CLIPBOARD = "clipboard"
    CAMERA = "camera"


@dataclass(frozen=True)
class RawImage:
    """Unprocessed bytes as handed over by a capture source."""

    data: bytes
    source_kind: SourceKind
    filename: str = ""
    mime_type: str = ""


@dataclass(frozen=True)
class ImagePayload:
    mime_type: str
    data: bytes
    width: int = 0
    height: int = 0
    source: Optional[RawImage] = None

    def to_data_url(self) -> str:
        b64 = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{b64}"

    @classmethod
    def from_data_url(cls, data_url: str) -> "ImagePayload":
        subtype, data = parse_data_url(data_url)
        return cls(mime_type=f"image/{subtype}", data=data)


def parse_data_url(data_url: str) -> Tuple[str, bytes]:
    """
    Split 'data:image/<subtype>;base64,<payload>' into (subtype, decoded bytes).

    Raises ValueError for anything that is not a base64 image data-URL.
    """
    if not isinstance(data_url, str):
        raise ValueError("data-URL must be a string")
    m = _DATA_URL_RE.match(data_url.strip())
    if not m:
        raise ValueError("not an image data-URL")
    subtype = m.group(1).lower()
    try:
        data = base64.b64decode(m.group(2), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e
    if not data:
        raise ValueError("empty image payload")
    return subtype, data
