# services/capture/sources.py
from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

import cv2
import numpy as np

from services.ingestion.payload import RawImage, SourceKind

logger = logging.getLogger(__name__)

DEFAULT_CAMERA_RESOLUTION: Tuple[int, int] = (1920, 1080)


class CameraUnavailable(RuntimeError):
    """Camera permission denied or no device present."""


def is_image_mime(mime_type: Optional[str]) -> bool:
    return bool(mime_type) and str(mime_type).lower().startswith("image/")


# --- File picker ---
def read_picked_file(path: str | Path, declared_mime: Optional[str] = None) -> Optional[RawImage]:
    """
    Returns None (no-op) for files whose declared type is not an image.
    """
    p = Path(path)
    mime = declared_mime or mimetypes.guess_type(p.name)[0]
    if not is_image_mime(mime):
        logger.info("ignoring non-image file %s (%s)", p.name, mime)
        return None
    return RawImage(data=p.read_bytes(), source_kind=SourceKind.FILE, filename=p.name, mime_type=str(mime))


def picked_upload(filename: str, data: bytes, declared_mime: Optional[str]) -> Optional[RawImage]:
    if not is_image_mime(declared_mime):
        logger.info("ignoring non-image upload %s (%s)", filename, declared_mime)
        return None
    return RawImage(data=data, source_kind=SourceKind.FILE, filename=filename, mime_type=str(declared_mime))


# --- Clipboard ---
@dataclass(frozen=True)
class ClipboardItem:
    mime_type: str
    data: bytes
    name: str = ""


def images_from_clipboard(items: Iterable[ClipboardItem]) -> List[RawImage]:
    out: List[RawImage] = []
    for item in items:
        if not is_image_mime(item.mime_type):
            continue
        out.append(
            RawImage(
                data=item.data,
                source_kind=SourceKind.CLIPBOARD,
                filename=item.name or "pasted-image",
                mime_type=item.mime_type,
            )
        )
    return out


def read_system_clipboard(grab: Optional[Callable[[], Any]] = None) -> List[ClipboardItem]:
    """
    Snapshot the OS clipboard as typed items.

    PIL's grabclipboard yields either one image, a list of file paths, or None.
    """
    if grab is None:
        from PIL import ImageGrab

        grab = ImageGrab.grabclipboard

    content = grab()
    if content is None:
        return []

    if isinstance(content, list):
        items: List[ClipboardItem] = []
        for name in content:
            p = Path(str(name))
            mime = mimetypes.guess_type(p.name)[0] or "application/octet-stream"
            if is_image_mime(mime) and p.is_file():
                items.append(ClipboardItem(mime_type=mime, data=p.read_bytes(), name=p.name))
        return items

    buf = BytesIO()
    content.save(buf, format="PNG")
    return [ClipboardItem(mime_type="image/png", data=buf.getvalue(), name="clipboard.png")]


# --- Camera ---
def capture_filename(now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%fZ")
    return f"capture_{ts}.png"


def draw_alignment_guide(frame: np.ndarray, margin: float = 0.12) -> np.ndarray:
    """Overlay a centered framing rectangle on a preview frame (copy)."""
    out = frame.copy()
    h, w = out.shape[:2]
    dx, dy = int(w * margin), int(h * margin)
    cv2.rectangle(out, (dx, dy), (w - dx, h - dy), (255, 255, 255), 2)
    cv2.line(out, (w // 2 - 20, h // 2), (w // 2 + 20, h // 2), (255, 255, 255), 1)
    cv2.line(out, (w // 2, h // 2 - 20), (w // 2, h // 2 + 20), (255, 255, 255), 1)
    return out


class CameraSession:
    """
    Scoped camera stream: open -> frames/snapshot -> close.

    Use as a context manager; the device is released on every exit path.
    """

    def __init__(
        self,
        device: int | str = 0,
        *,
        resolution: Tuple[int, int] = DEFAULT_CAMERA_RESOLUTION,
        capture_factory: Callable[[int | str], Any] = cv2.VideoCapture,
    ) -> None:
        self.device = device
        self.resolution = resolution
        self._factory = capture_factory
        self._cap: Any = None

    def open(self) -> "CameraSession":
        cap = self._factory(self.device)
        if cap is None or not cap.isOpened():
            if cap is not None:
                cap.release()
            raise CameraUnavailable(f"Camera {self.device!r} could not be opened (no device or permission denied).")
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        self._cap = cap
        return self

    def close(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def __enter__(self) -> "CameraSession":
        return self.open()

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def read_frame(self) -> np.ndarray:
        if self._cap is None:
            raise CameraUnavailable("Camera session is not open.")
        ok, frame = self._cap.read()
        if not ok or frame is None:
            raise CameraUnavailable("Camera returned no frame.")
        return frame

    def frames(self, *, with_guide: bool = True) -> Iterator[np.ndarray]:
        while self._cap is not None:
            frame = self.read_frame()
            yield draw_alignment_guide(frame) if with_guide else frame

    def snapshot(self) -> RawImage:
        frame = self.read_frame()
        ok, buf = cv2.imencode(".png", frame)
        if not ok:
            raise CameraUnavailable("Could not encode camera frame.")
        return RawImage(
            data=buf.tobytes(),
            source_kind=SourceKind.CAMERA,
            filename=capture_filename(),
            mime_type="image/png",
        )
