"""
Crop-and-zoom geometry for hole layout uploads.

`CropSession` models the upload overlay: a fixed-aspect viewport over an image
scaled to cover it, a zoom factor in [1, 3], and a pan offset measured from
the viewport centre. Offsets are clamped so the image always covers the
viewport. On confirm the viewport is mapped back into the image's natural
pixel space, and the raster helpers cut and re-encode that region with Pillow.

Browsers run the same model interactively; the server replays it for clients
that submit crop parameters instead of a pre-cropped file.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

DEFAULT_ASPECT = 3 / 4
MIN_ZOOM = 1.0
MAX_ZOOM = 3.0
MAX_OUTPUT_EDGE = 2000
MAX_UPLOAD_BYTES = 10 * 1024 * 1024
DEFAULT_CONTAINER_WIDTH = 640
MIN_VIEWPORT_HEIGHT = 100
# Overlay padding above and below the viewport (p-4 top + bottom).
OVERLAY_VERTICAL_PADDING = 32
ENCODE_QUALITY = 92

DEFAULT_OUTPUT_TYPE = "image/jpeg"
PIL_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/pjpeg": "JPEG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
}
_STRIP_EXTENSION = re.compile(r"\.(png|jpg|jpeg|gif|webp)$", re.IGNORECASE)


class CropError(ValueError):
    """Raised when an image cannot be decoded, cropped or encoded."""


class FileTooLargeError(ValueError):
    """Raised for uploads over the 10 MB limit."""


def validate_file_size(size: int | None) -> None:
    if size and size > MAX_UPLOAD_BYTES:
        raise FileTooLargeError("File must be 10MB or smaller.")


def _round(value: float) -> int:
    """Round half up, like the browser's Math.round."""
    return int(math.floor(value + 0.5))


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def parse_aspect(value, default: float) -> float:
    """Accept "a:b", a numeric string or a number. Anything unusable yields `default`."""
    if value is None or value == "":
        return default
    if isinstance(value, str) and ":" in value:
        try:
            a, b = (float(n) for n in value.split(":", 1))
        except ValueError:
            return default
        return a / b if a > 0 and b > 0 else default
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        return default
    return ratio if ratio > 0 and not math.isnan(ratio) else default


@dataclass(slots=True, frozen=True)
class Rect:
    """Axis-aligned rectangle in screen (CSS) pixels."""

    left: float
    top: float
    width: float
    height: float

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0


@dataclass(slots=True, frozen=True)
class CropRect:
    """Crop region in the image's natural pixel space."""

    left: int
    top: int
    width: int
    height: int

    @property
    def box(self) -> Tuple[int, int, int, int]:
        return (self.left, self.top, self.left + self.width, self.top + self.height)


class CropSession:
    """State of one crop overlay, from image load until confirm or cancel."""

    def __init__(
        self,
        natural_width: int,
        natural_height: int,
        aspect: float = DEFAULT_ASPECT,
        viewport_width: int = 0,
        viewport_height: int = 0,
    ) -> None:
        self.natural_width = natural_width
        self.natural_height = natural_height
        self.aspect = aspect
        self.viewport_width = viewport_width
        self.viewport_height = viewport_height
        self.offset_x = 0.0
        self.offset_y = 0.0
        self.zoom = 1.0
        self.scale = 1.0
        self.dragging = False
        self._start_x = 0.0
        self._start_y = 0.0
        self._container: Optional[Tuple[int, int, int, int]] = None
        self.active = True
        if viewport_width and viewport_height:
            self.fit()

    def layout_viewport(
        self,
        container_width: int,
        overlay_height: int,
        controls_height: int = 0,
        actions_height: int = 0,
        reset_offsets: bool = False,
    ) -> Tuple[int, int]:
        """
        Size the viewport to the aspect ratio within the available space.

        Full container width is tried first; if that is too tall the height is
        capped and the width derived from it. Call again on window resize.
        """
        self._container = (container_width, overlay_height, controls_height, actions_height)
        max_width = container_width or DEFAULT_CONTAINER_WIDTH
        available_height = max(
            MIN_VIEWPORT_HEIGHT,
            overlay_height - controls_height - actions_height - OVERLAY_VERTICAL_PADDING,
        )

        width = max_width
        height = _round(max_width / self.aspect)
        if height > available_height:
            height = available_height
            width = _round(height * self.aspect)

        self.viewport_width, self.viewport_height = width, height
        self.fit(reset_offsets=reset_offsets)
        return width, height

    def set_aspect(self, value) -> float:
        """Change the viewport ratio, re-layout and recentre the image."""
        self.aspect = parse_aspect(value, self.aspect)
        if self._container is not None:
            self.layout_viewport(*self._container, reset_offsets=True)
        else:
            self.fit()
        return self.aspect

    def fit(self, reset_offsets: bool = True) -> None:
        """Scale to cover the viewport times zoom, then clamp the pan offset."""
        w0 = self.natural_width or 1
        h0 = self.natural_height or 1
        base_scale = max(self.viewport_width / w0, self.viewport_height / h0)
        self.scale = base_scale * self.zoom
        if reset_offsets:
            self.offset_x = 0.0
            self.offset_y = 0.0
        max_x, max_y = self.max_offsets()
        self.offset_x = _clamp(self.offset_x, -max_x, max_x)
        self.offset_y = _clamp(self.offset_y, -max_y, max_y)

    def max_offsets(self) -> Tuple[float, float]:
        w0 = self.natural_width or 1
        h0 = self.natural_height or 1
        max_x = max(0.0, (w0 * self.scale) / 2 - self.viewport_width / 2)
        max_y = max(0.0, (h0 * self.scale) / 2 - self.viewport_height / 2)
        return max_x, max_y

    def set_zoom(self, value) -> float:
        try:
            zoom = float(value)
        except (TypeError, ValueError):
            zoom = 0.0
        if not zoom or math.isnan(zoom):
            zoom = 1.0
        self.zoom = _clamp(zoom, MIN_ZOOM, MAX_ZOOM)
        self.fit(reset_offsets=False)
        return self.zoom

    def pan_to(self, offset_x: float, offset_y: float) -> None:
        self.offset_x = offset_x
        self.offset_y = offset_y
        self.fit(reset_offsets=False)

    def pointer_down(self, x: float, y: float) -> None:
        self.dragging = True
        self._start_x = x
        self._start_y = y

    def pointer_move(self, x: float, y: float) -> bool:
        """Accumulate the delta since the last event. Returns False when not dragging."""
        if not self.dragging:
            return False
        self.offset_x += x - self._start_x
        self.offset_y += y - self._start_y
        self._start_x = x
        self._start_y = y
        self.fit(reset_offsets=False)
        return True

    def pointer_up(self) -> None:
        self.dragging = False

    def transform(self) -> Dict[str, float | str]:
        """Centre-based transform with the origin at the image's top-left corner."""
        css = (
            f"translate(calc(50% + {self.offset_x}px), calc(50% + {self.offset_y}px)) "
            f"translate(-50%, -50%) scale({self.scale})"
        )
        return {
            "offset_x": self.offset_x,
            "offset_y": self.offset_y,
            "scale": self.scale,
            "css": css,
        }

    def crop_rect(self, image_rect: Rect | None = None, viewport_rect: Rect | None = None) -> CropRect:
        """
        Map the viewport into the image's natural pixel space.

        Measured on-screen rects are preferred because they include whatever
        rounding the renderer applied. When either rect is missing or empty
        (hidden element), the scale/offset model is used instead.
        """
        if image_rect is None or viewport_rect is None or image_rect.is_empty or viewport_rect.is_empty:
            return self._analytic_crop_rect()

        w0, h0 = self.natural_width, self.natural_height
        css_to_img_x = w0 / image_rect.width
        css_to_img_y = h0 / image_rect.height
        left = _round((viewport_rect.left - image_rect.left) * css_to_img_x)
        top = _round((viewport_rect.top - image_rect.top) * css_to_img_y)
        width = _round(viewport_rect.width * css_to_img_x)
        height = _round(viewport_rect.height * css_to_img_y)

        left = int(_clamp(left, 0, w0 - 1))
        top = int(_clamp(top, 0, h0 - 1))
        if left + width > w0:
            width = w0 - left
        if top + height > h0:
            height = h0 - top
        return CropRect(left=left, top=top, width=width, height=height)

    def _analytic_crop_rect(self) -> CropRect:
        w0, h0 = self.natural_width, self.natural_height
        vw, vh = self.viewport_width, self.viewport_height
        s = self.scale or 1
        u0 = w0 / 2 + (-vw / 2 - self.offset_x) / s
        v0 = h0 / 2 + (-vh / 2 - self.offset_y) / s
        u1 = w0 / 2 + (vw / 2 - self.offset_x) / s
        v1 = h0 / 2 + (vh / 2 - self.offset_y) / s
        left = _clamp(u0, 0, w0)
        top = _clamp(v0, 0, h0)
        right = _clamp(u1, 0, w0)
        bottom = _clamp(v1, 0, h0)
        return CropRect(
            left=_round(left),
            top=_round(top),
            width=max(0, _round(right - left)),
            height=max(0, _round(bottom - top)),
        )

    def cancel(self) -> None:
        """Discard all in-progress state."""
        self.active = False
        self.dragging = False
        self.offset_x = self.offset_y = 0.0
        self.zoom = 1.0
        self.natural_width = self.natural_height = 0


@dataclass(slots=True)
class CroppedFile:
    """Re-encoded crop ready to replace the picked file."""

    data: bytes
    content_type: str
    filename: str
    width: int
    height: int


def output_size(width: int, height: int, max_edge: int = MAX_OUTPUT_EDGE) -> Tuple[int, int]:
    """Scale down so the longest edge is at most `max_edge`; never scale up."""
    scale_down = min(1.0, max_edge / max(width, height))
    return _round(width * scale_down), _round(height * scale_down)


def output_content_type(content_type: str | None) -> str:
    """Keep the input type when Pillow can encode it, else fall back to JPEG."""
    if content_type and content_type.lower() in PIL_FORMATS:
        return content_type.lower()
    return DEFAULT_OUTPUT_TYPE


def extension_for_type(content_type: str) -> str:
    if "png" in content_type:
        return "png"
    if "webp" in content_type:
        return "webp"
    if "gif" in content_type:
        return "gif"
    return "jpg"


def cropped_filename(filename: str | None, content_type: str) -> str:
    base = _STRIP_EXTENSION.sub("", filename or "") or "layout"
    return f"{base}_cropped.{extension_for_type(content_type)}"


def _decode(data: bytes) -> Image.Image:
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise CropError("Image could not be decoded.") from exc
    # Natural size as a browser reports it already has EXIF rotation applied.
    return ImageOps.exif_transpose(image)


def _encode(image: Image.Image, content_type: str) -> bytes:
    fmt = PIL_FORMATS[content_type]
    if fmt == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buffer = BytesIO()
    options = {"quality": ENCODE_QUALITY} if fmt in ("JPEG", "WEBP") else {}
    image.save(buffer, format=fmt, **options)
    return buffer.getvalue()


def _crop_decoded(
    image: Image.Image,
    content_type: str | None,
    filename: str | None,
    rect: CropRect,
) -> CroppedFile:
    if rect.width <= 0 or rect.height <= 0:
        raise CropError("Crop area is empty.")
    out_w, out_h = output_size(rect.width, rect.height)
    region = image.crop(rect.box)
    if (out_w, out_h) != region.size:
        region = region.resize((out_w, out_h), Image.LANCZOS)

    out_type = output_content_type(content_type)
    data = _encode(region, out_type)
    logger.debug(f"Cropped {rect} -> {out_w}x{out_h} {out_type} ({len(data)} bytes)")
    return CroppedFile(
        data=data,
        content_type=out_type,
        filename=cropped_filename(filename, out_type),
        width=out_w,
        height=out_h,
    )


def crop_image(data: bytes, content_type: str | None, filename: str | None, rect: CropRect) -> CroppedFile:
    """Cut `rect` out of the image, cap the longest edge and re-encode."""
    return _crop_decoded(_decode(data), content_type, filename, rect)


def replay_crop(
    data: bytes,
    content_type: str | None,
    filename: str | None,
    viewport_width: int,
    viewport_height: int,
    offset_x: float = 0.0,
    offset_y: float = 0.0,
    zoom: float = 1.0,
) -> CroppedFile:
    """Re-run the crop overlay's geometry on the server and produce the output file."""
    image = _decode(data)
    session = CropSession(
        natural_width=image.width,
        natural_height=image.height,
        aspect=viewport_width / viewport_height,
        viewport_width=viewport_width,
        viewport_height=viewport_height,
    )
    session.set_zoom(zoom)
    session.pan_to(offset_x, offset_y)
    return _crop_decoded(image, content_type, filename, session.crop_rect())
