"""
Annotator: overlay and heatmap rendering for detection results.

Both renderers are pure functions of (image_bytes, detections): no shared
state, identical input gives byte-identical JPEG output. A detection that
cannot be drawn is logged and skipped; only an undecodable source image
fails the whole render.
"""

import logging
import math
from typing import Sequence, Tuple

import cv2
import numpy as np

from crowdwatch.schemas.response import AnnotatedOutput, Detection

logger = logging.getLogger(__name__)

JPEG_QUALITY = 90
FONT = cv2.FONT_HERSHEY_SIMPLEX

# Markers
MIN_MARKER_RADIUS = 5
MAX_MARKER_RADIUS = 20
MARKER_COLOR = (0, 0, 255)  # BGR
MARKER_ALPHA = 0.8
LABEL_COLOR = (255, 255, 255)

# Count banner (top-left)
BANNER_BOX = (10, 10, 160, 70)  # x1, y1, x2, y2
BANNER_ALPHA = 0.7

# Heatmap
HEATMAP_BASE_OPACITY = 0.7
HEATMAP_RADIUS_FRACTION = 0.1
# (offset, BGR colour, alpha): red core, yellow halo, transparent blue edge
HEATMAP_STOPS = (
    (0.0, (0, 0, 255), 0.8),
    (0.5, (0, 255, 255), 0.4),
    (1.0, (255, 0, 0), 0.0),
)

# Errors from a single bad detection (NaN/inf/huge coordinates)
_DRAW_ERRORS = (TypeError, ValueError, OverflowError, cv2.error)


class RenderError(Exception):
    """The source image could not be decoded or the result encoded."""


def decode_image(image_bytes: bytes) -> np.ndarray:
    if not image_bytes:
        raise RenderError("empty image")
    image = cv2.imdecode(np.frombuffer(image_bytes, np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        raise RenderError("image decode failed")
    return image


def encode_jpeg(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not ok:
        raise RenderError("JPEG encode failed")
    return buf.tobytes()


def marker_radius(width: float, height: float) -> float:
    """Marker radius: sqrt(box area) / 5, clamped to [5, 20] pixels."""
    area = max(width or 0.0, 0.0) * max(height or 0.0, 0.0)
    return min(MAX_MARKER_RADIUS, max(MIN_MARKER_RADIUS, math.sqrt(area) / 5))


def has_position(det: Detection) -> bool:
    # Zero counts as missing
    return bool(det.x) and bool(det.y)


def _draw_count_banner(canvas: np.ndarray, count: int):
    x1, y1, x2, y2 = BANNER_BOX
    roi = canvas[y1:y2, x1:x2]
    if roi.size:
        roi[:] = cv2.addWeighted(roi, 1.0 - BANNER_ALPHA, np.zeros_like(roi), BANNER_ALPHA, 0)
    cv2.putText(canvas, f"People: {count}", (x1 + 10, y1 + 38), FONT, 0.8,
                LABEL_COLOR, 2, cv2.LINE_AA)


def render_overlay(image_bytes: bytes, detections: Sequence[Detection]) -> bytes:
    """Draw a count banner and one confidence-labelled marker per detection."""
    canvas = decode_image(image_bytes)
    _draw_count_banner(canvas, len(detections))

    markers = canvas.copy()
    labels = []
    for det in detections:
        if not has_position(det):
            continue
        try:
            radius = int(round(marker_radius(det.width, det.height)))
            center = (int(round(det.x)), int(round(det.y)))
            cv2.circle(markers, center, radius, MARKER_COLOR, -1, cv2.LINE_AA)
            percent = int(math.floor(det.confidence * 100 + 0.5))
            labels.append((f"{percent}%", (center[0] + radius + 2, center[1])))
        except _DRAW_ERRORS as e:
            logger.warning(f"[Annotator] Skipping detection {det!r}: {e}")

    # Markers are translucent, labels are drawn opaque on top
    canvas = cv2.addWeighted(markers, MARKER_ALPHA, canvas, 1.0 - MARKER_ALPHA, 0)
    for text, origin in labels:
        cv2.putText(canvas, text, origin, FONT, 0.4, LABEL_COLOR, 1, cv2.LINE_AA)

    return encode_jpeg(canvas)


def _gradient(t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    offsets = [stop[0] for stop in HEATMAP_STOPS]
    color = np.stack(
        [np.interp(t, offsets, [stop[1][c] for stop in HEATMAP_STOPS]) for c in range(3)],
        axis=-1,
    )
    alpha = np.interp(t, offsets, [stop[2] for stop in HEATMAP_STOPS])
    return color, alpha


def _composite_gradient(canvas: np.ndarray, cx: float, cy: float, radius: float):
    h, w = canvas.shape[:2]
    x0 = max(int(math.floor(cx - radius)), 0)
    x1 = min(int(math.ceil(cx + radius)) + 1, w)
    y0 = max(int(math.floor(cy - radius)), 0)
    y1 = min(int(math.ceil(cy + radius)) + 1, h)
    if x0 >= x1 or y0 >= y1:
        return

    ys, xs = np.mgrid[y0:y1, x0:x1].astype(np.float32)
    t = np.hypot(xs + 0.5 - cx, ys + 0.5 - cy) / radius
    color, alpha = _gradient(np.minimum(t, 1.0))
    alpha = np.where(t <= 1.0, alpha, 0.0)[..., None]

    roi = canvas[y0:y1, x0:x1]
    roi[:] = color * alpha + roi * (1.0 - alpha)


def render_heatmap(image_bytes: bytes, detections: Sequence[Detection]) -> bytes:
    """Dim the source image and composite one radial gradient per detection."""
    image = decode_image(image_bytes)
    h, w = image.shape[:2]
    canvas = image.astype(np.float32) * HEATMAP_BASE_OPACITY
    radius = HEATMAP_RADIUS_FRACTION * min(w, h)

    if radius > 0:
        for det in detections:
            if not has_position(det):
                continue
            try:
                _composite_gradient(canvas, float(det.x), float(det.y), radius)
            except _DRAW_ERRORS as e:
                logger.warning(f"[Annotator] Skipping heatmap point {det!r}: {e}")

    return encode_jpeg(np.clip(np.rint(canvas), 0, 255).astype(np.uint8))


def render(image_bytes: bytes, detections: Sequence[Detection], overlay_only: bool = False) -> AnnotatedOutput:
    overlay = render_overlay(image_bytes, detections)
    heatmap = None if overlay_only else render_heatmap(image_bytes, detections)
    return AnnotatedOutput(overlay_image=overlay, heatmap_image=heatmap)
