"""
Pytest configuration and shared fixtures.
"""

import asyncio

import cv2
import numpy as np
import pytest

from crowdwatch.schemas.response import AnnotatedOutput, Detection, InferenceResult


def make_jpeg(width=200, height=200, color=(0, 0, 0)) -> bytes:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:] = color
    ok, buf = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, 95])
    assert ok
    return buf.tobytes()


def decode(jpeg: bytes) -> np.ndarray:
    return cv2.imdecode(np.frombuffer(jpeg, np.uint8), cv2.IMREAD_COLOR)


async def settle(rounds: int = 20):
    """Let scheduled tasks run until they block."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def fake_render(image_bytes, detections, overlay_only=False):
    return AnnotatedOutput(
        overlay_image=b"overlay:" + image_bytes,
        heatmap_image=None if overlay_only else b"heatmap:" + image_bytes,
    )


class RecordingTransport:
    """Transport stub that records targeted and broadcast messages."""

    def __init__(self):
        self.sent = []       # (viewer_id, message)
        self.broadcasts = []  # message

    async def send(self, viewer_id, message):
        self.sent.append((viewer_id, message))
        return True

    async def broadcast(self, message):
        self.broadcasts.append(message)
        return 1

    def of_type(self, event):
        return [m for m in self.broadcasts if m["type"] == event]


class GatedML:
    """
    Fake inference gateway. Each call blocks until the test completes it,
    so tests decide exactly when slots free up.
    """

    def __init__(self, result=None):
        self.result = result or InferenceResult(
            count=1, detections=[Detection(x=50, y=60, width=20, height=30, confidence=0.9)]
        )
        self.started = []   # image_bytes in call order
        self.pending = []   # (image_bytes, future)
        self.in_flight = 0
        self.max_in_flight = 0

    async def infer(self, image_bytes):
        future = asyncio.get_running_loop().create_future()
        self.started.append(image_bytes)
        self.pending.append((image_bytes, future))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            return await future
        finally:
            self.in_flight -= 1

    def complete(self, image_bytes=None, result=None, error=None):
        """Finish the call for `image_bytes` (oldest pending call if None)."""
        index = 0
        if image_bytes is not None:
            index = [p[0] for p in self.pending].index(image_bytes)
        _, future = self.pending.pop(index)
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result or self.result)

    def status(self):
        return {"backend": "gated", "calls": len(self.started)}


@pytest.fixture
def jpeg():
    return make_jpeg()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def gated_ml():
    return GatedML()
