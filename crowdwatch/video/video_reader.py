import logging
import math
from typing import Iterator, Tuple

import cv2

logger = logging.getLogger(__name__)


class VideoReader:
    """
    Samples frames from a video file at a target rate.

    Yields (frame_index, jpeg_bytes) for the sampled frames only; the
    index counts sampled frames from 0.
    """

    def __init__(self, video_path: str, target_fps: int = 25, jpeg_quality: int = 90):
        self.video_path = video_path
        self.target_fps = target_fps
        self.jpeg_quality = jpeg_quality

    def _open(self) -> cv2.VideoCapture:
        cap = cv2.VideoCapture(self.video_path)
        if not cap.isOpened():
            cap.release()
            raise IOError(f"Cannot open video: {self.video_path}")
        return cap

    @staticmethod
    def _source_fps(cap: cv2.VideoCapture, fallback: float) -> float:
        fps = cap.get(cv2.CAP_PROP_FPS)
        return fps if fps and fps > 0 else fallback

    def count_frames(self) -> int:
        """Number of frames read() will yield (from container metadata)."""
        cap = self._open()
        try:
            total = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
            source_fps = self._source_fps(cap, self.target_fps)
        finally:
            cap.release()
        if total <= 0:
            return 0
        step = max(source_fps / self.target_fps, 1.0)
        return int(math.ceil(total / step))

    def read(self) -> Iterator[Tuple[int, bytes]]:
        cap = self._open()
        try:
            source_fps = self._source_fps(cap, self.target_fps)
            # Keep one source frame per `step` frames
            step = max(source_fps / self.target_fps, 1.0)
            next_pick = 0.0
            source_index = 0
            sampled = 0

            while True:
                ok, frame = cap.read()
                if not ok:
                    break
                if source_index + 1e-6 >= next_pick:
                    encoded, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, self.jpeg_quality])
                    if encoded:
                        yield sampled, buf.tobytes()
                        sampled += 1
                    next_pick += step
                source_index += 1

            logger.info(f"[VideoReader] {self.video_path}: sampled {sampled} of {source_index} frames")
        finally:
            cap.release()
