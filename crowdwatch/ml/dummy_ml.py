import asyncio
import logging
import time
from typing import List, Optional

from crowdwatch.schemas.response import Detection, InferenceResult
from crowdwatch.services.ml_service import InferenceError

logger = logging.getLogger(__name__)


class DummyML:
    """
    In-process stand-in for the remote inference service.

    Returns a fixed set of detections after an artificial delay. Used when
    no inference endpoint is configured, and by the tests.
    """

    def __init__(self, detections: Optional[List[Detection]] = None,
                 count: Optional[int] = None, delay: float = 0.0):
        self.detections = list(detections or [])
        self.count = count
        self.delay = delay
        self.calls = 0
        self.failure_enabled = False
        self.failure_mode = "error"

    def set_failure_mode(self, enabled: bool, mode: str = "error"):
        """
        Enables or disables failure simulation.

        Args:
            enabled (bool): True to activate failure.
            mode (str): 'timeout' (raises a timeout InferenceError) or
                'error' (raises a plain RuntimeError, simulating a crash).
        """
        self.failure_enabled = enabled
        self.failure_mode = mode

    async def infer(self, image_bytes: bytes) -> InferenceResult:
        self.calls += 1
        start_time = time.time()

        if self.delay:
            await asyncio.sleep(self.delay)

        if self.failure_enabled:
            if self.failure_mode == "timeout":
                logger.info("[DummyML] Simulating timeout")
                raise InferenceError("inference timeout")
            logger.info("[DummyML] Simulating exception")
            raise RuntimeError("Simulated ML crash")

        logger.debug(f"[DummyML] Inference latency: {time.time() - start_time:.4f}s")
        count = len(self.detections) if self.count is None else self.count
        return InferenceResult(count=count, detections=list(self.detections))

    def status(self) -> dict:
        return {
            "backend": "dummy",
            "calls": self.calls,
            "ml_available": not self.failure_enabled,
        }
