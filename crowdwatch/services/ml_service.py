import asyncio
import base64
import logging
import time
from typing import Optional

import requests
from pydantic import ValidationError

from crowdwatch.schemas.response import Detection, InferenceResult

logger = logging.getLogger(__name__)


class InferenceError(Exception):
    """Inference call failed: network error, timeout, bad status or malformed body."""

    def __init__(self, cause: str):
        super().__init__(cause)
        self.cause = cause


def _explicit_count(output: dict) -> Optional[int]:
    for key in ("count_objects", "count"):
        value = output.get(key)
        if isinstance(value, bool) or value is None:
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int) and value >= 0:
            return value
    return None


def parse_response(body) -> InferenceResult:
    """
    Normalize an inference service response body.

    Accepts the workflow shape ``{"outputs": [{"count_objects": n,
    "predictions": {"predictions": [...]}}]}`` as well as a flat
    ``{"count": n, "detections": [...]}`` body.

    Count precedence: the explicit count when present and a non-negative
    integer, otherwise the number of detections.
    """
    if not isinstance(body, dict):
        raise InferenceError("malformed response: body is not an object")

    output = body
    if "outputs" in body:
        outputs = body["outputs"]
        if not isinstance(outputs, list) or not outputs or not isinstance(outputs[0], dict):
            raise InferenceError("malformed response: empty or invalid outputs")
        output = outputs[0]

    raw = output.get("predictions")
    if isinstance(raw, dict):
        raw = raw.get("predictions")
    if raw is None:
        raw = output.get("detections", [])
    if not isinstance(raw, list):
        raise InferenceError("malformed response: predictions is not a list")

    detections = []
    for item in raw:
        if not isinstance(item, dict):
            logger.warning(f"[MLService] Dropping non-object detection: {item!r}")
            continue
        try:
            detections.append(Detection.model_validate(item))
        except ValidationError as e:
            logger.warning(f"[MLService] Dropping malformed detection: {e.errors()[0]['msg']}")

    count = _explicit_count(output)
    if count is None:
        count = len(detections)
    return InferenceResult(count=count, detections=detections)


class MLService:
    """HTTP client wrapper around the remote detection workflow.

    One POST per frame, bounded by a fixed timeout. Failures raise
    InferenceError immediately; the caller decides what to report.
    The blocking request runs in a worker thread so the event loop only
    suspends at this call.
    """

    def __init__(self, url: str, api_key: Optional[str] = None,
                 confidence: float = 0.33, timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        self.url = url
        self.api_key = api_key
        self.confidence = confidence
        self.timeout = timeout
        self.session = session or requests.Session()

        self.calls = 0
        self.consecutive_failures = 0
        self.last_success_at: Optional[float] = None

    def _request_body(self, image_bytes: bytes) -> dict:
        return {
            "api_key": self.api_key,
            "inputs": {
                "image": {"type": "base64", "value": base64.b64encode(image_bytes).decode("ascii")},
                "confidence": self.confidence,
            },
        }

    def run_inference(self, image_bytes: bytes) -> InferenceResult:
        """Blocking inference call. Raises InferenceError on any failure."""
        self.calls += 1
        try:
            r = self.session.post(self.url, json=self._request_body(image_bytes), timeout=self.timeout)
            if r.status_code != 200:
                raise InferenceError(f"inference service returned {r.status_code}")
            try:
                body = r.json()
            except ValueError:
                raise InferenceError("malformed response: body is not JSON")
            result = parse_response(body)

        except requests.exceptions.Timeout:
            self.consecutive_failures += 1
            logger.warning(f"[MLService] Inference timeout after {self.timeout}s "
                           f"(consecutive failures: {self.consecutive_failures})")
            raise InferenceError("inference timeout")

        except requests.exceptions.RequestException as e:
            self.consecutive_failures += 1
            logger.warning(f"[MLService] Inference request failed: {e}")
            raise InferenceError(f"inference request failed: {e}")

        except InferenceError as e:
            self.consecutive_failures += 1
            logger.warning(f"[MLService] {e.cause}")
            raise

        self.consecutive_failures = 0
        self.last_success_at = time.time()
        return result

    async def infer(self, image_bytes: bytes) -> InferenceResult:
        """
        Non-blocking inference bounded by `timeout` end to end.

        The requests timeout only limits connect and each socket read, so a
        slow-trickling upstream is cut off here as well. The worker thread
        is abandoned and finishes on its own.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.run_inference, image_bytes),
                                          timeout=self.timeout)
        except asyncio.TimeoutError:
            self.consecutive_failures += 1
            logger.warning(f"[MLService] Inference exceeded {self.timeout}s overall "
                           f"(consecutive failures: {self.consecutive_failures})")
            raise InferenceError("inference timeout")

    def status(self) -> dict:
        return {
            "backend": "remote",
            "calls": self.calls,
            "consecutive_failures": self.consecutive_failures,
            "last_success_at": self.last_success_at,
            "ml_available": self.consecutive_failures == 0,
        }

    def close(self):
        self.session.close()
