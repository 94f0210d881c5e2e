import asyncio
import base64
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional, Set

from crowdwatch.schemas.frame import Admission, Frame
from crowdwatch.schemas.response import (
    AlertEvent,
    AnnotatedOutput,
    InferenceResult,
    PredictionEvent,
)
from crowdwatch.services import annotator
from crowdwatch.services.alert_evaluator import AlertDecision, AlertEvaluator
from crowdwatch.services.annotator import RenderError
from crowdwatch.services.ml_service import InferenceError

logger = logging.getLogger(__name__)


def b64(data: Optional[bytes]) -> Optional[str]:
    return None if data is None else base64.b64encode(data).decode("ascii")


def error_message(exc: Exception, default: str = "Inference error") -> str:
    if isinstance(exc, InferenceError):
        return exc.cause
    return str(exc) or default


@dataclass
class InlinePrediction:
    result: InferenceResult
    annotated: AnnotatedOutput
    decision: Optional[AlertDecision] = None


class _Slot:
    """One unit of in-flight inference work. Released exactly once."""

    def __init__(self, dispatcher: "FrameDispatcher", frame_id: int):
        self._dispatcher = dispatcher
        self._frame_id = frame_id
        self._released = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    def release(self):
        if self._released:
            logger.error(f"[Dispatcher] Slot for frame {self._frame_id} already released")
            return
        self._released = True
        self._dispatcher._release_slot()


class FrameDispatcher:
    """
    Bounded-concurrency frame dispatch.

    Admission control:
    - At most `max_concurrency` frames in flight (a slot is taken before the
      task is created, so concurrent submits can never overshoot)
    - Frames arriving while all slots are busy wait in a FIFO backlog of at
      most `max_backlog` entries; beyond that they are rejected and dropped
    - A slot is released on every exit path, then the oldest backlogged
      frame takes it

    Every processed frame is broadcast to all viewers, success or failure.
    Failed frames are reported, never re-queued.

    All state is owned by the event loop thread; submit() must be called
    from inside the running loop.
    """

    def __init__(self, ml_module, alert_evaluator: AlertEvaluator, transport,
                 max_concurrency: int = 2, max_backlog: int = 60,
                 renderer: Callable[..., AnnotatedOutput] = annotator.render,
                 image_check: Callable[[bytes], object] = annotator.decode_image):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if max_backlog < 0:
            raise ValueError("max_backlog must be >= 0")

        self.ml_module = ml_module
        self.alert_evaluator = alert_evaluator
        self.transport = transport
        self.max_concurrency = max_concurrency
        self.max_backlog = max_backlog
        self.renderer = renderer
        self.image_check = image_check

        self._active_slots = 0
        self._backlog: Deque[Frame] = deque()
        self._tasks: Set[asyncio.Task] = set()

        # Counters
        self.accepted = 0
        self.rejected = 0
        self.processed = 0
        self.failed = 0

    @property
    def active_slots(self) -> int:
        return self._active_slots

    @property
    def backlog_size(self) -> int:
        return len(self._backlog)

    # ========== ADMISSION ==========

    def submit(self, frame: Frame) -> Admission:
        """Admit a frame: dispatch now, queue it, or reject it when the backlog is full."""
        if self._active_slots < self.max_concurrency:
            self._dispatch(frame)
            self.accepted += 1
            return Admission.dispatched()

        if len(self._backlog) >= self.max_backlog:
            self.rejected += 1
            logger.warning(f"[Dispatcher] Backlog full ({len(self._backlog)}), "
                           f"dropping frame {frame.id} from {frame.origin_connection}")
            return Admission.rejected(Admission.BACKLOG_FULL)

        self._backlog.append(frame)
        self.accepted += 1
        logger.debug(f"[Dispatcher] Frame {frame.id} queued (backlog={len(self._backlog)})")
        return Admission.enqueued()

    def _acquire_slot(self, frame: Frame) -> _Slot:
        assert self._active_slots < self.max_concurrency
        self._active_slots += 1
        return _Slot(self, frame.id)

    def _release_slot(self):
        self._active_slots -= 1
        self._drain_backlog()

    def _drain_backlog(self):
        while self._backlog and self._active_slots < self.max_concurrency:
            self._dispatch(self._backlog.popleft())

    def _dispatch(self, frame: Frame):
        slot = self._acquire_slot(frame)
        try:
            task = asyncio.get_running_loop().create_task(self._run(frame, slot))
        except BaseException:
            slot.release()
            raise
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[Dispatcher] Frame task failed: {task.exception()!r}")

    async def _run(self, frame: Frame, slot: _Slot):
        with slot:
            await self._process(frame)

    # ========== PIPELINE ==========

    async def _process(self, frame: Frame):
        try:
            message = await self._predict(frame)
            self.processed += 1
        except (InferenceError, RenderError) as e:
            self.failed += 1
            logger.warning(f"[Dispatcher] Frame {frame.id} failed: {error_message(e)}")
            message = PredictionEvent(success=False, error=error_message(e)).to_message()
        except Exception as e:
            self.failed += 1
            logger.exception(f"[Dispatcher] Unexpected error processing frame {frame.id}")
            message = PredictionEvent(success=False, error=error_message(e)).to_message()

        await self.transport.broadcast(message)

    async def _predict(self, frame: Frame) -> dict:
        result = await self.ml_module.infer(frame.image_bytes)
        decision = await self._evaluate_alert(result.count)
        annotated = self.renderer(frame.image_bytes, result.detections)

        return PredictionEvent(
            success=True,
            count=result.count,
            overlay_image=b64(annotated.overlay_image),
            heatmap_image=b64(annotated.heatmap_image),
            detections=result.detections,
            threshold=decision.threshold,
        ).to_message()

    async def _evaluate_alert(self, count: int) -> AlertDecision:
        decision = self.alert_evaluator.evaluate(count)
        if decision.fire:
            await self.transport.broadcast(
                AlertEvent(count=decision.count, threshold=decision.threshold).to_message()
            )
        return decision

    async def run_inline(self, image_bytes: bytes, overlay_only: bool = False,
                         evaluate_alert: bool = False) -> InlinePrediction:
        """
        Request/response path: infer and render one image outside the slot pool.

        Raises InferenceError or RenderError; the caller reports them to the
        requester only.
        """
        # Uploads that cannot be decoded never reach the inference service
        self.image_check(image_bytes)
        result = await self.ml_module.infer(image_bytes)
        decision = await self._evaluate_alert(result.count) if evaluate_alert else None
        annotated = self.renderer(image_bytes, result.detections, overlay_only=overlay_only)
        return InlinePrediction(result=result, annotated=annotated, decision=decision)

    # ========== LIFECYCLE ==========

    async def join(self):
        """Wait until nothing is in flight or backlogged."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict:
        return {
            "active_slots": self._active_slots,
            "max_concurrency": self.max_concurrency,
            "backlog": len(self._backlog),
            "max_backlog": self.max_backlog,
            "accepted": self.accepted,
            "rejected": self.rejected,
            "processed": self.processed,
            "failed": self.failed,
        }
