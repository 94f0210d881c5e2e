"""
Tests for FrameDispatcher admission control, slot release and FIFO backlog.
"""

import asyncio
import random

import pytest

from crowdwatch.schemas.frame import Admission, Frame
from crowdwatch.scheduler.frame_scheduler import FrameDispatcher
from crowdwatch.services.alert_evaluator import AlertEvaluator
from crowdwatch.services.annotator import RenderError, decode_image
from crowdwatch.services.ml_service import InferenceError

from conftest import fake_render, settle


def make_dispatcher(ml, transport, max_concurrency=2, max_backlog=60, threshold=100, renderer=fake_render,
                    image_check=lambda data: None):
    return FrameDispatcher(
        ml,
        AlertEvaluator(threshold=threshold, cooldown=300.0),
        transport,
        max_concurrency=max_concurrency,
        max_backlog=max_backlog,
        renderer=renderer,
        image_check=image_check,
    )


def frame(n, origin="viewer-1"):
    return Frame(image_bytes=f"frame-{n}".encode(), origin_connection=origin)


class TestAdmission:
    """submit() decisions and capacity bounds."""

    def test_three_frames_two_slots(self, gated_ml, transport):
        """Frames 1-2 dispatch at once, frame 3 waits and takes the first free slot."""
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport)
            admissions = [dispatcher.submit(frame(i)) for i in (1, 2, 3)]

            assert admissions[0] == Admission.dispatched()
            assert admissions[1] == Admission.dispatched()
            assert admissions[2] == Admission.enqueued()

            await settle()
            assert gated_ml.started == [b"frame-1", b"frame-2"]
            assert dispatcher.active_slots == 2
            assert dispatcher.backlog_size == 1

            gated_ml.complete(b"frame-2")
            await settle()
            assert gated_ml.started == [b"frame-1", b"frame-2", b"frame-3"]
            assert dispatcher.active_slots == 2
            assert dispatcher.backlog_size == 0

            gated_ml.complete()
            gated_ml.complete()
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())
        predictions = transport.of_type("prediction")
        assert len(predictions) == 3
        assert all(p["payload"]["success"] for p in predictions)
        assert dispatcher.active_slots == 0
        assert dispatcher.processed == 3

    def test_rejects_when_backlog_full(self, gated_ml, transport):
        """A frame arriving with 60 backlogged and all slots busy is rejected."""
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=2, max_backlog=60)
            for i in range(62):
                assert dispatcher.submit(frame(i)).accepted
            assert dispatcher.backlog_size == 60

            admission = dispatcher.submit(frame(62))
            assert admission == Admission.rejected("backlog_full")
            assert not admission.accepted
            assert dispatcher.backlog_size == 60
            assert dispatcher.rejected == 1

            await settle()
            # Drain everything so the loop closes cleanly
            while gated_ml.pending:
                gated_ml.complete()
                await settle()
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())
        assert len(transport.of_type("prediction")) == 62
        assert b"frame-62" not in dispatcher.ml_module.started

    def test_zero_backlog_rejects_immediately(self, gated_ml, transport):
        """With max_backlog=0 nothing ever queues."""
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1, max_backlog=0)
            assert dispatcher.submit(frame(1)).accepted
            assert dispatcher.submit(frame(2)).reason == Admission.BACKLOG_FULL
            await settle()
            gated_ml.complete()
            await dispatcher.join()

        asyncio.run(scenario())

    def test_invalid_limits(self, gated_ml, transport):
        with pytest.raises(ValueError):
            make_dispatcher(gated_ml, transport, max_concurrency=0)
        with pytest.raises(ValueError):
            make_dispatcher(gated_ml, transport, max_backlog=-1)


class TestOrdering:
    """Backlog is strictly FIFO."""

    def test_backlog_dispatch_order_matches_arrival(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1)
            for i in range(6):
                dispatcher.submit(frame(i))
            await settle()
            for _ in range(6):
                gated_ml.complete()
                await settle()
            await dispatcher.join()

        asyncio.run(scenario())
        assert gated_ml.started == [f"frame-{i}".encode() for i in range(6)]

    def test_out_of_order_completion_keeps_backlog_fifo(self, gated_ml, transport):
        """Whichever in-flight frame finishes first, the oldest queued frame goes next."""
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=2)
            for i in range(5):
                dispatcher.submit(frame(i))
            await settle()
            gated_ml.complete(b"frame-1")
            await settle()
            gated_ml.complete(b"frame-0")
            await settle()
            gated_ml.complete(b"frame-3")
            await settle()
            while gated_ml.pending:
                gated_ml.complete()
                await settle()
            await dispatcher.join()

        asyncio.run(scenario())
        assert gated_ml.started[2:] == [b"frame-2", b"frame-3", b"frame-4"]


class TestSlotRelease:
    """Slots come back on every outcome, exactly once."""

    def test_inference_failure_releases_slot(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1)
            dispatcher.submit(frame(1))
            dispatcher.submit(frame(2))
            await settle()
            gated_ml.complete(error=InferenceError("inference timeout"))
            await settle()
            assert dispatcher.active_slots == 1
            assert gated_ml.started == [b"frame-1", b"frame-2"]
            gated_ml.complete()
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())
        failed, ok = transport.of_type("prediction")
        assert failed["payload"] == {"success": False, "error": "inference timeout"}
        assert ok["payload"]["success"] is True
        assert dispatcher.failed == 1
        assert dispatcher.processed == 1
        assert dispatcher.active_slots == 0

    def test_unexpected_exception_releases_slot(self, gated_ml, transport):
        """A programmer error in the gateway is reported, not leaked."""
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1)
            dispatcher.submit(frame(1))
            await settle()
            gated_ml.complete(error=RuntimeError("boom"))
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())
        assert dispatcher.active_slots == 0
        assert transport.of_type("prediction")[0]["payload"] == {"success": False, "error": "boom"}

    def test_renderer_failure_releases_slot(self, gated_ml, transport):
        def broken_render(image_bytes, detections, overlay_only=False):
            raise ValueError("cannot draw")

        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1, renderer=broken_render)
            dispatcher.submit(frame(1))
            await settle()
            gated_ml.complete()
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())
        assert dispatcher.active_slots == 0
        assert dispatcher.failed == 1

    def test_transport_failure_still_releases_slot(self, gated_ml):
        class ExplodingTransport:
            async def broadcast(self, message):
                raise RuntimeError("socket gone")

        async def scenario():
            dispatcher = make_dispatcher(gated_ml, ExplodingTransport(), max_concurrency=1)
            dispatcher.submit(frame(1))
            dispatcher.submit(frame(2))
            await settle()
            gated_ml.complete()
            await settle()
            assert gated_ml.started == [b"frame-1", b"frame-2"]
            gated_ml.complete()
            await dispatcher.join()
            return dispatcher

        assert asyncio.run(scenario()).active_slots == 0

    def test_double_release_is_refused(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=2)
            slot = dispatcher._acquire_slot(frame(1))
            assert dispatcher.active_slots == 1
            slot.release()
            slot.release()
            assert dispatcher.active_slots == 0

        asyncio.run(scenario())

    def test_random_workload_respects_bounds(self, transport):
        """Slots and backlog never exceed their limits; every slot comes back."""
        rng = random.Random(1234)

        async def scenario():
            from conftest import GatedML
            ml = GatedML()
            dispatcher = make_dispatcher(ml, transport, max_concurrency=3, max_backlog=5)
            submitted = 0
            for _ in range(300):
                if rng.random() < 0.6:
                    dispatcher.submit(frame(submitted))
                    submitted += 1
                elif ml.pending:
                    pick = rng.randrange(len(ml.pending))
                    error = InferenceError("upstream 500") if rng.random() < 0.3 else None
                    ml.complete(ml.pending[pick][0], error=error)
                await settle(5)
                assert dispatcher.active_slots <= dispatcher.max_concurrency
                assert dispatcher.backlog_size <= dispatcher.max_backlog
                assert ml.in_flight <= dispatcher.max_concurrency

            while ml.pending:
                ml.complete()
                await settle()
            await dispatcher.join()
            return dispatcher, ml, submitted

        dispatcher, ml, submitted = asyncio.run(scenario())
        assert dispatcher.active_slots == 0
        assert dispatcher.accepted + dispatcher.rejected == submitted
        assert dispatcher.processed + dispatcher.failed == dispatcher.accepted
        assert len(transport.of_type("prediction")) == dispatcher.accepted
        assert ml.max_in_flight <= 3


class TestPipeline:
    """What gets broadcast for a processed frame."""

    def test_success_payload(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport)
            dispatcher.submit(frame(1))
            await settle()
            gated_ml.complete()
            await dispatcher.join()

        asyncio.run(scenario())
        (message,) = transport.broadcasts
        payload = message["payload"]
        assert message["type"] == "prediction"
        assert payload["success"] is True
        assert payload["count"] == 1
        assert payload["threshold"] == 100
        assert payload["detections"][0]["x"] == 50
        assert "overlayImage" in payload and "heatmapImage" in payload
        assert transport.sent == []

    def test_alert_broadcast_before_prediction(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, threshold=1)
            dispatcher.submit(frame(1))
            dispatcher.submit(frame(2))
            await settle()
            gated_ml.complete()
            gated_ml.complete()
            await dispatcher.join()

        asyncio.run(scenario())
        types = [m["type"] for m in transport.broadcasts]
        # Cooldown keeps the second qualifying frame quiet
        assert types == ["alert", "prediction", "prediction"]
        assert transport.broadcasts[0]["payload"] == {"count": 1, "threshold": 1}

    def test_run_inline_bypasses_slot_pool(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1, max_backlog=0)
            dispatcher.submit(frame(1))
            task = asyncio.ensure_future(dispatcher.run_inline(b"single", overlay_only=True))
            await settle()
            assert dispatcher.active_slots == 1
            gated_ml.complete(b"single")
            inline = await task
            gated_ml.complete()
            await dispatcher.join()
            return inline

        inline = asyncio.run(scenario())
        assert inline.result.count == 1
        assert inline.annotated.heatmap_image is None
        assert inline.decision is None
        assert len(transport.of_type("prediction")) == 1

    def test_run_inline_rejects_undecodable_image_before_inference(self, gated_ml, transport):
        dispatcher = make_dispatcher(gated_ml, transport, image_check=decode_image)
        with pytest.raises(RenderError):
            asyncio.run(dispatcher.run_inline(b"plain text"))
        assert gated_ml.started == []

    def test_stats(self, gated_ml, transport):
        async def scenario():
            dispatcher = make_dispatcher(gated_ml, transport, max_concurrency=1, max_backlog=1)
            for i in range(3):
                dispatcher.submit(frame(i))
            stats = dispatcher.stats()
            await settle()
            gated_ml.complete()
            await settle()
            gated_ml.complete()
            await dispatcher.join()
            return stats

        stats = asyncio.run(scenario())
        assert stats["active_slots"] == 1
        assert stats["backlog"] == 1
        assert stats["accepted"] == 2
        assert stats["rejected"] == 1
