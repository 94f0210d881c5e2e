from fastapi import APIRouter, WebSocket, WebSocketDisconnect
import asyncio
import base64
import binascii
import json
import logging
import uuid
from typing import Optional, Set

from crowdwatch.schemas.frame import Frame
from crowdwatch.schemas.response import (
    AckEvent,
    PredictionEvent,
    ProcessedVideoFrameEvent,
    SystemEvent,
    TestPredictionEvent,
    ThresholdUpdatedEvent,
)
from crowdwatch.scheduler.frame_scheduler import b64, error_message

logger = logging.getLogger(__name__)
router = APIRouter()

BUSY_MESSAGE = "server busy, frame dropped"


def as_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def decode_image_payload(value) -> Optional[bytes]:
    """Decode a base64 image (optionally a data URL). None if missing or invalid."""
    if not isinstance(value, str) or not value:
        return None
    if value.startswith("data:") and "," in value:
        value = value.split(",", 1)[1]
    try:
        data = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None
    return data or None


@router.websocket("/stream")
async def websocket_endpoint(websocket: WebSocket):
    """
    Shared-dashboard WebSocket endpoint.

    Messages in both directions are {"type": <event>, "payload": {...}}.
    Every viewer receives every prediction; acks, rejections and test
    results go only to the requesting viewer.
    """
    viewers = websocket.app.state.viewer_manager

    await websocket.accept()
    viewer_id = websocket.query_params.get("viewer_id") or str(uuid.uuid4())
    label = websocket.query_params.get("label", "Unknown Device")
    viewers.register_viewer(viewer_id, websocket, label)
    # Inline inference requests still running for this connection
    pending: Set[asyncio.Task] = set()

    await websocket.send_json(SystemEvent(
        status="connected",
        message="WebSocket connection established",
        viewer_id=viewer_id,
    ).to_message())

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue
            payload = message.get("payload")
            await handle_message(websocket.app.state, viewer_id, message.get("type"),
                                 payload if isinstance(payload, dict) else {}, pending)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"[WS] Error: {e}")
    finally:
        for task in list(pending):
            task.cancel()
        viewers.unregister_viewer(viewer_id, websocket)


async def handle_message(state, viewer_id: str, event: Optional[str], payload: dict,
                         pending: Optional[Set[asyncio.Task]] = None):
    handler = HANDLERS.get(event)
    if handler is None:
        logger.debug(f"[WS] Ignoring unknown event {event!r} from {viewer_id[:8]}...")
        return
    if pending is None or event not in BACKGROUND_EVENTS:
        await handler(state, viewer_id, payload)
        return

    # Request/response inference runs beside the receive loop so live
    # frames keep getting admitted while it waits on the detector
    task = asyncio.create_task(handler(state, viewer_id, payload))
    pending.add(task)
    task.add_done_callback(pending.discard)


async def on_frame(state, viewer_id: str, payload: dict):
    viewers = state.viewer_manager
    image_bytes = decode_image_payload(payload.get("imageBase64"))
    if image_bytes is None:
        await viewers.send(viewer_id, PredictionEvent(success=False, error="No frame provided").to_message())
        return

    admission = state.dispatcher.submit(Frame(image_bytes=image_bytes, origin_connection=viewer_id))
    if not admission.accepted:
        await viewers.send(viewer_id, PredictionEvent(success=False, error=BUSY_MESSAGE).to_message())
        return

    await viewers.send(viewer_id, AckEvent(received=True, queued=admission.queued).to_message())


async def on_test_model(state, viewer_id: str, payload: dict):
    viewers = state.viewer_manager
    image_bytes = decode_image_payload(payload.get("imageBase64"))
    if image_bytes is None:
        await viewers.send(viewer_id, TestPredictionEvent(success=False, error="No test data provided").to_message())
        return

    try:
        inline = await state.dispatcher.run_inline(image_bytes, overlay_only=True)
    except Exception as e:
        logger.warning(f"[WS] Test model error: {error_message(e)}")
        event = TestPredictionEvent(success=False, error=error_message(e, "Test failed"))
    else:
        event = TestPredictionEvent(
            success=True,
            test_type=None if payload.get("type") is None else str(payload.get("type")),
            count=inline.result.count,
            overlay_image=b64(inline.annotated.overlay_image),
            detections=inline.result.detections,
        )
    await viewers.send(viewer_id, event.to_message())


async def on_process_video_frame(state, viewer_id: str, payload: dict):
    viewers = state.viewer_manager
    frame_index = as_int(payload.get("frameIndex"))
    image_bytes = decode_image_payload(payload.get("frameBase64"))
    if image_bytes is None:
        await viewers.send(viewer_id, ProcessedVideoFrameEvent(
            success=False, frame_index=frame_index, error="No frame data provided").to_message())
        return

    try:
        inline = await state.dispatcher.run_inline(image_bytes, overlay_only=True)
    except Exception as e:
        logger.warning(f"[WS] Video frame processing error: {error_message(e)}")
        event = ProcessedVideoFrameEvent(success=False, frame_index=frame_index,
                                         error=error_message(e, "Frame processing failed"))
    else:
        event = ProcessedVideoFrameEvent(
            success=True,
            frame_index=frame_index,
            total_frames=as_int(payload.get("totalFrames")),
            count=inline.result.count,
            overlay_image=b64(inline.annotated.overlay_image),
        )
    await viewers.send(viewer_id, event.to_message())


async def on_update_threshold(state, viewer_id: str, payload: dict):
    try:
        threshold = state.alert_evaluator.update_threshold(payload.get("threshold"))
    except ValueError as e:
        logger.warning(f"[WS] Ignoring threshold update from {viewer_id[:8]}...: {e}")
        return
    await state.viewer_manager.broadcast(ThresholdUpdatedEvent(threshold=threshold).to_message())


HANDLERS = {
    "frame": on_frame,
    "testModel": on_test_model,
    "processVideoFrame": on_process_video_frame,
    "updateThreshold": on_update_threshold,
}

BACKGROUND_EVENTS = {"testModel", "processVideoFrame"}
