"""
Predict API: single-image and whole-video requests.

Endpoints:
- POST /predict - Detect on one uploaded image, return count + annotated images
- POST /process-video - Count every sampled frame of an uploaded video

Both run outside the live-frame slot pool and answer only the requester;
video progress is also broadcast to viewers as it happens.
"""

import asyncio
import logging
import os
import tempfile
from typing import List, Optional

from fastapi import APIRouter, File, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from crowdwatch.schemas.response import Detection, ErrorResponse, VideoFrameProcessedEvent
from crowdwatch.scheduler.frame_scheduler import b64, error_message
from crowdwatch.services.annotator import RenderError
from crowdwatch.services.ml_service import InferenceError
from crowdwatch.video.video_reader import VideoReader

logger = logging.getLogger(__name__)
router = APIRouter(tags=["predict"])

VIDEO_EXTENSIONS = ('.mp4', '.avi', '.mov', '.mkv', '.webm')


class PredictResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    count: int
    overlay_image: str
    heatmap_image: str
    detections: List[Detection]
    threshold: Optional[int] = None
    alert: bool = False


class VideoResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    frame_counts: List[int]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=message).model_dump())


async def _read_upload(request: Request, upload: Optional[UploadFile], what: str):
    """Returns (bytes, None) or (None, error response)."""
    if upload is None:
        return None, _error(400, f"No {what} uploaded")
    limit = request.app.state.settings.max_upload_bytes
    data = await upload.read(limit + 1)
    if not data:
        return None, _error(400, f"No {what} uploaded")
    if len(data) > limit:
        return None, _error(413, f"{what.capitalize()} exceeds {limit} bytes")
    return data, None


@router.post("/predict", response_model=PredictResponse, response_model_by_alias=True)
async def predict(request: Request, image: Optional[UploadFile] = File(None)):
    data, error = await _read_upload(request, image, "image")
    if error is not None:
        return error

    try:
        inline = await request.app.state.dispatcher.run_inline(data, evaluate_alert=True)
    except InferenceError as e:
        logger.warning(f"[API] Predict error: {e.cause}")
        return _error(502, e.cause)
    except RenderError as e:
        return _error(400, f"Invalid image: {e}")

    return PredictResponse(
        count=inline.result.count,
        overlay_image=b64(inline.annotated.overlay_image),
        heatmap_image=b64(inline.annotated.heatmap_image),
        detections=inline.result.detections,
        threshold=inline.decision.threshold,
        alert=inline.decision.fire,
    )


async def process_video_frames(state, video_path: str) -> List[int]:
    """Infer every sampled frame in order; a failed frame counts as 0."""
    reader = VideoReader(video_path, target_fps=state.settings.video_frame_rate)
    total = await asyncio.to_thread(reader.count_frames)
    frame_counts: List[int] = []

    frames = reader.read()
    try:
        while True:
            item = await asyncio.to_thread(next, frames, None)
            if item is None:
                break
            frame_index, jpeg = item

            try:
                result = await state.ml_module.infer(jpeg)
                count = result.count
            except Exception as e:
                logger.warning(f"[API] Video frame {frame_index} failed: {error_message(e)}")
                count = 0
            frame_counts.append(count)

            await state.viewer_manager.broadcast(VideoFrameProcessedEvent(
                frame_index=frame_index,
                count=count,
                total_frames=max(total, len(frame_counts)),
            ).to_message())
    finally:
        frames.close()

    return frame_counts


@router.post("/process-video", response_model=VideoResponse, response_model_by_alias=True)
async def process_video(request: Request, video: Optional[UploadFile] = File(None)):
    data, error = await _read_upload(request, video, "video")
    if error is not None:
        return error

    suffix = os.path.splitext(video.filename or "")[1].lower()
    if suffix not in VIDEO_EXTENSIONS:
        return _error(400, "Invalid file type. Supported: " + ", ".join(VIDEO_EXTENSIONS))

    # OpenCV needs a path; the file lives only for this request
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
        tmp.write(data)
        video_path = tmp.name

    try:
        frame_counts = await process_video_frames(request.app.state, video_path)
    except IOError as e:
        logger.warning(f"[API] Video processing error: {e}")
        return _error(400, str(e))
    finally:
        os.unlink(video_path)

    logger.info(f"[API] Processed video: {len(frame_counts)} frames")
    return VideoResponse(frame_counts=frame_counts)
