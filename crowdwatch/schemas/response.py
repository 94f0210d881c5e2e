from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import ClassVar, List, Optional


class Detection(BaseModel):
    """One detected subject. x/y are the box centre in pixels."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    x: Optional[float] = None
    y: Optional[float] = None
    width: float = 0.0
    height: float = 0.0
    confidence: float = 0.0
    class_name: Optional[str] = Field(None, alias="class")

    @field_validator("width", "height", "confidence", mode="before")
    @classmethod
    def _none_is_zero(cls, value):
        return 0.0 if value is None else value


class InferenceResult(BaseModel):
    count: int = Field(0, ge=0)
    detections: List[Detection] = []


class AnnotatedOutput(BaseModel):
    overlay_image: bytes
    heatmap_image: Optional[bytes] = None


# ---------------------------------------------------------------------------
# Real-time events. Sent as {"type": <event>, "payload": {...}} with
# camelCase payload keys; build the wire form with to_message().
# ---------------------------------------------------------------------------

class Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event_name: ClassVar[str]

    def to_message(self) -> dict:
        return {
            "type": self.event_name,
            "payload": self.model_dump(by_alias=True, exclude_none=True),
        }


class SystemEvent(Event):
    event_name = "system"

    status: str
    message: str
    viewer_id: Optional[str] = None


class AckEvent(Event):
    event_name = "ack"

    received: bool = True
    queued: bool = False


class PredictionEvent(Event):
    event_name = "prediction"

    success: bool
    count: Optional[int] = None
    overlay_image: Optional[str] = None  # base64 JPEG
    heatmap_image: Optional[str] = None  # base64 JPEG
    detections: Optional[List[Detection]] = None
    threshold: Optional[int] = None
    error: Optional[str] = None


class AlertEvent(Event):
    event_name = "alert"

    count: int
    threshold: int


class ThresholdUpdatedEvent(Event):
    event_name = "thresholdUpdated"

    threshold: int


class TestPredictionEvent(Event):
    __test__ = False  # not a pytest class
    event_name = "testPrediction"

    success: bool
    test_type: Optional[str] = None
    count: Optional[int] = None
    overlay_image: Optional[str] = None
    detections: Optional[List[Detection]] = None
    error: Optional[str] = None


class ProcessedVideoFrameEvent(Event):
    event_name = "processedVideoFrame"

    success: bool
    frame_index: Optional[int] = None
    total_frames: Optional[int] = None
    count: Optional[int] = None
    overlay_image: Optional[str] = None
    error: Optional[str] = None


class VideoFrameProcessedEvent(Event):
    event_name = "videoFrameProcessed"

    frame_index: int
    count: int
    total_frames: int


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
