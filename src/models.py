from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from enum import Enum
import logging

logger = logging.getLogger(__name__)

MAX_MULTIVIEW_STREAMS = 4


class MultiviewStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    CRASHED = "crashed"


class MultiviewSpec(BaseModel):
    streams: List[str]
    sync: List[float] = Field(default_factory=list)  # seconds, per stream
    dvr: bool = False
    faster: bool = False
    audio_url: Optional[str] = None
    audio_url_seek: float = 0

    @field_validator('streams')
    @classmethod
    def validate_streams(cls, v):
        streams = [url.strip() for url in v if url and url.strip()]
        if not streams:
            raise ValueError('at least one stream is required')
        if len(streams) > MAX_MULTIVIEW_STREAMS:
            logger.warning(f"Only the first {MAX_MULTIVIEW_STREAMS} of {len(streams)} streams are used")
            streams = streams[:MAX_MULTIVIEW_STREAMS]
        return streams

    @field_validator('audio_url', mode='before')
    @classmethod
    def validate_audio_url(cls, v):
        return v or None

    def model_post_init(self, __context) -> None:
        """Pad sync to one value per stream; faster input reading needs DVR retention."""
        count = len(self.streams)
        self.sync = (list(self.sync) + [0.0] * count)[:count]
        if self.faster:
            self.dvr = True

    @property
    def stream_count(self) -> int:
        return len(self.streams)


class MultiviewStatusResponse(BaseModel):
    status: MultiviewStatus
    pid: Optional[int] = None
    streams: List[str] = Field(default_factory=list)
    ready: bool = False
