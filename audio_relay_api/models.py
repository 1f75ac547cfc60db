from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

class EncodingDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    format_key: str
    mime_type: str = "audio/mp4"
    bitrate: Optional[float] = None          # kbps, None when the origin does not report one
    content_length: Optional[int] = None     # declared total bytes, None when unknown
    audio_only: bool = False
    url: Optional[str] = None                # direct media URL (provider-specific)
    http_headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def media_type(self) -> str:
        """MIME type without codec parameters, e.g. ``audio/webm``."""
        return self.mime_type.split(";", 1)[0].strip() or "application/octet-stream"

class MediaMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    identifier: str
    title: Optional[str] = None
    duration_sec: Optional[float] = None
    candidates: List[EncodingDescriptor] = Field(default_factory=list)
    total_length_hint: Optional[int] = None

class ErrorBody(BaseModel):
    error: str
    details: str
    videoId: str   # field name kept for the existing player client
