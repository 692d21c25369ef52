"""Dataclasses describing the objects exchanged by voicejournal components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

DEFAULT_EXTENSION = "webm"

EXTENSIONS = {
    "audio/mp4": "mp4",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
}


def extension_for(content_type: str) -> str:
    """Map a MIME type (parameters allowed) to the file extension the provider expects."""

    base = content_type.split(";", 1)[0].strip().lower()
    return EXTENSIONS.get(base, DEFAULT_EXTENSION)


@dataclass(frozen=True, slots=True)
class AudioBlob:
    """A finalized recording ready to be uploaded."""

    data: bytes
    content_type: str

    @property
    def filename(self) -> str:
        return f"recording.{extension_for(self.content_type)}"

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class TranscriptionRequest:
    """Payload forwarded once to the transcription provider."""

    data: bytes
    filename: str
    content_type: str


@dataclass(frozen=True, slots=True)
class TranscriptionResult:
    text: str

    @property
    def ok(self) -> bool:
        return bool(self.text)


@dataclass(frozen=True, slots=True)
class SavedTranscription:
    """An immutable, uniquely named transcription record."""

    id: str
    text: str
    created_at: datetime
    path: Path


@dataclass(slots=True)
class Config:
    """Settings shared by the relay server and the capture client."""

    host: str = "127.0.0.1"
    port: int = 3000
    openai_api_key: Optional[str] = field(default=None, repr=False)
    provider_url: str = "https://api.openai.com/v1"
    model: str = "whisper-1"
    language: str = "en"
    response_format: str = "json"
    prompt: Optional[str] = "This is a voice recording. Please transcribe the speech accurately."
    temperature: Optional[float] = 0.2
    provider_timeout: float = 120.0
    allowed_origins: List[str] = field(default_factory=lambda: ["http://localhost:3000"])
    transcriptions_dir: Optional[str] = None
    max_upload_bytes: int = 25 * 1024 * 1024
    server_url: str = "http://localhost:3000"
    api_timeout: float = 60.0
    verify_ssl: bool = True
