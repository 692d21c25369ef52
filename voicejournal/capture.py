"""Microphone capture: content type selection, chunk buffering and the device adapter."""

from __future__ import annotations

import io
import logging
from typing import Callable, Iterable, List

import numpy as np

from .models import AudioBlob

logger = logging.getLogger(__name__)

CONTENT_TYPE_PREFERENCES = (
    "audio/mp4",
    "audio/mpeg",
    "audio/wav",
    "audio/webm",
    "audio/ogg",
)

# libsndfile container for each MIME type; None where libsndfile has no encoder.
SOUNDFILE_FORMATS = {
    "audio/mp4": None,
    "audio/mpeg": "MP3",
    "audio/wav": "WAV",
    "audio/webm": None,
    "audio/ogg": "OGG",
}


class DeviceError(RuntimeError):
    """Raised when the microphone cannot be opened or used."""


class UnsupportedFormatError(RuntimeError):
    """Raised when no preferred audio encoding is available."""


def select_content_type(
    is_supported: Callable[[str], bool],
    preferences: Iterable[str] = CONTENT_TYPE_PREFERENCES,
) -> str:
    """Return the first entry of ``preferences`` that ``is_supported`` accepts."""

    preferences = tuple(preferences)
    for content_type in preferences:
        if is_supported(content_type):
            return content_type
    raise UnsupportedFormatError(
        "No supported audio MIME type found (tried " + ", ".join(preferences) + ")"
    )


class AudioCapture:
    """Chunks recorded during one session, finalized once into an :class:`AudioBlob`."""

    def __init__(self, content_type: str) -> None:
        self.content_type = content_type
        self._chunks: List[bytes] = []
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def __len__(self) -> int:
        return sum(len(chunk) for chunk in self._chunks)

    def append(self, chunk: bytes) -> None:
        if self._finalized:
            raise RuntimeError("Capture already finalized.")
        self._chunks.append(bytes(chunk))

    def finalize(self) -> AudioBlob:
        if self._finalized:
            raise RuntimeError("Capture already finalized.")
        self._finalized = True
        blob = AudioBlob(data=b"".join(self._chunks), content_type=self.content_type)
        self._chunks = []
        return blob


class MicrophoneRecorder:
    """Record from the default input device with ``sounddevice``.

    Frames are kept in memory while the stream runs; ``stop`` encodes them with
    ``soundfile`` into the container chosen for the session and hands them back
    as chunks.
    """

    def __init__(self, samplerate: int = 48000, channels: int = 1) -> None:
        self._samplerate = samplerate
        self._channels = channels
        self._sd = None
        self._sf = None
        self._stream = None
        self._frames: list[np.ndarray] = []

    def open(self) -> None:
        try:
            import sounddevice as sd  # type: ignore
            import soundfile as sf  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise DeviceError(
                "The `sounddevice` and `soundfile` packages are required for recording. "
                "Install voicejournal[audio]."
            ) from exc
        try:
            sd.check_input_settings(channels=self._channels, samplerate=self._samplerate)
        except Exception as exc:
            raise DeviceError(str(exc)) from exc
        self._sd = sd
        self._sf = sf

    def is_type_supported(self, content_type: str) -> bool:
        container = SOUNDFILE_FORMATS.get(content_type)
        if container is None or self._sf is None:
            return False
        return container in self._sf.available_formats()

    def start(self) -> None:
        if self._sd is None:
            raise DeviceError("Recorder has not been opened.")
        if self._stream is not None:
            raise DeviceError("Recording is already active.")

        self._frames = []
        try:
            self._stream = self._sd.InputStream(
                samplerate=self._samplerate,
                channels=self._channels,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
        except Exception as exc:
            self._stream = None
            raise DeviceError(f"Cannot start recording: {exc}") from exc

    def stop(self, content_type: str) -> List[bytes]:
        if self._stream is None:
            raise DeviceError("Recording is not active.")

        stream, self._stream = self._stream, None
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            self._frames = []
            raise DeviceError(f"Cannot stop recording: {exc}") from exc

        frames, self._frames = self._frames, []
        if not frames:
            return []
        audio = np.concatenate(frames, axis=0)
        return [self._encode(audio, content_type)]

    def _encode(self, audio: np.ndarray, content_type: str) -> bytes:
        container = SOUNDFILE_FORMATS.get(content_type)
        if container is None:
            raise DeviceError(f"Cannot encode audio as {content_type}")
        buffer = io.BytesIO()
        try:
            self._sf.write(buffer, audio, self._samplerate, format=container)
        except Exception as exc:
            raise DeviceError(f"Cannot encode audio as {content_type}: {exc}") from exc
        return buffer.getvalue()

    def _callback(self, indata, frames, time, status) -> None:  # type: ignore[override]
        if status:
            logger.debug("Recorder status: %s", status)
        self._frames.append(indata.copy())
