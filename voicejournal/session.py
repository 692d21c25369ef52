"""Recording session controller for the capture client.

The controller owns a single :class:`SessionState` value and replaces it on
every transition::

    IDLE -> RECORDING -> PROCESSING -> IDLE | REVIEW

Recording is not reentrant, nothing is retried, and every failure leaves the
session in a state from which the user can start again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Protocol

from .capture import (
    CONTENT_TYPE_PREFERENCES,
    AudioCapture,
    DeviceError,
    UnsupportedFormatError,
    select_content_type,
)
from .client import RelayError
from .models import AudioBlob, TranscriptionResult

logger = logging.getLogger(__name__)


class State(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PROCESSING = "processing"
    REVIEW = "review"


class InvalidTransition(RuntimeError):
    """Raised when an action is not allowed in the current state."""


class Recorder(Protocol):
    def open(self) -> None: ...

    def is_type_supported(self, content_type: str) -> bool: ...

    def start(self) -> None: ...

    def stop(self, content_type: str) -> List[bytes]: ...


class Relay(Protocol):
    def transcribe(self, blob: AudioBlob) -> TranscriptionResult: ...

    def save_transcription(self, text: str) -> dict: ...


@dataclass(frozen=True)
class SessionState:
    state: State = State.IDLE
    status: str = ""
    text: str = ""
    saved_text: str = ""
    editing: bool = False
    content_type: Optional[str] = None

    @property
    def dirty(self) -> bool:
        return self.text != self.saved_text


class RecordingSession:
    """Drive one user's capture, transcription and edit/save cycle."""

    def __init__(
        self,
        recorder: Recorder,
        relay: Relay,
        preferences: tuple[str, ...] = CONTENT_TYPE_PREFERENCES,
    ) -> None:
        self._recorder = recorder
        self._relay = relay
        self._preferences = preferences
        self._capture: Optional[AudioCapture] = None
        self._state = SessionState()

    @property
    def state(self) -> SessionState:
        return self._state

    def _require(self, *allowed: State) -> None:
        if self._state.state not in allowed:
            names = ", ".join(s.value for s in allowed)
            raise InvalidTransition(
                f"Cannot do that while {self._state.state.value} (expected {names})"
            )

    def _fail(self, status: str) -> SessionState:
        self._capture = None
        self._state = SessionState(state=State.IDLE, status=status)
        return self._state

    def start(self) -> SessionState:
        self._require(State.IDLE, State.REVIEW)
        try:
            self._recorder.open()
            content_type = select_content_type(self._recorder.is_type_supported, self._preferences)
            self._recorder.start()
        except DeviceError as exc:
            logger.error("Microphone error: %s", exc)
            return self._fail(f"Error accessing microphone: {exc}")
        except UnsupportedFormatError as exc:
            logger.error("%s", exc)
            return self._fail(f"Error: {exc}")

        logger.debug("Using MIME type %s", content_type)
        self._capture = AudioCapture(content_type)
        self._state = SessionState(
            state=State.RECORDING, status="Recording...", content_type=content_type
        )
        return self._state

    def stop(self) -> Optional[AudioBlob]:
        """Stop recording and finalize the capture.

        Returns the blob to submit, or ``None`` when nothing was recorded (the
        session is then back in IDLE and no request is made).
        """

        self._require(State.RECORDING)
        capture = self._capture
        assert capture is not None
        try:
            for chunk in self._recorder.stop(capture.content_type):
                capture.append(chunk)
        except DeviceError as exc:
            logger.error("Recording error: %s", exc)
            self._fail(f"Recording error: {exc}")
            return None
        except Exception as exc:
            logger.exception("Unexpected error while stopping the recorder")
            self._fail(f"Recording error: {exc}")
            return None

        blob = capture.finalize()
        self._capture = None
        if not blob.data:
            self._state = SessionState(status="No audio captured")
            return None

        self._state = replace(self._state, state=State.PROCESSING, status="Transcribing...")
        return blob

    def submit(self, blob: AudioBlob) -> SessionState:
        self._require(State.PROCESSING)
        try:
            result = self._relay.transcribe(blob)
        except RelayError as exc:
            logger.error("Transcription error: %s", exc)
            return self._fail(f"Error: {exc}")

        self._state = SessionState(
            state=State.REVIEW,
            status="Transcription complete",
            text=result.text,
            saved_text=result.text,
            content_type=blob.content_type,
        )
        return self._state

    def stop_and_submit(self) -> SessionState:
        blob = self.stop()
        if blob is not None:
            self.submit(blob)
        return self._state

    def begin_edit(self) -> SessionState:
        self._require(State.REVIEW)
        self._state = replace(self._state, editing=True, status="Editing")
        return self._state

    def edit(self, text: str) -> SessionState:
        self._require(State.REVIEW)
        if not self._state.editing:
            raise InvalidTransition("Call begin_edit() before editing the text")
        self._state = replace(self._state, text=text)
        return self._state

    def cancel_edit(self) -> SessionState:
        self._require(State.REVIEW)
        self._state = replace(
            self._state, editing=False, text=self._state.saved_text, status="Edit cancelled"
        )
        return self._state

    def save(self) -> SessionState:
        self._require(State.REVIEW)
        text = self._state.text
        try:
            self._relay.save_transcription(text)
        except RelayError as exc:
            logger.error("Save error: %s", exc)
            self._state = replace(self._state, status=f"Error saving: {exc}")
            return self._state

        self._state = replace(
            self._state, saved_text=text, editing=False, status="Transcription saved"
        )
        return self._state
