"""Transcription provider backends used by the relay server."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

from .models import Config, TranscriptionRequest, TranscriptionResult

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """Raised when the transcription provider fails or cannot be reached."""


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    model_name: str

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        """Return the provider's text for one uploaded recording."""


class OpenAIBackend:
    """Hosted transcription through an OpenAI compatible ``/audio/transcriptions`` API.

    A fresh :class:`httpx.AsyncClient` is opened for every call so each inbound
    request owns exactly one outbound connection. Nothing is retried.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        model: str = "whisper-1",
        language: str = "en",
        response_format: str = "json",
        prompt: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: Optional[float] = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model_name = model
        self.language = language
        self.response_format = response_format
        self.prompt = prompt
        self.temperature = temperature
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(
        cls, config: Config, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "OpenAIBackend":
        return cls(
            api_key=config.openai_api_key,
            base_url=config.provider_url,
            model=config.model,
            language=config.language,
            response_format=config.response_format,
            prompt=config.prompt,
            temperature=config.temperature,
            timeout=config.provider_timeout,
            transport=transport,
        )

    def __repr__(self) -> str:
        return f"OpenAIBackend(base_url={self.base_url!r}, model={self.model_name!r})"

    def _form_fields(self) -> dict:
        fields = {
            "model": self.model_name,
            "response_format": self.response_format,
            "language": self.language,
        }
        if self.prompt:
            fields["prompt"] = self.prompt
        if self.temperature is not None:
            fields["temperature"] = str(self.temperature)
        return fields

    async def transcribe(self, request: TranscriptionRequest) -> TranscriptionResult:
        if not self._api_key:
            raise UpstreamError("No provider API key configured")

        url = f"{self.base_url}/audio/transcriptions"
        files = {"file": (request.filename, request.data, request.content_type)}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        logger.info(
            "Sending %s (%s, %d bytes) to %s",
            request.filename,
            request.content_type,
            len(request.data),
            url,
        )
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    url, data=self._form_fields(), files=files, headers=headers
                )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"Provider request failed: {exc}") from exc

        if response.is_error:
            raise UpstreamError(
                f"Provider returned {response.status_code}: {response.text[:500]}"
            )

        return TranscriptionResult(text=self._parse(response))

    def _parse(self, response: httpx.Response) -> str:
        if self.response_format in {"text", "srt", "vtt"}:
            return response.text
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError("Provider returned a non-JSON body") from exc
        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise UpstreamError("Provider response did not contain any text")
        return text


def get_backend(config: Config) -> TranscriptionBackend:
    """Return the backend the relay forwards uploads to."""

    return OpenAIBackend.from_config(config)
