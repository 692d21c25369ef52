"""HTTP client used by the capture front end to talk to the relay server."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from .models import AudioBlob, Config, TranscriptionResult


class RelayError(RuntimeError):
    """Raised when a request to the relay server fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("detail") or response.reason_phrase)
    return response.reason_phrase


class RelayClient:
    """Thin synchronous wrapper around the relay's HTTP contract."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        verify: bool = True,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            verify=verify,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: Config, transport: Optional[httpx.BaseTransport] = None) -> "RelayClient":
        return cls(
            config.server_url,
            timeout=config.api_timeout,
            verify=config.verify_ssl,
            transport=transport,
        )

    def __enter__(self) -> "RelayClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise RelayError(f"{method} {path} failed: {exc}") from exc
        if response.is_error:
            raise RelayError(_error_message(response), status_code=response.status_code)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RelayError(f"{method} {path} returned an invalid body") from exc
        if not isinstance(payload, dict):
            raise RelayError(f"{method} {path} returned an unexpected body")
        return payload

    def transcribe(self, blob: AudioBlob) -> TranscriptionResult:
        payload = self._request(
            "POST",
            "/transcribe",
            files={"file": (blob.filename, blob.data, blob.content_type)},
        )
        text = payload.get("text")
        if not isinstance(text, str):
            raise RelayError("Transcription failed: response contained no text")
        return TranscriptionResult(text=text)

    def save_transcription(self, text: str) -> Dict[str, Any]:
        return self._request("POST", "/save-transcription", json={"text": text})

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")
