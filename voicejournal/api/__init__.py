"""FastAPI relay between capture clients and the transcription provider."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Pattern

from fastapi import FastAPI, File, HTTPException, Request, UploadFile, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import load_config
from ..models import Config, TranscriptionRequest, extension_for
from ..storage import PersistenceError, Storage
from ..transcriber import TranscriptionBackend, UpstreamError, get_backend

logger = logging.getLogger(__name__)

# Allowance for multipart boundaries and part headers on top of the file itself.
MULTIPART_ENVELOPE_BYTES = 64 * 1024


class BadRequest(Exception):
    """Raised when a request is missing required input."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class PayloadTooLarge(BadRequest):
    """Raised when an upload exceeds the configured cap."""

    status_code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class HealthResponse(BaseModel):
    status: str = "ok"
    model: str


class TranscribeResponse(BaseModel):
    text: str


class SaveRequest(BaseModel):
    text: str = ""


class SaveResponse(BaseModel):
    success: bool = True
    id: str
    message: str = "Transcription saved"
    timestamp: datetime


class OriginPolicy:
    """Explicit allow list of browser origins.

    Entries are exact origins or patterns where ``*`` stands for one host label
    or a port, e.g. ``https://*.vercel.app`` or ``http://localhost:*``.
    """

    def __init__(self, origins: Iterable[str]) -> None:
        self.origins = tuple(origin.rstrip("/") for origin in origins if origin)
        parts = [re.escape(origin).replace(r"\*", "[A-Za-z0-9-]+") for origin in self.origins]
        self._regex: Optional[Pattern[str]] = (
            re.compile("^(?:" + "|".join(parts) + ")$") if parts else None
        )

    @property
    def regex(self) -> Optional[str]:
        return self._regex.pattern if self._regex is not None else None

    def is_allowed(self, origin: Optional[str]) -> bool:
        if origin is None:
            return True
        return self._regex is not None and self._regex.match(origin) is not None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _declared_size(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    upload.file.seek(0, 2)
    size = upload.file.tell()
    upload.file.seek(0)
    return size


def create_app(
    config: Optional[Config] = None,
    backend: Optional[TranscriptionBackend] = None,
    storage: Optional[Storage] = None,
) -> FastAPI:
    """Build the relay application; collaborators default to ones built from ``config``."""

    config = config or load_config()
    backend = backend or get_backend(config)
    if storage is None:
        directory = Path(config.transcriptions_dir) if config.transcriptions_dir else None
        storage = Storage(directory)
    policy = OriginPolicy(config.allowed_origins)

    app = FastAPI(
        title="voicejournal relay",
        description="Forwards recorded audio to a transcription provider and stores edited text.",
        version="0.1.0",
    )
    app.state.config = config
    app.state.backend = backend
    app.state.storage = storage
    app.state.origin_policy = policy

    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=policy.regex,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        allow_credentials=True,
    )

    # Added last so it runs first: disallowed origins never reach CORS handling or a route.
    @app.middleware("http")
    async def guard_request(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        origin = request.headers.get("origin")
        if not policy.is_allowed(origin):
            logger.warning("Rejected request from origin %s", origin)
            return _error(status.HTTP_403_FORBIDDEN, "Origin not allowed")
        if request.url.path == "/transcribe" and request.method == "POST":
            declared = _declared_size(request)
            if declared is None:
                logger.warning("Rejected upload without a Content-Length")
                return _error(status.HTTP_411_LENGTH_REQUIRED, "Content-Length required")
            if declared > config.max_upload_bytes + MULTIPART_ENVELOPE_BYTES:
                logger.warning("Rejected upload of %d bytes", declared)
                return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "File too large")
        return await call_next(request)

    @app.exception_handler(BadRequest)
    async def handle_bad_request(_request: Request, exc: BadRequest) -> JSONResponse:
        return _error(exc.status_code, exc.message)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Invalid request to %s: %s", request.url.path, exc.errors())
        message = "No text provided" if request.url.path == "/save-transcription" else "Invalid request"
        return _error(status.HTTP_400_BAD_REQUEST, message)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error while serving %s", request.url.path)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")

    @app.on_event("startup")
    async def announce() -> None:
        logger.info(
            "Relay ready: provider=%s model=%s api key %s, origins=%s",
            config.provider_url,
            config.model,
            "present" if config.openai_api_key else "missing",
            ", ".join(policy.origins) or "(none)",
        )

    @app.get("/health", response_model=HealthResponse)
    async def healthcheck() -> HealthResponse:
        return HealthResponse(model=backend.model_name)

    @app.post("/transcribe", response_model=TranscribeResponse)
    async def transcribe(file: Optional[UploadFile] = File(None)) -> TranscribeResponse:
        if file is None:
            logger.info("No file received")
            raise BadRequest("No audio file provided")

        size = _upload_size(file)
        if size > config.max_upload_bytes:
            raise PayloadTooLarge("File too large")

        content_type = file.content_type or "application/octet-stream"
        extension = Path(file.filename or "").suffix.lstrip(".") or extension_for(content_type)
        logger.info("File received: %s (%s, %d bytes)", file.filename, content_type, size)
        outbound = TranscriptionRequest(
            data=await file.read(),
            filename=f"audio.{extension}",
            content_type=content_type,
        )

        try:
            result = await backend.transcribe(outbound)
        except UpstreamError as exc:
            logger.error("Transcription error: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error processing audio file",
            ) from exc

        logger.info("Received transcription (%d characters)", len(result.text))
        return TranscribeResponse(text=result.text)

    @app.post("/save-transcription", response_model=SaveResponse)
    async def save_transcription(payload: SaveRequest) -> SaveResponse:
        if not payload.text.strip():
            logger.info("No text provided in save request")
            raise BadRequest("No text provided")
        try:
            record = storage.save(payload.text)
        except PersistenceError as exc:
            logger.error("Error saving transcription: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to save transcription",
            ) from exc
        return SaveResponse(id=record.id, timestamp=record.created_at)

    return app
