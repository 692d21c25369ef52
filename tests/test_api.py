from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from voicejournal.api import OriginPolicy, create_app
from voicejournal.models import Config, TranscriptionResult
from voicejournal.storage import PersistenceError, Storage
from voicejournal.transcriber import OpenAIBackend, UpstreamError

WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 32


class FakeBackend:
    model_name = "whisper-1"

    def __init__(self, text="hello", error=None):
        self.text = text
        self.error = error
        self.requests = []

    async def transcribe(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return TranscriptionResult(text=self.text)


@pytest.fixture
def config(tmp_path):
    return Config(
        openai_api_key="sk-test",
        allowed_origins=["http://localhost:3000", "https://*.vercel.app"],
        transcriptions_dir=str(tmp_path / "transcriptions"),
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def client(config, backend):
    return TestClient(create_app(config=config, backend=backend))


def _upload(data=WAV_BYTES, name="recording.wav", content_type="audio/wav"):
    return {"file": (name, data, content_type)}


class TestHealth:
    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "model": "whisper-1"}


class TestTranscribe:
    def test_missing_file_is_rejected_without_calling_provider(self, client, backend):
        response = client.post("/transcribe")

        assert response.status_code == 400
        assert response.json() == {"error": "No audio file provided"}
        assert backend.requests == []

    def test_other_form_fields_do_not_count_as_a_file(self, client, backend):
        response = client.post("/transcribe", data={"model": "whisper-1"})

        assert response.status_code == 400
        assert backend.requests == []

    def test_returns_provider_text_verbatim(self, client, backend):
        backend.text = "  Hello, World!  "

        response = client.post("/transcribe", files=_upload())

        assert response.status_code == 200
        assert response.json() == {"text": "  Hello, World!  "}
        assert len(backend.requests) == 1
        forwarded = backend.requests[0]
        assert forwarded.data == WAV_BYTES
        assert forwarded.filename == "audio.wav"
        assert forwarded.content_type == "audio/wav"

    def test_filename_extension_falls_back_to_content_type(self, client, backend):
        client.post("/transcribe", files=_upload(name="blob", content_type="audio/ogg"))

        assert backend.requests[0].filename == "audio.ogg"

    def test_upstream_failure_returns_generic_error(self, client, backend):
        backend.error = UpstreamError("Provider returned 429: secret rate limit details")

        response = client.post("/transcribe", files=_upload())

        assert response.status_code == 500
        assert response.json() == {"error": "Error processing audio file"}
        assert "secret" not in response.text

    def test_oversize_upload_is_rejected(self, config, backend):
        config.max_upload_bytes = 16
        client = TestClient(create_app(config=config, backend=backend))

        response = client.post("/transcribe", files=_upload(data=b"x" * 1024))

        assert response.status_code == 413
        assert "error" in response.json()
        assert backend.requests == []

    def test_oversize_content_length_is_rejected_before_parsing(self, config, backend):
        config.max_upload_bytes = 16
        client = TestClient(create_app(config=config, backend=backend))

        response = client.post("/transcribe", files=_upload(data=b"x" * (200 * 1024)))

        assert response.status_code == 413
        assert backend.requests == []

    def test_upload_without_content_length_is_rejected(self, client, backend):
        def body():
            yield b"--boundary\r\n"
            yield b"x" * 1024

        response = client.post(
            "/transcribe",
            content=body(),
            headers={"Content-Type": "multipart/form-data; boundary=boundary"},
        )

        assert response.status_code == 411
        assert response.json() == {"error": "Content-Length required"}
        assert backend.requests == []

    def test_unexpected_error_returns_500_and_server_keeps_serving(self, config):
        backend = FakeBackend(error=ValueError("boom"))
        client = TestClient(create_app(config=config, backend=backend), raise_server_exceptions=False)

        response = client.post("/transcribe", files=_upload())

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}
        assert "boom" not in response.text
        assert client.get("/health").status_code == 200

    def test_end_to_end_with_mocked_provider(self, config):
        calls = []

        def provider(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"text": "hello"})

        backend = OpenAIBackend.from_config(config, transport=httpx.MockTransport(provider))
        client = TestClient(create_app(config=config, backend=backend))

        response = client.post("/transcribe", files=_upload())

        assert response.status_code == 200
        assert response.json() == {"text": "hello"}
        assert len(calls) == 1
        assert calls[0].headers["authorization"] == "Bearer sk-test"

    def test_provider_error_status_end_to_end(self, config):
        def provider(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"text": "partial leak"})

        backend = OpenAIBackend.from_config(config, transport=httpx.MockTransport(provider))
        client = TestClient(create_app(config=config, backend=backend))

        response = client.post("/transcribe", files=_upload())

        assert response.status_code == 500
        assert response.json() == {"error": "Error processing audio file"}
        assert "partial leak" not in response.text


class TestSaveTranscription:
    def test_empty_text_is_rejected(self, client, config):
        response = client.post("/save-transcription", json={"text": ""})

        assert response.status_code == 400
        assert response.json() == {"error": "No text provided"}

    @pytest.mark.parametrize("body", [{}, {"text": "   "}, {"text": None}])
    def test_missing_or_blank_text_is_rejected(self, client, body):
        assert client.post("/save-transcription", json=body).status_code == 400

    def test_invalid_json_is_rejected(self, client):
        response = client.post(
            "/save-transcription",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_saves_record_with_exact_content(self, client, config):
        response = client.post("/save-transcription", json={"text": "hello world"})

        assert response.status_code == 200
        payload = response.json()
        assert payload["success"] is True
        record = Storage(Path(config.transcriptions_dir)).get(payload["id"])
        assert record.text == "hello world"
        assert record.path.read_text(encoding="utf-8") == "hello world"

    def test_saving_twice_creates_two_records(self, client, config):
        first = client.post("/save-transcription", json={"text": "same"}).json()
        second = client.post("/save-transcription", json={"text": "same"}).json()

        assert first["id"] != second["id"]
        records = sorted(Path(config.transcriptions_dir).iterdir())
        assert len(records) == 2
        assert [path.read_text() for path in records] == ["same", "same"]

    def test_write_failure_returns_500(self, config, backend):
        class BrokenStorage:
            def save(self, text):
                raise PersistenceError("disk full")

        client = TestClient(create_app(config=config, backend=backend, storage=BrokenStorage()))

        response = client.post("/save-transcription", json={"text": "hello"})

        assert response.status_code == 500
        assert response.json() == {"error": "Failed to save transcription"}


class TestOrigins:
    def test_disallowed_origin_never_reaches_handler(self, client, backend):
        response = client.post(
            "/transcribe", files=_upload(), headers={"Origin": "https://evil.example"}
        )

        assert response.status_code == 403
        assert response.json() == {"error": "Origin not allowed"}
        assert backend.requests == []

    def test_disallowed_origin_cannot_save(self, client, config):
        response = client.post(
            "/save-transcription", json={"text": "x"}, headers={"Origin": "https://evil.example"}
        )

        assert response.status_code == 403
        assert list(Path(config.transcriptions_dir).iterdir()) == []

    def test_allowed_origin_gets_cors_headers(self, client, backend):
        response = client.post(
            "/transcribe", files=_upload(), headers={"Origin": "https://my-app.vercel.app"}
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "https://my-app.vercel.app"
        assert len(backend.requests) == 1

    def test_preflight_from_disallowed_origin_is_rejected(self, client):
        response = client.options(
            "/transcribe",
            headers={
                "Origin": "https://evil.example",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 403

    def test_preflight_from_allowed_origin_succeeds(self, client):
        response = client.options(
            "/transcribe",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_requests_without_origin_are_allowed(self, client):
        assert client.get("/health").status_code == 200


class TestOriginPolicy:
    @pytest.mark.parametrize(
        "origin, allowed",
        [
            ("http://localhost:3000", True),
            ("http://localhost:3001", False),
            ("https://preview-123.vercel.app", True),
            ("https://vercel.app", False),
            ("https://a.b.vercel.app", False),
            ("https://evil.com/.vercel.app", False),
            ("http://preview.vercel.app", False),
            (None, True),
        ],
    )
    def test_matching(self, origin, allowed):
        policy = OriginPolicy(["http://localhost:3000", "https://*.vercel.app/"])

        assert policy.is_allowed(origin) is allowed

    def test_port_wildcard(self):
        policy = OriginPolicy(["http://localhost:*"])

        assert policy.is_allowed("http://localhost:5173")
        assert not policy.is_allowed("http://localhost.evil.com")

    def test_empty_policy_rejects_every_browser_origin(self):
        policy = OriginPolicy([])

        assert not policy.is_allowed("http://localhost:3000")
        assert policy.is_allowed(None)
