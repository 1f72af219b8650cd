"""Pytest configuration and fixtures for the dropzone tests."""

import io
import wave
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import httpx
import pytest
from flask import Flask
from flask.testing import FlaskClient
from PIL import Image

from dropzone import config, create_app, shutdown_app
from dropzone.services import log_service as log_service_module
from dropzone.services.log_service import LogService
from dropzone.services.metadata_extractor import MetadataExtractor
from dropzone.services.models import FileSnapshot, FileStatus
from dropzone.services.raw_file import MemoryFile

_ENV_VARS = (
    config.ENV_MIN_SIZE_BYTES,
    config.ENV_MAX_SIZE_BYTES,
    config.ENV_MAX_FILES,
    config.ENV_ACCEPT,
    config.ENV_PREVIEW_TYPES,
    config.ENV_UPLOAD_URL,
    config.ENV_AWS_PROFILE,
    config.ENV_AWS_REGION,
    config.ENV_S3_BUCKET,
    config.ENV_LOG_DIRECTORY,
)


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Point settings and the event log at a temporary directory."""
    monkeypatch.setattr(config, "SETTINGS_FILE", tmp_path / "settings.json")
    monkeypatch.setattr(config, "SETTINGS_DEFAULT_FILE", tmp_path / "settings.default.json")
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(config.ENV_LOG_DIRECTORY, str(tmp_path / "logs"))

    # Reset singletons so every test sees a fresh configuration
    config.Settings._instance = None
    monkeypatch.setattr(log_service_module, "_log_service", None)

    yield

    config.Settings._instance = None


@pytest.fixture
def log_service(tmp_path: Path) -> LogService:
    """Create a log service writing to a temporary directory."""
    return LogService(log_dir=tmp_path / "logs")


@pytest.fixture
def extractor(tmp_path: Path, log_service: LogService) -> Generator[MetadataExtractor, None, None]:
    """Create a metadata extractor spooling into a temporary directory."""
    ext = MetadataExtractor(spool_dir=tmp_path / "spool", log_service=log_service)
    yield ext
    ext.cleanup()


@pytest.fixture
def png_bytes() -> bytes:
    """Return a valid 4x3 PNG image."""
    buf = io.BytesIO()
    Image.new("RGB", (4, 3), color=(200, 30, 30)).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def wav_bytes() -> bytes:
    """Return one second of silent 8 kHz mono WAV audio."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(8000)
        w.writeframes(b"\x00\x00" * 8000)
    return buf.getvalue()


@pytest.fixture
def make_file() -> Callable[..., MemoryFile]:
    """Factory for in-memory raw files."""

    def factory(
        name: str = "notes.txt", size: int = 10, type: str = "text/plain", content: bytes | None = None
    ) -> MemoryFile:
        return MemoryFile(name=name, content=content if content is not None else b"x" * size, type=type)

    return factory


class StatusRecorder:
    """Collects every status notification, per file id."""

    def __init__(self) -> None:
        self.events: list[tuple[int, FileStatus]] = []

    def __call__(self, snapshot: FileSnapshot, status: FileStatus) -> None:
        self.events.append((snapshot.id, status))

    def for_file(self, file_id: int) -> list[FileStatus]:
        return [status for fid, status in self.events if fid == file_id]


@pytest.fixture
def recorder() -> StatusRecorder:
    """Create a status-change recorder."""
    return StatusRecorder()


def mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    """Build an AsyncClient whose requests are answered by ``handler``."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def app(extractor: MetadataExtractor) -> Generator[Flask, None, None]:
    """Create application for testing (no upload destination configured)."""
    app = create_app(extractor=extractor)
    app.config["TESTING"] = True

    yield app

    shutdown_app(app)


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()
