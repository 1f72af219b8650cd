"""Tests for the multipart upload transport."""

import asyncio
import io
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import httpx
import pytest
from conftest import mock_client

from dropzone.services.log_service import LogService
from dropzone.services.models import FileMeta, FileSnapshot, FileStatus
from dropzone.services.raw_file import LocalFile, MemoryFile
from dropzone.services.upload_transport import (
    ProgressReader,
    UploadParams,
    UploadTransport,
    static_upload_params,
)

URL = "https://uploads.example.com/files"


class FakeSink:
    """Records everything the transport reports."""

    def __init__(self) -> None:
        self.meta: dict[str, Any] = {}
        self.progress: list[float] = []
        self.statuses: list[FileStatus] = []

    def merge_meta(self, extra: Mapping[str, Any]) -> None:
        self.meta.update(extra)

    def set_progress(self, percent: float) -> None:
        self.progress.append(percent)

    def set_status(self, status: FileStatus) -> None:
        self.statuses.append(status)


def make_snapshot(content: bytes = b"hello world", name: str = "hello.txt") -> FileSnapshot:
    file = MemoryFile(name=name, content=content, type="text/plain")
    meta = FileMeta(
        id=7,
        name=file.name,
        size=file.size,
        type=file.type,
        uploaded_date="2026-01-01T00:00:00+00:00",
        status=FileStatus.UPLOADING,
    )
    return FileSnapshot.of(file, meta)


def run_upload(
    provider: Any, handler: Any, log_service: LogService, snapshot: FileSnapshot | None = None
) -> FakeSink:
    """Run one upload to completion and return the sink."""
    sink = FakeSink()

    async def scenario() -> None:
        transport = UploadTransport(provider, client=mock_client(handler), log_service=log_service)
        handle = transport.start(snapshot or make_snapshot(), sink)
        await handle.wait()

    asyncio.run(scenario())
    return sink


class TestUploadParams:
    """Tests for normalizing provider results."""

    def test_from_provider_defaults(self) -> None:
        """Test that a missing result has no url and the default method."""
        params = UploadParams.from_provider(None)
        assert params.url is None
        assert params.method == "POST"

    def test_from_provider_normalizes(self) -> None:
        """Test method upper-casing and status removal from meta."""
        params = UploadParams.from_provider(
            {"url": URL, "method": "put", "meta": {"status": "done", "tag": "x"}, "headers": {"X-N": 1}}
        )
        assert params.method == "PUT"
        assert params.meta == {"tag": "x"}
        assert params.headers == {"X-N": "1"}

    def test_empty_url_is_missing(self) -> None:
        """Test that an empty url string counts as missing."""
        assert UploadParams.from_provider({"url": ""}).url is None

    def test_static_provider(self) -> None:
        """Test that the static provider returns the same destination for every file."""
        provider = static_upload_params(URL, "PUT")
        assert provider(make_snapshot()) == {"url": URL, "method": "PUT"}


class TestProgressReader:
    """Tests for the progress-reporting file wrapper."""

    def test_reports_fraction_read(self) -> None:
        """Test that each read reports the percentage consumed."""
        seen: list[float] = []
        reader = ProgressReader(io.BytesIO(b"x" * 100), 100, seen.append)

        reader.read(25)
        reader.read(25)
        reader.read()
        assert seen == [25.0, 50.0, 100.0]

    def test_zero_total_is_complete(self) -> None:
        """Test that an empty or unknown total counts as 100 percent."""
        reader = ProgressReader(io.BytesIO(b""), 0, lambda p: None)
        assert reader.percent(0) == 100.0

    def test_empty_read_does_not_report(self) -> None:
        """Test that reading past the end reports nothing."""
        seen: list[float] = []
        reader = ProgressReader(io.BytesIO(b""), 10, seen.append)
        assert reader.read() == b""
        assert seen == []


class TestUploadTransport:
    """Tests for upload outcomes."""

    def test_successful_upload(self, log_service: LogService) -> None:
        """Test that a 2xx response yields headers_received then done."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json={"ok": True})

        provider = lambda s: {  # noqa: E731
            "url": URL,
            "fields": {"token": "abc"},
            "headers": {"Authorization": "Bearer t"},
            "meta": {"remote_id": "r-1", "status": "done"},
        }
        sink = run_upload(provider, handler, log_service)

        assert sink.statuses == [FileStatus.HEADERS_RECEIVED, FileStatus.DONE]
        assert sink.meta == {"remote_id": "r-1"}
        assert sink.progress[-1] == 100.0

        request = requests[0]
        body = request.content
        assert request.method == "POST"
        assert request.headers["X-Requested-With"] == "XMLHttpRequest"
        assert request.headers["Authorization"] == "Bearer t"
        assert b'name="token"' in body
        assert b'name="file"; filename="hello.txt"' in body
        assert b"hello world" in body
        # The file part comes after the form fields
        assert body.index(b'name="token"') < body.index(b'name="file"')

    def test_provider_method(self, log_service: LogService) -> None:
        """Test that the provider's method is used for the request."""
        methods: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            methods.append(request.method)
            return httpx.Response(200)

        run_upload(lambda s: {"url": URL, "method": "put"}, handler, log_service)
        assert methods == ["PUT"]

    def test_async_provider(self, log_service: LogService) -> None:
        """Test that an awaitable provider result is resolved."""

        async def provider(snapshot: FileSnapshot) -> dict[str, Any]:
            await asyncio.sleep(0)
            return {"url": URL}

        sink = run_upload(provider, lambda r: httpx.Response(200), log_service)
        assert sink.statuses[-1] is FileStatus.DONE

    @pytest.mark.parametrize("status_code", [400, 404, 500, 503])
    def test_http_error(self, log_service: LogService, status_code: int) -> None:
        """Test that a status of 400 or above yields error_upload."""
        sink = run_upload(lambda s: {"url": URL}, lambda r: httpx.Response(status_code), log_service)
        assert sink.statuses == [FileStatus.ERROR_UPLOAD]

    def test_network_error(self, log_service: LogService) -> None:
        """Test that a transport failure yields exception_upload."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection reset", request=request)

        sink = run_upload(lambda s: {"url": URL}, handler, log_service)
        assert sink.statuses == [FileStatus.EXCEPTION_UPLOAD]

        entries = log_service.read_log_entries(category="upload", level="ERROR")["entries"]
        assert entries[0]["event"] == "file_upload_exception"

    def test_missing_url(self, log_service: LogService) -> None:
        """Test that no request is attempted without a url."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        sink = run_upload(lambda s: None, handler, log_service)
        assert sink.statuses == [FileStatus.ERROR_UPLOAD_PARAMS]
        assert requests == []

    def test_abort_in_flight(self, log_service: LogService) -> None:
        """Test that aborting a pending request yields aborted."""
        sink = FakeSink()
        received = None

        async def scenario() -> bool:
            nonlocal received
            received = asyncio.Event()

            async def handler(request: httpx.Request) -> httpx.Response:
                received.set()
                await asyncio.Event().wait()
                return httpx.Response(200)

            transport = UploadTransport(
                lambda s: {"url": URL}, client=mock_client(handler), log_service=log_service
            )
            handle = transport.start(make_snapshot(), sink)
            await received.wait()
            handle.abort()
            await handle.wait()
            return handle.done

        assert asyncio.run(scenario()) is True
        assert sink.statuses == [FileStatus.ABORTED]

    def test_abort_before_start(self, log_service: LogService) -> None:
        """Test that aborting before the task runs still reports aborted."""
        sink = FakeSink()

        async def scenario() -> None:
            transport = UploadTransport(
                lambda s: {"url": URL},
                client=mock_client(lambda r: httpx.Response(200)),
                log_service=log_service,
            )
            handle = transport.start(make_snapshot(), sink)
            handle.abort()
            await handle.wait()

        asyncio.run(scenario())
        assert sink.statuses == [FileStatus.ABORTED]

    def test_aclose_keeps_injected_client(self, log_service: LogService) -> None:
        """Test that aclose leaves a caller-supplied client open."""

        async def scenario() -> bool:
            client = mock_client(lambda r: httpx.Response(200))
            transport = UploadTransport(lambda s: {"url": URL}, client=client, log_service=log_service)
            await transport.aclose()
            closed = client.is_closed
            await client.aclose()
            return closed

        assert asyncio.run(scenario()) is False

    def test_aclose_closes_owned_client(self, log_service: LogService) -> None:
        """Test that aclose closes a client the transport created."""

        async def scenario() -> bool:
            transport = UploadTransport(lambda s: {"url": URL}, log_service=log_service)
            client = transport._get_client()
            await transport.aclose()
            return client.is_closed

        assert asyncio.run(scenario()) is True

    @pytest.mark.parametrize("status_code", [302, 304])
    def test_redirect_status_is_success(self, log_service: LogService, status_code: int) -> None:
        """Test that a status below 400 still yields headers_received then done."""
        sink = run_upload(lambda s: {"url": URL}, lambda r: httpx.Response(status_code), log_service)
        assert sink.statuses == [FileStatus.HEADERS_RECEIVED, FileStatus.DONE]

    def test_undecodable_response(self, log_service: LogService) -> None:
        """Test that a body httpx cannot decode yields exception_upload."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"Content-Encoding": "gzip"}, content=b"not gzip")

        sink = run_upload(lambda s: {"url": URL}, handler, log_service)
        assert sink.statuses[-1] is FileStatus.EXCEPTION_UPLOAD
        assert FileStatus.DONE not in sink.statuses

        entries = log_service.read_log_entries(category="upload", level="ERROR")["entries"]
        assert entries[0]["metadata"]["error_type"] == "DecodingError"

    def test_local_file_gone(self, log_service: LogService, tmp_path: Path) -> None:
        """Test that a source deleted after acceptance yields exception_upload."""
        path = tmp_path / "gone.txt"
        path.write_bytes(b"soon deleted")
        file = LocalFile.from_path(path)
        path.unlink()

        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200)

        snapshot = FileSnapshot.of(
            file,
            FileMeta(
                id=3,
                name=file.name,
                size=file.size,
                type=file.type,
                uploaded_date="2026-01-01T00:00:00+00:00",
                status=FileStatus.UPLOADING,
            ),
        )
        sink = run_upload(lambda s: {"url": URL}, handler, log_service, snapshot)

        assert sink.statuses == [FileStatus.EXCEPTION_UPLOAD]
        assert requests == []

    def test_provider_error_is_not_converted(self, log_service: LogService) -> None:
        """Test that a provider raising OSError ends the task instead of setting a status."""

        def provider(snapshot: FileSnapshot) -> dict[str, Any]:
            raise OSError("credentials unavailable")

        sink = FakeSink()

        async def scenario() -> BaseException | None:
            transport = UploadTransport(
                provider, client=mock_client(lambda r: httpx.Response(200)), log_service=log_service
            )
            handle = transport.start(make_snapshot(), sink)
            await handle.wait()
            return handle.task.exception()

        assert isinstance(asyncio.run(scenario()), OSError)
        assert sink.statuses == []
