"""Multipart HTTP upload of a single file with progress reporting."""

import asyncio
import inspect
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Protocol

import httpx

from dropzone.services.log_service import LogService, get_log_service
from dropzone.services.models import FileSnapshot, FileStatus

logger = logging.getLogger(__name__)

REQUESTED_WITH_HEADER = "X-Requested-With"
REQUESTED_WITH_VALUE = "XMLHttpRequest"
FILE_FIELD_NAME = "file"
DEFAULT_METHOD = "POST"

# May return the params directly or an awaitable resolving to them
UploadParamsProvider = Callable[[FileSnapshot], Any]


class UploadSink(Protocol):
    """Narrow write access to one record, granted to the transport."""

    def merge_meta(self, extra: Mapping[str, Any]) -> None: ...

    def set_progress(self, percent: float) -> None: ...

    def set_status(self, status: FileStatus) -> None: ...


@dataclass
class UploadParams:
    """Destination and request details returned by an upload-parameter provider."""

    url: str | None = None
    method: str = DEFAULT_METHOD
    fields: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_provider(cls, result: Mapping[str, Any] | None) -> "UploadParams":
        """Normalize a provider result; a missing result yields no url."""
        if not result:
            return cls()
        meta = dict(result.get("meta") or {})
        meta.pop("status", None)
        return cls(
            url=result.get("url") or None,
            method=(result.get("method") or DEFAULT_METHOD).upper(),
            fields=dict(result.get("fields") or {}),
            headers={str(k): str(v) for k, v in (result.get("headers") or {}).items()},
            meta=meta,
        )


def static_upload_params(url: str, method: str = DEFAULT_METHOD) -> UploadParamsProvider:
    """Build a provider that sends every file to the same URL."""

    def provider(snapshot: FileSnapshot) -> dict[str, Any]:
        return {"url": url, "method": method}

    return provider


class ProgressReader:
    """File wrapper that reports how far the request body has been read."""

    def __init__(
        self,
        raw: BinaryIO,
        total_size: int,
        callback: Callable[[float], None],
    ) -> None:
        self._raw = raw
        self.total_size = total_size
        self._callback = callback

    def read(self, size: int = -1) -> bytes:
        chunk = self._raw.read(size)
        if chunk:
            self._callback(self.percent(self._raw.tell()))
        return chunk

    def percent(self, loaded: int) -> float:
        # Unknown or empty totals count as complete
        if self.total_size <= 0:
            return 100.0
        return min(100.0, loaded * 100.0 / self.total_size)

    def seek(self, offset: int, whence: int = 0) -> int:
        return self._raw.seek(offset, whence)

    def tell(self) -> int:
        return self._raw.tell()

    def fileno(self) -> int:
        return self._raw.fileno()


class UploadHandle:
    """Abortable in-flight upload for one record."""

    def __init__(self, task: "asyncio.Task[None] | None" = None) -> None:
        self.task = task
        # Set once the upload coroutine has begun executing
        self.started = False

    def abort(self) -> bool:
        """Request cancellation; the transport reports ``aborted`` once delivered."""
        return self.task.cancel()

    @property
    def done(self) -> bool:
        return self.task.done()

    def add_done_callback(self, callback: Callable[["UploadHandle"], None]) -> None:
        self.task.add_done_callback(lambda _task: callback(self))

    async def wait(self) -> None:
        """Wait for the upload to settle, whatever its outcome."""
        await asyncio.gather(self.task, return_exceptions=True)


class UploadTransport:
    """Performs one multipart upload per ``start()`` call.

    Outcomes are never raised to the caller; they are delivered as status
    changes on the sink. A provider raising is not guarded and ends the task
    with that exception.
    """

    def __init__(
        self,
        get_upload_params: UploadParamsProvider,
        client: httpx.AsyncClient | None = None,
        log_service: LogService | None = None,
    ) -> None:
        self.get_upload_params = get_upload_params
        self._client = client
        self._owns_client = client is None
        self._log = log_service or get_log_service()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # Stalled uploads stay in flight until cancelled
            self._client = httpx.AsyncClient(timeout=None)
        return self._client

    def start(self, snapshot: FileSnapshot, sink: UploadSink) -> UploadHandle:
        """Start uploading a file in the background.

        Args:
            snapshot: Read-only view of the record to upload
            sink: Write access used to report progress and status

        Returns:
            Handle that can abort the upload
        """
        handle = UploadHandle()
        handle.task = asyncio.create_task(
            self._upload(snapshot, sink, handle), name=f"upload-{snapshot.id}"
        )
        handle.task.add_done_callback(lambda task: self._settle_unstarted(task, sink, handle))
        return handle

    def _settle_unstarted(
        self, task: "asyncio.Task[None]", sink: UploadSink, handle: UploadHandle
    ) -> None:
        # A task cancelled before its first step never enters _upload
        if task.cancelled() and not handle.started:
            sink.set_status(FileStatus.ABORTED)

    async def _resolve_params(self, snapshot: FileSnapshot) -> UploadParams:
        result = self.get_upload_params(snapshot)
        if inspect.isawaitable(result):
            result = await result
        return UploadParams.from_provider(result)

    async def _upload(
        self, snapshot: FileSnapshot, sink: UploadSink, handle: UploadHandle
    ) -> None:
        handle.started = True
        file = snapshot.file
        log_meta: dict[str, Any] = {"file_id": snapshot.id, "filename": file.name}

        try:
            params = await self._resolve_params(snapshot)
            if not params.url:
                self._log.error(
                    "upload",
                    "upload_params_missing",
                    f"No upload destination for {file.name}",
                    log_meta,
                )
                sink.set_status(FileStatus.ERROR_UPLOAD_PARAMS)
                return

            if params.meta:
                sink.merge_meta(params.meta)

            log_meta.update({"url": params.url, "method": params.method})
            self._log.info(
                "upload", "file_upload_started", f"Uploading {file.name}", log_meta
            )
            await self._send(snapshot, params, sink, log_meta)

        except asyncio.CancelledError:
            self._log.warning(
                "upload", "file_upload_aborted", f"Upload of {file.name} aborted", log_meta
            )
            sink.set_status(FileStatus.ABORTED)
            raise

    async def _send(
        self,
        snapshot: FileSnapshot,
        params: UploadParams,
        sink: UploadSink,
        log_meta: dict[str, Any],
    ) -> None:
        file = snapshot.file
        headers = {REQUESTED_WITH_HEADER: REQUESTED_WITH_VALUE, **params.headers}
        form_fields = {str(k): str(v) for k, v in params.fields.items()}
        client = self._get_client()

        # Unreadable sources and every httpx failure end as exception_upload
        try:
            with file.open() as raw:
                body = ProgressReader(raw, file.size, sink.set_progress)
                request = client.build_request(
                    params.method,
                    params.url,
                    data=form_fields,
                    files={FILE_FIELD_NAME: (file.name, body, file.type)},
                    headers=headers,
                )
                response = await client.send(request, stream=True)

            try:
                if response.is_error:
                    self._fail(sink, response, log_meta)
                    return
                sink.set_status(FileStatus.HEADERS_RECEIVED)

                await response.aread()
                sink.set_status(FileStatus.DONE)
                self._log.info(
                    "upload",
                    "file_upload_completed",
                    f"Uploaded {file.name}",
                    {**log_meta, "status_code": response.status_code},
                )
            finally:
                await response.aclose()

        except (httpx.HTTPError, OSError) as e:
            logger.debug("Upload failure for %s", file.name, exc_info=True)
            self._log.error(
                "upload",
                "file_upload_exception",
                f"Error uploading {file.name}: {e}",
                {**log_meta, "error": str(e), "error_type": type(e).__name__},
            )
            sink.set_status(FileStatus.EXCEPTION_UPLOAD)

    def _fail(self, sink: UploadSink, response: httpx.Response, log_meta: dict[str, Any]) -> None:
        self._log.error(
            "upload",
            "file_upload_failed",
            f"Upload of {log_meta['filename']} failed with HTTP {response.status_code}",
            {**log_meta, "status_code": response.status_code},
        )
        sink.set_status(FileStatus.ERROR_UPLOAD)

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
