"""File lifecycle manager: acceptance, preview, ready gate and upload."""

import asyncio
import itertools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from dropzone.config import DropzoneOptions
from dropzone.services.log_service import LogService, get_log_service
from dropzone.services.metadata_extractor import MetadataExtractor
from dropzone.services.models import FileMeta, FileSnapshot, FileStatus
from dropzone.services.raw_file import RawFile
from dropzone.services.upload_transport import (
    UploadHandle,
    UploadParamsProvider,
    UploadTransport,
)
from dropzone.services.utils import LEGACY_DRAG_MIME_TYPE, accepts as default_accepts

logger = logging.getLogger(__name__)

SnapshotHook = Callable[[FileSnapshot], Any]
StatusHook = Callable[[FileSnapshot, FileStatus], "Mapping[str, Any] | None"]
RefreshHook = Callable[[list[FileSnapshot]], None]
AcceptsPredicate = Callable[[RawFile, str], bool]


class LatchState(Enum):
    """State of a one-shot upload trigger."""

    PENDING = "pending"
    STARTED = "started"


class UploadLatch:
    """One-shot trigger; only the first ``fire()`` runs the action."""

    def __init__(self, action: Callable[[], None]) -> None:
        self._action = action
        self.state = LatchState.PENDING

    def fire(self) -> bool:
        """Run the action if it has not run yet.

        Returns:
            True if this call started the upload
        """
        if self.state is LatchState.STARTED:
            return False
        self.state = LatchState.STARTED
        self._action()
        return True

    def close(self) -> None:
        """Mark as started without running the action."""
        self.state = LatchState.STARTED

    __call__ = fire


@dataclass(eq=False)
class FileRecord:
    """State tracked for one accepted file."""

    file: RawFile
    meta: FileMeta
    transport_handle: UploadHandle | None = None
    trigger_upload: UploadLatch | None = None

    @property
    def id(self) -> int:
        return self.meta.id

    @property
    def status(self) -> FileStatus:
        return self.meta.status

    @property
    def awaiting_trigger(self) -> bool:
        """True while the upload start is deferred by the ready gate."""
        return self.trigger_upload is not None and self.trigger_upload.state is LatchState.PENDING

    def snapshot(self, with_trigger: bool = False) -> FileSnapshot:
        trigger = self.trigger_upload.fire if with_trigger and self.trigger_upload else None
        return FileSnapshot.of(self.file, self.meta, trigger)


class _RecordSink:
    """Upload sink bound to one record and one transport handle.

    Events from a handle that has been superseded by a restart are dropped.
    """

    def __init__(self, manager: "FileLifecycleManager", record: FileRecord) -> None:
        self._manager = manager
        self._record = record
        self.handle: UploadHandle | None = None

    def _is_current(self) -> bool:
        return self.handle is not None and self._record.transport_handle is self.handle

    def merge_meta(self, extra: Mapping[str, Any]) -> None:
        if self._is_current():
            self._record.meta.merge(extra)

    def set_progress(self, percent: float) -> None:
        if self._is_current():
            self._manager._update_progress(self._record, percent)

    def set_status(self, status: FileStatus) -> None:
        if self._is_current():
            self._manager._set_status(self._record, status)


def _wants_delay(result: Any) -> bool:
    return isinstance(result, Mapping) and result.get("delay_upload") is True


def _iso_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class FileLifecycleManager:
    """Owns the retained files and drives each through its lifecycle.

    All methods must be called from the event loop thread. ``accept()``
    performs the type, capacity and size checks synchronously and then runs
    preview extraction, the ready gate and the upload start in one task per
    file.

    Collaborator hooks receive read-only ``FileSnapshot`` objects:

    - ``get_upload_params(snapshot)``: sync or async, returns a mapping with
      ``url`` and optional ``method``, ``fields``, ``headers``, ``meta``.
      Without it, files go straight to ``done``.
    - ``on_change_status(snapshot, status)``: may return ``{"meta": {...}}``
      to merge over the record's metadata (``status`` and ``id`` excluded).
    - ``on_upload_ready(snapshot)``: returning ``{"delay_upload": True}``
      defers the upload until ``snapshot.trigger_upload()`` is called.
    - ``on_cancel``, ``on_remove``, ``on_restart``, ``on_submit``: notifications.
    - ``on_refresh(files)``: view refresh signal, called after every change.
    """

    def __init__(
        self,
        options: DropzoneOptions | None = None,
        *,
        get_upload_params: UploadParamsProvider | None = None,
        on_change_status: StatusHook | None = None,
        on_upload_ready: SnapshotHook | None = None,
        on_cancel: SnapshotHook | None = None,
        on_remove: SnapshotHook | None = None,
        on_restart: SnapshotHook | None = None,
        on_submit: Callable[[list[FileSnapshot]], Any] | None = None,
        on_refresh: RefreshHook | None = None,
        accepts: AcceptsPredicate = default_accepts,
        extractor: MetadataExtractor | None = None,
        transport: UploadTransport | None = None,
        id_factory: Callable[[], int] | None = None,
        log_service: LogService | None = None,
    ) -> None:
        self.options = options or DropzoneOptions()
        self.on_change_status = on_change_status
        self.on_upload_ready = on_upload_ready
        self.on_cancel = on_cancel
        self.on_remove = on_remove
        self.on_restart = on_restart
        self.on_submit = on_submit
        self.on_refresh = on_refresh
        self.accepts = accepts
        self._log = log_service or get_log_service()
        self._owns_extractor = extractor is None
        self.extractor = extractor or MetadataExtractor(
            preview_types=self.options.preview_types, log_service=self._log
        )
        if transport is None and get_upload_params is not None:
            transport = UploadTransport(get_upload_params, log_service=self._log)
        self.transport = transport
        self._next_id = id_factory or itertools.count().__next__

        self._records: list[FileRecord] = []
        self._pipelines: dict[int, asyncio.Task[None]] = {}
        self._handles: set[UploadHandle] = set()
        self._closed = False

    # -- collection access -------------------------------------------------

    @property
    def is_upload(self) -> bool:
        """Whether accepted files are sent through the upload transport."""
        return self.transport is not None

    @property
    def files(self) -> list[FileSnapshot]:
        """Snapshots of the retained files in acceptance order."""
        return [record.snapshot() for record in self._records]

    def __len__(self) -> int:
        return len(self._records)

    def get(self, record_id: int) -> FileSnapshot | None:
        record = self._find(record_id)
        return record.snapshot() if record else None

    def _find(self, ref: "int | FileRecord | FileSnapshot") -> FileRecord | None:
        record_id = ref if isinstance(ref, int) else ref.id
        for record in self._records:
            if record.id == record_id:
                return record
        return None

    # -- notification ------------------------------------------------------

    def _refresh(self) -> None:
        if self.on_refresh is not None:
            self.on_refresh(self.files)

    def _notify(self, record: FileRecord) -> None:
        """Invoke the status hook and merge any metadata it returns."""
        if self.on_change_status is None:
            return
        result = self.on_change_status(record.snapshot(), record.status)
        meta = result.get("meta") if isinstance(result, Mapping) else None
        if meta:
            record.meta.merge(meta)
            self._refresh()

    def _set_status(self, record: FileRecord, status: FileStatus, refresh: bool = True) -> None:
        record.meta.status = status
        if status.is_complete:
            record.meta.percent = 100.0

        level = "ERROR" if status.is_error else "INFO"
        self._log.log(
            level,
            "lifecycle",
            f"file_{status.value}",
            f"{record.meta.name} is {status.value}",
            {"file_id": record.id, "filename": record.meta.name, "status": status.value},
        )
        self._notify(record)
        if refresh:
            self._refresh()

    def _update_progress(self, record: FileRecord, percent: float) -> None:
        if record.status is not FileStatus.UPLOADING:
            return
        percent = min(100.0, max(0.0, percent))
        if percent < record.meta.percent:
            return
        record.meta.percent = percent
        self._refresh()

    # -- acceptance --------------------------------------------------------

    def accept(self, files: Iterable[RawFile]) -> list[asyncio.Task[None]]:
        """Accept raw files, each through its own independent pipeline.

        Must be called with a running event loop.

        Args:
            files: Raw file handles from the selection layer

        Returns:
            Pipeline tasks for the files that passed every check
        """
        if self._closed:
            logger.warning("Ignoring files offered to a closed manager")
            return []
        tasks: list[asyncio.Task[None]] = []
        for file in files:
            task = self._admit(file)
            if task is not None:
                tasks.append(task)
        return tasks

    def _admit(self, file: RawFile) -> asyncio.Task[None] | None:
        meta = FileMeta(
            id=self._next_id(),
            name=file.name,
            size=file.size,
            type=file.type,
            uploaded_date=datetime.now(UTC).isoformat(),
            last_modified_date=_iso_timestamp(file.last_modified),
            status=FileStatus.PREPARING,
        )
        record = FileRecord(file=file, meta=meta)

        if file.type != LEGACY_DRAG_MIME_TYPE and not self.accepts(file, self.options.accept):
            self._reject(record, FileStatus.REJECTED_FILE_TYPE)
            return None
        if len(self._records) >= self.options.max_files:
            self._reject(record, FileStatus.REJECTED_MAX_FILES)
            return None

        self._records.append(record)
        self._log.info(
            "lifecycle",
            "file_accepted",
            f"Accepted {file.name}",
            {"file_id": record.id, "filename": file.name, "size": file.size, "type": file.type},
        )
        self._set_status(record, FileStatus.PREPARING)

        if not self.options.min_size_bytes <= file.size <= self.options.max_size_bytes:
            self._set_status(record, FileStatus.ERROR_FILE_SIZE)
            return None

        task = asyncio.create_task(self._run_pipeline(record), name=f"pipeline-{record.id}")
        self._pipelines[record.id] = task
        task.add_done_callback(lambda t, rid=record.id: self._pipeline_done(rid, t))
        return task

    def _reject(self, record: FileRecord, status: FileStatus) -> None:
        record.meta.status = status
        self._log.warning(
            "lifecycle",
            "file_rejected",
            f"Rejected {record.meta.name}: {status.value}",
            {"file_id": record.id, "filename": record.meta.name, "status": status.value},
        )
        self._notify(record)

    def _pipeline_done(self, record_id: int, task: "asyncio.Task[None]") -> None:
        if self._pipelines.get(record_id) is task:
            del self._pipelines[record_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error("File pipeline %s failed", record_id, exc_info=task.exception())

    async def _run_pipeline(self, record: FileRecord) -> None:
        probe = await self.extractor.extract(record.file)
        if probe.fields:
            record.meta.merge(probe.fields)
        self._refresh()

        latch = UploadLatch(lambda: self._start_upload(record))
        record.trigger_upload = latch

        if self.on_upload_ready is not None:
            result = self.on_upload_ready(record.snapshot(with_trigger=True))
            if _wants_delay(result):
                self._log.info(
                    "lifecycle",
                    "file_upload_deferred",
                    f"Upload of {record.meta.name} deferred",
                    {"file_id": record.id, "filename": record.meta.name},
                )
                return

        latch.fire()

    # -- upload ------------------------------------------------------------

    def _start_upload(self, record: FileRecord) -> None:
        if self.transport is not None:
            self._begin_transport(record)
            self._set_status(record, FileStatus.UPLOADING)
        else:
            self._set_status(record, FileStatus.DONE)

    def _begin_transport(self, record: FileRecord) -> UploadHandle:
        assert self.transport is not None
        previous = record.transport_handle

        sink = _RecordSink(self, record)
        handle = self.transport.start(record.snapshot(), sink)
        sink.handle = handle
        record.transport_handle = handle

        self._handles.add(handle)
        handle.add_done_callback(self._transport_done)

        if previous is not None and not previous.done:
            previous.abort()
        return handle

    def _transport_done(self, handle: UploadHandle) -> None:
        self._handles.discard(handle)
        task = handle.task
        if not task.cancelled() and task.exception() is not None:
            logger.error("Upload task %s failed", task.get_name(), exc_info=task.exception())

    def trigger_upload(self, ref: "int | FileRecord | FileSnapshot") -> bool:
        """Start a deferred upload from outside the ready-gate hook.

        Returns:
            True if this call started the upload
        """
        record = self._find(ref)
        if record is None or record.trigger_upload is None:
            return False
        return record.trigger_upload.fire()

    # -- user operations ---------------------------------------------------

    def cancel(self, ref: "int | FileRecord | FileSnapshot") -> bool:
        """Abort a record's upload; the status becomes ``aborted`` asynchronously.

        Returns:
            True if a transport handle existed and was signalled
        """
        record = self._find(ref)
        if record is None or record.transport_handle is None:
            return False
        record.transport_handle.abort()
        if self.on_cancel is not None:
            self.on_cancel(record.snapshot())
        return True

    def remove(self, ref: "int | FileRecord | FileSnapshot") -> bool:
        """Remove a record from the collection. Unknown ids are ignored.

        Returns:
            True if a record was removed
        """
        record = self._find(ref)
        if record is None:
            return False

        if self.on_remove is not None:
            self.on_remove(record.snapshot())
        self._records.remove(record)

        pipeline = self._pipelines.pop(record.id, None)
        if pipeline is not None and not pipeline.done():
            pipeline.cancel()

        self._log.info(
            "lifecycle",
            "file_removed",
            f"Removed {record.meta.name}",
            {"file_id": record.id, "filename": record.meta.name},
        )
        self._refresh()
        return True

    def restart(self, ref: "int | FileRecord | FileSnapshot") -> bool:
        """Start a fresh upload for a record, superseding any prior transport.

        Returns:
            True if an upload was started
        """
        record = self._find(ref)
        if record is None:
            return False
        if self._closed:
            logger.warning("Cannot restart %s: manager is closed", record.meta.name)
            return False
        if self.transport is None:
            logger.warning("Cannot restart %s: no upload-parameter provider", record.meta.name)
            return False

        if record.trigger_upload is not None:
            record.trigger_upload.close()
        record.meta.percent = 0.0
        self._begin_transport(record)
        self._set_status(record, FileStatus.UPLOADING, refresh=False)
        if self.on_restart is not None:
            self.on_restart(record.snapshot())
        self._refresh()
        return True

    def submit(self) -> list[FileSnapshot]:
        """Hand the retained files to the submit hook."""
        files = self.files
        if self.on_submit is not None:
            self.on_submit(files)
        self._log.info(
            "lifecycle", "files_submitted", f"Submitted {len(files)} files", {"count": len(files)}
        )
        return files

    def release_preview(self, ref: "int | FileRecord | FileSnapshot") -> bool:
        """Reclaim the temporary copy behind a record's image preview."""
        record = self._find(ref)
        if record is None or not self.extractor.release(record.meta.preview_url):
            return False
        record.meta.preview_url = None
        self._refresh()
        return True

    # -- lifetime ----------------------------------------------------------

    async def wait_idle(self) -> None:
        """Wait until no pipeline or upload is in flight."""
        while True:
            pending = [t for t in self._pipelines.values() if not t.done()]
            pending.extend(h.task for h in self._handles if not h.done)
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def aclose(self) -> None:
        """Abort every in-flight upload and stop pending pipelines."""
        if self._closed:
            return
        self._closed = True

        for record in self._records:
            if record.status is FileStatus.UPLOADING and record.transport_handle is not None:
                record.transport_handle.abort()
        # Superseded or removed uploads must not outlive the manager either
        for handle in list(self._handles):
            handle.abort()
        for task in list(self._pipelines.values()):
            task.cancel()

        pending = [h.task for h in self._handles] + list(self._pipelines.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if self.transport is not None:
            await self.transport.aclose()
        if self._owns_extractor:
            self.extractor.cleanup()

    async def __aenter__(self) -> "FileLifecycleManager":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
