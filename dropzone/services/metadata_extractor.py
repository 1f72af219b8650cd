"""Best-effort preview metadata extraction for image, audio and video files."""

import asyncio
import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse

import mutagen
from PIL import Image

from dropzone.config import PREVIEW_TYPES
from dropzone.services.log_service import LogService, get_log_service
from dropzone.services.raw_file import RawFile

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024


@dataclass
class MediaProbe:
    """Outcome of one extraction.

    ``fields`` holds whatever metadata could be read, using FileMeta attribute
    names. ``error`` is set when decoding failed; the fields are then partial.
    """

    kind: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def media_kind(mime_type: str) -> str | None:
    """Return 'image', 'audio' or 'video' for a MIME type, else None."""
    prefix = (mime_type or "").split("/", 1)[0].lower()
    return prefix if prefix in PREVIEW_TYPES else None


def _read_image_size(path: Path) -> dict[str, Any]:
    with Image.open(path) as img:
        return {"width": img.width, "height": img.height}


def _read_audio_duration(path: Path) -> dict[str, Any]:
    audio = mutagen.File(path)
    if audio is None or audio.info is None:
        raise ValueError(f"Unrecognized audio format: {path.name}")
    return {"duration": float(audio.info.length)}


class MetadataExtractor:
    """Derives dimensions and duration for media files without raising.

    Each probed file is first spooled to a temporary copy. The copy is deleted
    as soon as decoding finishes, except for successfully decoded images:
    their copy backs ``preview_url`` and stays until ``release()`` is called.
    """

    def __init__(
        self,
        preview_types: frozenset[str] | set[str] | None = None,
        spool_dir: Path | None = None,
        ffprobe_path: str = "ffprobe",
        log_service: LogService | None = None,
    ) -> None:
        self.preview_types = frozenset(PREVIEW_TYPES if preview_types is None else preview_types)
        self.spool_dir = spool_dir.absolute() if spool_dir is not None else None
        self.ffprobe_path = ffprobe_path
        self._log = log_service or get_log_service()

    def _get_spool_dir(self) -> Path:
        if self.spool_dir is None:
            self.spool_dir = Path(tempfile.mkdtemp(prefix="dropzone_preview_"))
        self.spool_dir.mkdir(parents=True, exist_ok=True)
        return self.spool_dir

    def _spool(self, file: RawFile) -> Path:
        """Copy the file's bytes to a temporary file and return its path."""
        suffix = Path(file.name).suffix
        fd, temp_name = tempfile.mkstemp(
            prefix="preview_", suffix=suffix, dir=self._get_spool_dir()
        )
        with os.fdopen(fd, "wb") as out, file.open() as src:
            shutil.copyfileobj(src, out, COPY_CHUNK_SIZE)
        return Path(temp_name)

    async def _probe_video(self, path: Path) -> dict[str, Any]:
        """Read duration and pixel size of the first video stream with ffprobe."""
        proc = await asyncio.create_subprocess_exec(
            self.ffprobe_path,
            "-v",
            "error",
            "-select_streams",
            "v:0",
            "-show_entries",
            "stream=width,height:format=duration",
            "-of",
            "json",
            str(path),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            raise RuntimeError(stderr.decode(errors="replace").strip() or "ffprobe failed")

        data = json.loads(stdout or b"{}")
        fields: dict[str, Any] = {}
        duration = data.get("format", {}).get("duration")
        if duration is not None:
            fields["duration"] = float(duration)
        streams = data.get("streams") or []
        if streams:
            fields["video_width"] = int(streams[0]["width"])
            fields["video_height"] = int(streams[0]["height"])
        return fields

    async def extract(self, file: RawFile) -> MediaProbe:
        """Extract preview metadata for one file.

        Never raises for decode problems; failures are reported through
        ``MediaProbe.error``. Cancellation still propagates.

        Args:
            file: The raw file to probe

        Returns:
            The probe result; ``kind`` is None when nothing was attempted
        """
        kind = media_kind(file.type)
        if kind is None or kind not in self.preview_types:
            return MediaProbe()

        probe = MediaProbe(kind=kind)
        path: Path | None = None
        keep_copy = False
        try:
            path = await asyncio.to_thread(self._spool, file)
            if kind == "image":
                probe.fields.update(await asyncio.to_thread(_read_image_size, path))
                probe.fields["preview_url"] = path.as_uri()
                keep_copy = True
            elif kind == "audio":
                probe.fields.update(await asyncio.to_thread(_read_audio_duration, path))
            else:
                probe.fields.update(await self._probe_video(path))
        except Exception as e:
            probe.error = str(e) or type(e).__name__
            logger.debug("Preview extraction failed for %s", file.name, exc_info=True)
            self._log.warning(
                "preview",
                "preview_failed",
                f"Could not read {kind} metadata for {file.name}: {probe.error}",
                {"filename": file.name, "type": file.type, "error": probe.error},
            )
        finally:
            if path is not None and not keep_copy:
                path.unlink(missing_ok=True)

        return probe

    def release(self, preview_url: str | None) -> bool:
        """Delete the temporary copy behind an image ``preview_url``.

        Returns:
            True if a file was removed
        """
        if not preview_url or not preview_url.startswith("file://"):
            return False
        path = Path(unquote(urlparse(preview_url).path))
        if self.spool_dir is None or path.parent != self.spool_dir:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def cleanup(self) -> None:
        """Remove the spool directory and every retained preview copy."""
        if self.spool_dir is not None and self.spool_dir.exists():
            shutil.rmtree(self.spool_dir, ignore_errors=True)
