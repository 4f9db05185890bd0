"""Handler for the ``logs`` command: archive local logs and upload them."""

from __future__ import annotations

import asyncio
import glob
import logging
import tarfile
import tempfile
import uuid
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from ..adapters.blob_store import BlobStore
from ..config import LogsConfig
from ..errors import UploadError
from ..models import LogsCommand

LOGGER = logging.getLogger(__name__)

ARCHIVE_CONTENT_TYPE = "application/gzip"


class LogsJob:
    """Bundles the configured log sources into a ``.tar.gz`` and uploads it.

    Archive names come from ``id_factory`` (``uuid4`` by default). The local
    archive lives in a temporary directory and is removed once the upload
    attempt finishes. When ``retain_uploaded`` is positive, archives uploaded
    by this process beyond that count are deleted from the blob store, oldest
    first.
    """

    def __init__(
        self,
        config: LogsConfig,
        blob_store: BlobStore,
        *,
        id_factory: Optional[Callable[[], str]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._blob_store = blob_store
        self._id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self._log = logger or LOGGER
        self._uploaded: Deque[str] = deque()

    async def execute(self, command: LogsCommand) -> Dict[str, Any]:
        key = f"{self._id_factory()}.tar.gz"

        with tempfile.TemporaryDirectory(prefix="ember-logs-") as workdir:
            archive_path = Path(workdir) / key
            files = await asyncio.to_thread(
                build_log_archive, self._config.sources, archive_path
            )
            self._log.info("Archived %d log file(s) into %s", len(files), key)
            data = archive_path.read_bytes()

            try:
                url = await self._blob_store.put(key, data, ARCHIVE_CONTENT_TYPE)
            except UploadError as exc:
                self._log.error("Error uploading log archive %s: %s", key, exc)
                raise

        self._uploaded.append(key)
        await self._enforce_retention()

        return {"url": url, "key": key}

    async def _enforce_retention(self) -> None:
        limit = self._config.retain_uploaded
        if limit <= 0:
            return

        while len(self._uploaded) > limit:
            expired = self._uploaded.popleft()
            try:
                await self._blob_store.delete(expired)
            except UploadError as exc:
                self._log.warning("Failed to delete old log archive %s: %s", expired, exc)
            else:
                self._log.info("Deleted old log archive %s", expired)


def collect_log_files(sources: Sequence[str]) -> List[Path]:
    """Expand glob patterns and return the existing regular files, deduplicated."""

    seen: set[Path] = set()
    files: List[Path] = []
    for source in sources:
        pattern = str(Path(source).expanduser())
        matches = sorted(glob.glob(pattern)) if glob.has_magic(pattern) else [pattern]
        for match in matches:
            path = Path(match)
            if not path.is_file() or path in seen:
                continue
            seen.add(path)
            files.append(path)
    return files


def build_log_archive(sources: Sequence[str], archive_path: Path) -> List[Path]:
    """Write a gzip-compressed tar of the log sources to ``archive_path``.

    Entries are stored under their base name; when two sources share a base
    name the later one is prefixed with its index.
    """

    files = collect_log_files(sources)
    names: set[str] = set()
    with tarfile.open(archive_path, "w:gz") as archive:
        for index, path in enumerate(files):
            arcname = path.name
            if arcname in names:
                arcname = f"{index}-{arcname}"
            names.add(arcname)
            archive.add(path, arcname=arcname, recursive=False)
    return files
