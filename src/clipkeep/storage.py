import asyncio
import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

from clipkeep.config import BACKUP_SUFFIX, REGISTRY_FILE, RegistryConfig
from clipkeep.models import ClipboardEntry
from clipkeep.utils import ensure_dir, looks_like_hash, png_dimensions

logger = logging.getLogger(__name__)


class RegistryError(Exception):
    pass


class RegistryReadError(RegistryError):
    pass


@dataclass
class ImageHandle:
    """What the presentation layer needs to display an image entry."""

    path: Path
    width: int = 0
    height: int = 0


@dataclass
class RegistryStats:
    root: Path
    index_exists: bool
    index_size: int
    backup_exists: bool
    blob_count: int
    blob_bytes: int


def prune(entries: Iterable[ClipboardEntry], limit: int) -> list[ClipboardEntry]:
    """Drop the oldest non-favorite entries until at most ``limit`` remain.

    Order is oldest first. Favorites are neither counted nor removed.
    """
    result = list(entries)
    excess = sum(1 for e in result if not e.is_favorite()) - max(0, limit)
    if excess <= 0:
        return result

    kept = []
    for entry in result:
        if excess > 0 and not entry.is_favorite():
            excess -= 1
            continue
        kept.append(entry)
    return kept


def _write_atomic(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _file_size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except FileNotFoundError:
        return None


def _parse_index(raw: bytes) -> list:
    # Deeply nested garbage makes json raise RecursionError rather than ValueError.
    try:
        records = json.loads(raw.decode("utf-8"))
    except (ValueError, RecursionError) as e:
        raise RegistryReadError("index is not valid UTF-8 JSON") from e
    if not isinstance(records, list):
        raise RegistryReadError("index does not hold a JSON array")
    return records


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background registry write failed", exc_info=exc)


class Registry:
    """On-disk clipboard history: one JSON index plus one file per binary payload.

    Layout under ``<cache_dir>/<app_id>/``::

        registry.txt    JSON array of {favorite, mimetype, contents}
        registry.txt~   last index rotated away for being oversized
        <sha256>        raw bytes of a binary entry

    The caller owns the in-memory history; this class only persists and
    restores it. Blob writes, index replacements and garbage collection made
    through one instance are serialized in submission order. Reads are not
    fenced against writes.
    """

    def __init__(self, config: RegistryConfig | None = None):
        self._config = config or RegistryConfig.from_env()
        self._write_lock = asyncio.Lock()

    @property
    def config(self) -> RegistryConfig:
        return self._config

    @property
    def root(self) -> Path:
        return self._config.root

    @property
    def index_path(self) -> Path:
        return self.root / REGISTRY_FILE

    @property
    def backup_path(self) -> Path:
        return self.root / (REGISTRY_FILE + BACKUP_SUFFIX)

    def entry_filename(self, entry: ClipboardEntry) -> Path:
        return self.root / entry.content_hash()

    def blob_exists(self, entry: ClipboardEntry) -> bool:
        return self.entry_filename(entry).exists()

    def _blob_path(self, reference: str) -> Path:
        path = Path(reference)
        return path if path.is_absolute() else self.root / path

    @staticmethod
    def _delete_files(*paths: Path) -> None:
        for path in paths:
            if path.exists():
                path.unlink()

    # -- writing --------------------------------------------------------

    def _snapshot(self, entries: Iterable[ClipboardEntry]) -> tuple[bytes, dict[Path, bytes]]:
        records = []
        blobs: dict[Path, bytes] = {}
        for entry in entries:
            if entry.is_text():
                records.append(entry.to_record())
            else:
                path = self.entry_filename(entry)
                records.append(entry.to_record(str(path)))
                blobs.setdefault(path, entry.data)
        return json.dumps(records, ensure_ascii=False).encode("utf-8"), blobs

    async def _commit(self, payload: bytes, blobs: dict[Path, bytes]) -> None:
        # Blobs go to disk before the index that references them.
        async with self._write_lock:
            await asyncio.to_thread(ensure_dir, self.root)
            await asyncio.gather(*(self._write_blob(path, data) for path, data in blobs.items()))
            await asyncio.to_thread(_write_atomic, self.index_path, payload)
        logger.debug("Wrote %d bytes (%d blobs) to %s", len(payload), len(blobs), self.index_path)

    async def _write_blob(self, path: Path, data: bytes) -> None:
        if await asyncio.to_thread(path.exists):
            return
        await asyncio.to_thread(ensure_dir, path.parent)
        await asyncio.to_thread(_write_atomic, path, data)

    async def write(self, entries: Iterable[ClipboardEntry]) -> None:
        """Persist ``entries`` in order, replacing the previous index."""
        payload, blobs = self._snapshot(entries)
        await self._commit(payload, blobs)

    def submit_write(self, entries: Iterable[ClipboardEntry]) -> asyncio.Task:
        """Schedule a write of ``entries`` as they are now. Failures are logged."""
        payload, blobs = self._snapshot(entries)
        task = asyncio.get_running_loop().create_task(self._commit(payload, blobs))
        task.add_done_callback(_log_task_failure)
        return task

    async def write_entry_file(self, entry: ClipboardEntry) -> None:
        async with self._write_lock:
            await self._write_blob(self.entry_filename(entry), entry.data)

    # -- reading --------------------------------------------------------

    async def load(self) -> list[ClipboardEntry]:
        """Restore the history, pruned to the configured size.

        Returns ``[]`` when there is no index yet, or when the index has grown
        past the size limit (it is moved to :attr:`backup_path` first).

        Raises:
            RegistryReadError: the index or one of its blobs could not be
                read or decoded. Nothing is returned for the batch.
        """
        index = self.index_path
        try:
            size = await asyncio.to_thread(_file_size, index)
        except OSError as e:
            raise RegistryReadError(f"could not stat {index}") from e
        if size is None:
            return []

        if size >= self._config.cache_file_size_bytes:
            logger.warning(
                "Registry %s is %d bytes (limit %d MiB), moving it to %s",
                index, size, self._config.cache_file_size_mib, self.backup_path,
            )
            try:
                await asyncio.to_thread(os.replace, index, self.backup_path)
            except OSError as e:
                raise RegistryReadError(f"could not back up oversized {index}") from e
            return []

        try:
            raw = await asyncio.to_thread(index.read_bytes)
        except OSError as e:
            raise RegistryReadError(f"could not read {index}") from e
        records = _parse_index(raw)

        # ValueError covers DecodeError and unusable paths such as embedded NULs.
        try:
            entries = await asyncio.gather(*(self._resolve(r) for r in records))
        except (ValueError, OSError) as e:
            raise RegistryReadError(f"could not restore entries from {index}") from e

        pruned = prune(entries, self._config.history_size)
        logger.debug("Loaded %d entries from %s (%d pruned)", len(pruned), index, len(entries) - len(pruned))
        return pruned

    async def _resolve(self, record) -> ClipboardEntry:
        reference = ClipboardEntry.blob_reference(record)
        if reference is None:
            return ClipboardEntry.from_record(record)
        data = await asyncio.to_thread(self._blob_path(reference).read_bytes)
        return ClipboardEntry.from_record(record, data)

    def read(
        self,
        callback: Callable[[list[ClipboardEntry]], None],
        on_error: Callable[[RegistryError], None] | None = None,
    ) -> asyncio.Task:
        """Load the history in the background and hand it to ``callback``.

        A failed load is logged and passed to ``on_error``; without one the
        callback simply never fires.
        """
        if not callable(callback):
            raise TypeError("`callback` must be callable")
        if on_error is not None and not callable(on_error):
            raise TypeError("`on_error` must be callable")
        return asyncio.get_running_loop().create_task(self._read_into(callback, on_error))

    async def _read_into(self, callback, on_error) -> None:
        try:
            entries = await self.load()
        except RegistryError as e:
            logger.exception("Failed to load clipboard registry %s", self.index_path)
            if on_error is not None:
                on_error(e)
            return
        callback(entries)

    async def get_entry_as_image(self, entry: ClipboardEntry) -> ImageHandle | None:
        if not entry.is_image():
            return None

        await self.write_entry_file(entry)
        width, height = png_dimensions(entry.data) or (0, 0)
        return ImageHandle(path=self.entry_filename(entry), width=width, height=height)

    # -- deleting -------------------------------------------------------

    async def delete_entry_file(self, entry: ClipboardEntry, live: Iterable[ClipboardEntry] = ()) -> None:
        """Best-effort removal of an entry's blob.

        The blob stays when another entry in ``live`` has the same content.
        Failures are logged, never raised.
        """
        if entry.is_text():
            return
        digest = entry.content_hash()
        if any(other is not entry and other.is_binary() and other.content_hash() == digest for other in live):
            logger.debug("Blob %s still referenced, keeping it", digest)
            return

        path = self.entry_filename(entry)
        try:
            await asyncio.to_thread(self._delete_files, path)
        except OSError:
            logger.exception("Failed to delete blob %s", path)

    async def clear(self, entries: Sequence[ClipboardEntry]) -> None:
        """Forget the whole history: write an empty index, then delete its blobs."""
        await self.write([])
        seen = set()
        for entry in entries:
            if entry.is_binary() and entry.content_hash() not in seen:
                seen.add(entry.content_hash())
                await self.delete_entry_file(entry)
        logger.info("Cleared clipboard registry (%d blobs removed)", len(seen))

    def _indexed_blobs(self) -> set[str]:
        try:
            raw = self.index_path.read_bytes()
        except FileNotFoundError:
            return set()
        except OSError as e:
            raise RegistryReadError(f"could not read {self.index_path}") from e

        names = set()
        try:
            for record in _parse_index(raw):
                reference = ClipboardEntry.blob_reference(record)
                if reference is not None:
                    names.add(Path(reference).name)
        except ValueError as e:
            raise RegistryReadError(f"{self.index_path} has malformed records") from e
        return names

    async def collect_garbage(self, entries: Iterable[ClipboardEntry]) -> int:
        """Delete blob files that neither ``entries`` nor the stored index reference.

        Returns the count. Raises :class:`RegistryReadError`, deleting nothing,
        when the stored index cannot be read.
        """
        live = {e.content_hash() for e in entries if e.is_binary()}

        def _sweep() -> int:
            if not self.root.is_dir():
                return 0
            keep = live | self._indexed_blobs()
            removed = 0
            for path in self.root.iterdir():
                if path.is_file() and looks_like_hash(path.name) and path.name not in keep:
                    self._delete_files(path)
                    removed += 1
            return removed

        async with self._write_lock:
            removed = await asyncio.to_thread(_sweep)
        if removed:
            logger.info("Removed %d unreferenced blobs from %s", removed, self.root)
        return removed

    async def stats(self) -> RegistryStats:
        def _collect() -> RegistryStats:
            index_size = _file_size(self.index_path)
            blob_count = 0
            blob_bytes = 0
            if self.root.is_dir():
                for path in self.root.iterdir():
                    if path.is_file() and looks_like_hash(path.name):
                        blob_count += 1
                        blob_bytes += path.stat().st_size
            return RegistryStats(
                root=self.root,
                index_exists=index_size is not None,
                index_size=index_size or 0,
                backup_exists=self.backup_path.exists(),
                blob_count=blob_count,
                blob_bytes=blob_bytes,
            )

        return await asyncio.to_thread(_collect)
