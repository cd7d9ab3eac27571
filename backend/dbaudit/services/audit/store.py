"""
Append-only audit log.

One JSON object per line, discriminated by ``record_type`` so audit entries
and security events share a single file. Every line parses on its own: a
truncated or corrupted line is skipped and counted, and never hides the
lines around it.

Writes are serialised by a lock. Readers take no lock; a line that is
still being written simply fails to parse and is skipped. Pruning holds the
write lock and swaps in a rewritten file with ``os.replace``, so readers
see either the old log or the new one.
"""

from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generic, TypeVar

import structlog
from pydantic import ValidationError as PydanticValidationError

from dbaudit.core.errors import ErrorCode, StorageError, ValidationError
from dbaudit.schemas.audit import (
    AuditEntry,
    AuditFilter,
    PruneResult,
    SecurityEvent,
    audit_record_adapter,
    utcnow,
)
from dbaudit.services.audit.metrics import AUDIT_ENTRIES_RECORDED, MALFORMED_LINES, STORAGE_ERRORS

_log = structlog.get_logger(__name__)

_BLOCK_SIZE = 64 * 1024

# Consecutive out-of-window entries after which a backwards scan stops
_STALE_RUN_LIMIT = 256

R = TypeVar("R", AuditEntry, SecurityEvent)


class AuditRecordSequence(Generic[R]):
    """
    Lazy, restartable view over matching log records.

    Nothing is read until iteration starts, and every iteration re-reads the
    log. ``skipped`` holds the malformed-line count of the latest pass.
    """

    def __init__(
        self,
        store: AuditLogStore,
        record_class: type[R],
        predicate: Callable[[R], bool],
        limit: int | None = None,
        descending: bool = False,
    ) -> None:
        self._store = store
        self._record_class = record_class
        self._predicate = predicate
        self._limit = limit
        self._descending = descending
        self.skipped = 0

    def __iter__(self) -> Iterator[R]:
        matches: list[R] = []
        skipped = 0
        for record in self._store._iter_records():
            if record is None:
                skipped += 1
                continue
            if isinstance(record, self._record_class) and self._predicate(record):
                matches.append(record)
        self.skipped = skipped

        # Stable sort: equal timestamps stay in write order
        matches.sort(key=lambda r: r.timestamp)
        if self._limit is not None:
            matches = matches[-self._limit:]
        if self._descending:
            matches.reverse()
        return iter(matches)


class AuditLogStore:
    """
    Durable, ordered, queryable record of audit entries and security events.

    Usage:
        store = AuditLogStore(Path("./logs/audit.log"))
        record_id = store.record(AuditEntry(user="alice", operation="LOGIN", success=True))
        recent = list(store.query(AuditFilter(user="alice", limit=10)))
    """

    def __init__(
        self,
        path: Path,
        fsync: bool = False,
        clock: Callable[[], datetime] = utcnow,
        stale_run_limit: int = _STALE_RUN_LIMIT,
    ) -> None:
        self.path = Path(path)
        self._fsync = fsync
        self._stale_run_limit = stale_run_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._closed = False
        self._malformed_total = 0
        self._open()

    # ── Lifecycle ───────────────────────────────────────────────────────── #

    def _open(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            self._terminate_partial_tail()
        except OSError as err:
            STORAGE_ERRORS.labels("open").inc()
            raise StorageError(
                f"Audit log {self.path} cannot be opened: {err}",
                detail={"path": str(self.path)},
            ) from err
        _log.info("audit_log_opened", path=str(self.path))

    def _terminate_partial_tail(self) -> None:
        """Start the next append on a fresh line if a previous write was cut short."""
        with open(self.path, "rb+") as f:
            f.seek(0, os.SEEK_END)
            if f.tell() == 0:
                return
            f.seek(-1, os.SEEK_END)
            if f.read(1) != b"\n":
                f.write(b"\n")
                _log.warning("audit_log_partial_tail_terminated", path=str(self.path))

    def close(self) -> None:
        with self._lock:
            self._closed = True
        _log.info("audit_log_closed", path=str(self.path))

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def malformed_lines(self) -> int:
        """Malformed lines seen across every read since the store was opened."""
        return self._malformed_total

    # ── Writes ──────────────────────────────────────────────────────────── #

    def record(self, entry: AuditEntry) -> str:
        """
        Append one audit entry and return its record id.

        Raises:
            StorageError: If the log cannot be written. The audited operation
                itself is unaffected; callers log and carry on.
        """
        record_id = self._append(entry)
        AUDIT_ENTRIES_RECORDED.labels(str(entry.success).lower()).inc()
        return record_id

    def record_event(self, event: SecurityEvent) -> str:
        """Append one security event and return its record id."""
        return self._append(event)

    def _append(self, record: AuditEntry | SecurityEvent) -> str:
        line = record.model_dump_json() + "\n"
        with self._lock:
            if self._closed:
                raise StorageError(
                    "Audit log is closed",
                    code=ErrorCode.STORAGE_CLOSED,
                    detail={"path": str(self.path)},
                )
            try:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
                    if self._fsync:
                        os.fsync(f.fileno())
            except OSError as err:
                STORAGE_ERRORS.labels("append").inc()
                _log.error(
                    "audit_append_failed",
                    path=str(self.path),
                    record_id=record.id,
                    error=str(err),
                )
                raise StorageError(
                    f"Audit log {self.path.name} is not writable: {err}",
                    detail={"path": str(self.path), "record_id": record.id},
                ) from err

        _log.debug(
            "audit_record_written",
            record_type=record.record_type,
            record_id=record.id,
        )
        return record.id

    # ── Reads ───────────────────────────────────────────────────────────── #

    def query(self, filter: AuditFilter | None = None) -> AuditRecordSequence[AuditEntry]:
        """
        Return matching audit entries, oldest first unless ``descending``.

        ``limit`` keeps the most recent N matches.
        """
        flt = filter or AuditFilter()
        return AuditRecordSequence(
            self,
            AuditEntry,
            flt.matches,
            limit=flt.limit,
            descending=flt.descending,
        )

    def query_events(
        self,
        since: datetime | None = None,
        until: datetime | None = None,
        kind: str | None = None,
        limit: int | None = None,
        descending: bool = False,
    ) -> AuditRecordSequence[SecurityEvent]:
        """Return persisted security events, filtered like ``query``."""

        def _matches(event: SecurityEvent) -> bool:
            if since is not None and event.timestamp < since:
                return False
            if until is not None and event.timestamp > until:
                return False
            return kind is None or event.kind == kind

        return AuditRecordSequence(self, SecurityEvent, _matches, limit=limit, descending=descending)

    def count_matching(
        self,
        predicate: Callable[[AuditEntry], bool],
        window: timedelta,
        until: datetime | None = None,
    ) -> int:
        """
        Count audit entries in ``[until - window, until]`` satisfying ``predicate``.

        Reads the log backwards and stops once ``stale_run_limit`` consecutive
        entries fall before the window, so cost grows with the window rather
        than the whole history. Shorter runs of back-dated entries are skipped
        over. The count never exceeds what ``query`` returns for the same range.
        """
        end = until or self._clock()
        start = end - window
        count = 0
        skipped = 0
        stale = 0
        for raw in self._iter_lines_reversed():
            record = self._parse(raw)
            if record is None:
                skipped += 1
                continue
            if not isinstance(record, AuditEntry):
                continue
            if record.timestamp < start:
                stale += 1
                if stale >= self._stale_run_limit:
                    break
                continue
            stale = 0
            if record.timestamp <= end and predicate(record):
                count += 1
        self._note_malformed(skipped)
        return count

    def _parse(self, raw: str | bytes) -> AuditEntry | SecurityEvent | None:
        try:
            return audit_record_adapter.validate_json(raw)
        except (PydanticValidationError, ValueError):
            return None

    def _note_malformed(self, skipped: int) -> None:
        if skipped:
            self._malformed_total += skipped
            MALFORMED_LINES.inc(skipped)
            _log.debug("audit_malformed_lines_skipped", count=skipped)

    def _iter_records(self) -> Iterator[AuditEntry | SecurityEvent | None]:
        """Yield parsed records in write order; ``None`` marks a malformed line."""
        skipped = 0
        try:
            with open(self.path, encoding="utf-8", errors="replace") as f:
                for line in f:
                    if not line.strip():
                        continue
                    record = self._parse(line)
                    if record is None:
                        skipped += 1
                    yield record
        except FileNotFoundError:
            return
        except OSError as err:
            STORAGE_ERRORS.labels("read").inc()
            raise StorageError(
                f"Audit log {self.path.name} is not readable: {err}",
                code=ErrorCode.STORAGE_UNREADABLE,
                detail={"path": str(self.path)},
            ) from err
        finally:
            self._note_malformed(skipped)

    def _iter_lines_reversed(self) -> Iterator[bytes]:
        try:
            with open(self.path, "rb") as f:
                f.seek(0, os.SEEK_END)
                position = f.tell()
                remainder = b""
                while position > 0:
                    read_size = min(_BLOCK_SIZE, position)
                    position -= read_size
                    f.seek(position)
                    lines = (f.read(read_size) + remainder).split(b"\n")
                    remainder = lines[0]
                    for line in reversed(lines[1:]):
                        if line.strip():
                            yield line
                if remainder.strip():
                    yield remainder
        except FileNotFoundError:
            return
        except OSError as err:
            STORAGE_ERRORS.labels("read").inc()
            raise StorageError(
                f"Audit log {self.path.name} is not readable: {err}",
                code=ErrorCode.STORAGE_UNREADABLE,
                detail={"path": str(self.path)},
            ) from err

    # ── Retention ───────────────────────────────────────────────────────── #

    def prune(self, retention_days: int, now: datetime | None = None) -> PruneResult:
        """
        Drop records older than ``retention_days``.

        The log is rewritten to a temporary file and swapped in atomically
        while holding the write lock. On any failure the original log is left
        exactly as it was. Malformed lines are kept.

        Raises:
            ValidationError: If ``retention_days`` is negative.
            StorageError: If the rewrite fails.
        """
        if retention_days < 0:
            raise ValidationError(
                "retention_days must not be negative",
                detail={"retention_days": retention_days},
            )
        cutoff = (now or self._clock()) - timedelta(days=retention_days)

        with self._lock:
            if self._closed:
                raise StorageError(
                    "Audit log is closed",
                    code=ErrorCode.STORAGE_CLOSED,
                    detail={"path": str(self.path)},
                )
            kept: list[str] = []
            removed = 0
            tmp_path: str | None = None
            try:
                with open(self.path, encoding="utf-8", errors="replace") as f:
                    for line in f:
                        if not line.strip():
                            continue
                        record = self._parse(line)
                        if record is not None and record.timestamp < cutoff:
                            removed += 1
                            continue
                        kept.append(line if line.endswith("\n") else line + "\n")

                fd, tmp_path = tempfile.mkstemp(
                    prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
                )
                with os.fdopen(fd, "w", encoding="utf-8") as out:
                    out.writelines(kept)
                    out.flush()
                    os.fsync(out.fileno())
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as err:
                STORAGE_ERRORS.labels("prune").inc()
                _log.error("audit_prune_failed", path=str(self.path), error=str(err))
                raise StorageError(
                    f"Pruning {self.path.name} failed; log left unchanged: {err}",
                    code=ErrorCode.STORAGE_PRUNE_FAILED,
                    detail={"path": str(self.path)},
                ) from err
            finally:
                if tmp_path is not None:
                    try:
                        os.unlink(tmp_path)
                    except OSError:
                        pass

        _log.info(
            "audit_log_pruned",
            path=str(self.path),
            kept=len(kept),
            removed=removed,
            cutoff=cutoff.isoformat(),
        )
        return PruneResult(kept=len(kept), removed=removed, cutoff=cutoff)
