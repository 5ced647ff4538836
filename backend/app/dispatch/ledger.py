"""
ledger.py — Durable, append-only delivery ledger (NDJSON).

═══════════════════════════════════════════════════════════════════════════
STORAGE LAYOUT
═══════════════════════════════════════════════════════════════════════════

    {LEDGER_DIR}/delivery.log   every record (SUCCESS / FAILED / RETRY)
    {LEDGER_DIR}/errors.log     FAILED records only

    One JSON object per line:
        {"timestamp": "...", "type": "FAILED", "channel": "sms",
         "recipient": "+15551234567", "user_id": "U-17",
         "message_type": "Fallback Update", "retry_count": 3,
         "error": {...}, "status": "failed"}

═══════════════════════════════════════════════════════════════════════════
CONSISTENCY
═══════════════════════════════════════════════════════════════════════════

    • Append: one ``write`` of one complete line on a file opened in
      append mode, under the ledger lock, in a worker thread. Concurrent
      sends never interleave partial lines. A torn final line left by a
      crash is closed with a newline before the next record is written.
    • Read: blank or unparsable lines are skipped, so a torn final line
      after a crash costs that line only.
    • Compact: holds the ledger lock for its whole run, rewrites each
      stream to a temp file, then ``os.replace``s it into place. The only
      operation that deletes records.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from backend.app.core.errors import LedgerWriteError
from backend.app.dispatch.classifier import ErrorClassifier
from backend.app.dispatch.models import (
    ChannelStats,
    DeliveryInfo,
    DeliveryRecord,
    DeliveryStats,
    RecordKind,
)

logger = logging.getLogger(__name__)

TIME_RANGES: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}
DEFAULT_TIME_RANGE = "24h"


@dataclass(frozen=True)
class LedgerConfig:
    directory: Path = Path("./logs")
    retention_days: int = 30
    delivery_file: str = "delivery.log"
    errors_file: str = "errors.log"


def resolve_time_range(time_range: str) -> timedelta:
    """Window length for ``time_range``; raises ValueError for unknown values."""
    try:
        return TIME_RANGES[time_range]
    except KeyError:
        valid = ", ".join(TIME_RANGES)
        raise ValueError(f"Invalid time range '{time_range}'. Must be one of: {valid}")


class DeliveryLedger:
    """
    Append-only record of every delivery attempt outcome.

    Usage:
        ledger = DeliveryLedger(LedgerConfig(directory=Path("./logs")))
        await ledger.record_success(info, message_id="SM123", retry_count=1)
        stats = await ledger.stats("24h")
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
    ):
        self.config = config or LedgerConfig()
        self.classifier = classifier or ErrorClassifier()
        self.delivery_path = Path(self.config.directory) / self.config.delivery_file
        self.errors_path = Path(self.config.directory) / self.config.errors_file
        self._lock = asyncio.Lock()

    def initialize(self) -> None:
        """Create the ledger directory."""
        Path(self.config.directory).mkdir(parents=True, exist_ok=True)

    # ═══════════════════════════════════════════════════════════════════
    # Writes
    # ═══════════════════════════════════════════════════════════════════

    async def record_success(
        self,
        info: DeliveryInfo,
        message_id: str,
        retry_count: int = 0,
    ) -> DeliveryRecord:
        record = DeliveryRecord.from_info(
            RecordKind.SUCCESS, info,
            message_id=message_id,
            retry_count=retry_count,
        )
        await self._append(record)
        logger.info(
            "Delivery logged: %s to %s", info.channel.value, info.recipient,
            extra={"channel": info.channel.value, "message_id": message_id},
        )
        return record

    async def record_failure(
        self,
        info: DeliveryInfo,
        error: BaseException,
        retry_count: int = 0,
    ) -> DeliveryRecord:
        record = DeliveryRecord.from_info(
            RecordKind.FAILED, info,
            error=self.classifier.sanitize(error),
            retry_count=retry_count,
        )
        await self._append(record, errors_stream=True)
        logger.warning(
            "Delivery failed: %s to %s - %s", info.channel.value, info.recipient, error,
            extra={"channel": info.channel.value, "user_id": info.user_id},
        )
        return record

    async def record_retry(
        self,
        info: DeliveryInfo,
        attempt_number: int,
        error: BaseException,
    ) -> DeliveryRecord:
        record = DeliveryRecord.from_info(
            RecordKind.RETRY, info,
            error=self.classifier.sanitize(error),
            retry_count=attempt_number,
            attempt_number=attempt_number,
        )
        await self._append(record)
        logger.info(
            "Retry %d: %s to %s", attempt_number, info.channel.value, info.recipient,
            extra={"channel": info.channel.value, "attempt": attempt_number},
        )
        return record

    async def _append(self, record: DeliveryRecord, errors_stream: bool = False) -> None:
        line = json.dumps(record.to_dict(), default=str) + "\n"
        paths = [self.delivery_path]
        if errors_stream:
            paths.append(self.errors_path)

        async with self._lock:
            for path in paths:
                try:
                    await asyncio.to_thread(_append_line, path, line)
                except OSError as exc:
                    raise LedgerWriteError(f"Failed to write to ledger file {path}: {exc}") from exc

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    async def read_records(self, errors_only: bool = False) -> List[DeliveryRecord]:
        path = self.errors_path if errors_only else self.delivery_path
        return await asyncio.to_thread(_read_records, path)

    async def stats(self, time_range: str = DEFAULT_TIME_RANGE) -> DeliveryStats:
        """Aggregate records newer than ``time_range`` (1h, 24h, 7d, 30d)."""
        window = resolve_time_range(time_range)
        cutoff = datetime.now(timezone.utc) - window
        stats = DeliveryStats(time_range=time_range)

        for record in await self.read_records():
            if record.timestamp < cutoff:
                continue

            channel = stats.by_channel.setdefault(record.channel, ChannelStats())
            if record.type == RecordKind.RETRY:
                stats.retried += 1
                channel.retried += 1
                continue

            stats.total += 1
            channel.total += 1
            if record.type == RecordKind.SUCCESS:
                stats.successful += 1
                channel.successful += 1
            else:
                stats.failed += 1
                channel.failed += 1

        return stats

    async def recent_failures(self, limit: int = 10) -> List[DeliveryRecord]:
        """Newest FAILED records first."""
        if limit <= 0:
            return []
        failures = [r for r in await self.read_records() if r.type == RecordKind.FAILED]
        failures.sort(key=lambda r: r.timestamp, reverse=True)
        return failures[:limit]

    # ═══════════════════════════════════════════════════════════════════
    # Retention
    # ═══════════════════════════════════════════════════════════════════

    async def compact(self, retention_days: Optional[int] = None) -> int:
        """
        Drop records older than the retention window from both streams.

        Returns the number of lines removed.
        """
        days = self.config.retention_days if retention_days is None else retention_days
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = 0

        async with self._lock:
            for path in (self.delivery_path, self.errors_path):
                dropped = await asyncio.to_thread(_rewrite_retained, path, cutoff)
                if dropped:
                    logger.info("Cleaned %d old log entries from %s", dropped, path)
                removed += dropped
        return removed


# ═══════════════════════════════════════════════════════════════════════════
# File helpers (run in worker threads)
# ═══════════════════════════════════════════════════════════════════════════

def _ends_with_torn_line(path: Path) -> bool:
    """True when the file is non-empty and its last byte is not a newline."""
    try:
        with open(path, "rb") as fh:
            fh.seek(0, os.SEEK_END)
            if fh.tell() == 0:
                return False
            fh.seek(-1, os.SEEK_END)
            return fh.read(1) != b"\n"
    except FileNotFoundError:
        return False


def _append_line(path: Path, line: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if _ends_with_torn_line(path):
        line = "\n" + line
    with open(path, "a", encoding="utf-8") as fh:
        fh.write(line)
        fh.flush()


def _iter_lines(path: Path) -> Iterator[str]:
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as fh:
            for line in fh:
                if line.strip():
                    yield line
    except FileNotFoundError:
        return


def _parse_line(line: str) -> Optional[DeliveryRecord]:
    try:
        data: Any = json.loads(line)
        if not isinstance(data, dict):
            return None
        return DeliveryRecord.from_dict(data)
    except (ValueError, KeyError, TypeError):
        return None


def _read_records(path: Path) -> List[DeliveryRecord]:
    records = []
    for line in _iter_lines(path):
        record = _parse_line(line)
        if record is not None:
            records.append(record)
    return records


def _rewrite_retained(path: Path, cutoff: datetime) -> int:
    if not path.exists():
        return 0

    kept: List[str] = []
    total = 0
    for line in _iter_lines(path):
        total += 1
        record = _parse_line(line)
        if record is not None and record.timestamp >= cutoff:
            kept.append(line if line.endswith("\n") else line + "\n")

    dropped = total - len(kept)
    if dropped == 0:
        return 0

    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.writelines(kept)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return dropped
