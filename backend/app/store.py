from __future__ import annotations

import logging
from threading import RLock
from typing import TYPE_CHECKING, Any, Iterable, Optional
from uuid import uuid4

from backend.app.models import DuplicateLedgerEntry, MessageType, StatusHistoryEntry

if TYPE_CHECKING:
    from backend.app.persistence import SqlitePersistence

logger = logging.getLogger("order_notifier.store")

REMINDER_KEY_PREFIX = "reminder_"
RECENT_ATTEMPTS_LIMIT = 10


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:10]}"


def ledger_key(order_id: str, message_type: MessageType) -> str:
    if message_type == MessageType.reminder:
        return f"{REMINDER_KEY_PREFIX}{order_id}"
    return f"{order_id}_{message_type.value}"


def ledger_key_type(key: str) -> str:
    if key.startswith(REMINDER_KEY_PREFIX):
        return MessageType.reminder.value
    return key.rsplit("_", 1)[-1] if "_" in key else MessageType.unknown.value


class StatusHistoryStore:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self._entries: dict[str, StatusHistoryEntry] = {}
        if self.persistence:
            for entry in self.persistence.list_status_entries():
                self._entries[entry.order_id] = entry
            logger.info("status_history_hydrated entries=%s", len(self._entries))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, order_id: str) -> Optional[StatusHistoryEntry]:
        with self._lock:
            return self._entries.get(order_id)

    def record(self, order_id: str, status: str, observed_at_ms: int) -> StatusHistoryEntry:
        with self._lock:
            previous = self._entries.get(order_id)
            changed_at_ms = observed_at_ms
            if previous is not None and previous.last_status == status:
                changed_at_ms = previous.changed_at_ms
            entry = StatusHistoryEntry(
                order_id=order_id,
                last_status=status,
                observed_at_ms=observed_at_ms,
                changed_at_ms=changed_at_ms,
            )
            self._entries[order_id] = entry
            if self.persistence:
                self.persistence.upsert_status_entry(entry)
            return entry

    def touch(self, order_id: str, observed_at_ms: int) -> Optional[StatusHistoryEntry]:
        with self._lock:
            entry = self._entries.get(order_id)
            if entry is None:
                return None
            updated = entry.model_copy(update={"observed_at_ms": observed_at_ms})
            self._entries[order_id] = updated
            return updated

    def forget(self, order_ids: Iterable[str]) -> int:
        with self._lock:
            removed = [order_id for order_id in order_ids if self._entries.pop(order_id, None)]
            if self.persistence:
                self.persistence.delete_status_entries(removed)
            return len(removed)

    def entries(self) -> list[StatusHistoryEntry]:
        with self._lock:
            return [self._entries[key] for key in sorted(self._entries)]

    def reset(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
            if self.persistence:
                self.persistence.clear_status_history()
            logger.info("status_history_reset cleared=%s", cleared)
            return cleared


class DuplicatePreventionLedger:
    def __init__(self, persistence: Optional["SqlitePersistence"] = None) -> None:
        self._lock = RLock()
        self.persistence = persistence
        self._entries: dict[str, DuplicateLedgerEntry] = {}
        self._reset_stats()
        if self.persistence:
            for entry in self.persistence.list_ledger_entries():
                self._entries[entry.key] = entry
            logger.info("duplicate_ledger_hydrated entries=%s", len(self._entries))

    def _reset_stats(self) -> None:
        self._total_recorded = 0
        self._total_suppressed = 0
        self._suppressed_by_type: dict[str, int] = {}
        self._attempts: dict[str, dict[str, Any]] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Optional[DuplicateLedgerEntry]:
        with self._lock:
            return self._entries.get(key)

    def should_suppress(self, key: str, now_ms: int, min_interval_ms: int) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or now_ms - entry.last_sent_at_ms >= min_interval_ms:
                return False
            message_type = ledger_key_type(key)
            self._total_suppressed += 1
            self._suppressed_by_type[message_type] = (
                self._suppressed_by_type.get(message_type, 0) + 1
            )
            attempt = self._attempts.setdefault(key, {"key": key, "attempts": 0})
            attempt["attempts"] += 1
            attempt["message_type"] = message_type
            attempt["last_attempt_ms"] = now_ms
            attempt["last_sent_at_ms"] = entry.last_sent_at_ms
            return True

    def record(self, key: str, now_ms: int) -> DuplicateLedgerEntry:
        with self._lock:
            entry = DuplicateLedgerEntry(key=key, last_sent_at_ms=now_ms)
            self._entries[key] = entry
            self._total_recorded += 1
            if self.persistence:
                self.persistence.upsert_ledger_entry(entry)
            return entry

    def stats_by_type(self) -> dict[str, int]:
        with self._lock:
            return dict(self._suppressed_by_type)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries_by_type: dict[str, int] = {}
            for key in self._entries:
                message_type = ledger_key_type(key)
                entries_by_type[message_type] = entries_by_type.get(message_type, 0) + 1
            attempts = sorted(
                self._attempts.values(),
                key=lambda item: item["last_attempt_ms"],
                reverse=True,
            )[:RECENT_ATTEMPTS_LIMIT]
            handled = self._total_suppressed + self._total_recorded
            return {
                "total_entries": len(self._entries),
                "total_recorded": self._total_recorded,
                "total_suppressed": self._total_suppressed,
                "suppressed_by_type": dict(self._suppressed_by_type),
                "entries_by_type": entries_by_type,
                "recent_attempts": [dict(item) for item in attempts],
                "prevention_rate": round(self._total_suppressed / handled, 4) if handled else 0.0,
            }

    def entries(self) -> list[DuplicateLedgerEntry]:
        with self._lock:
            return [self._entries[key] for key in sorted(self._entries)]

    def clear_message_type(self, message_type: MessageType) -> int:
        with self._lock:
            keys = [key for key in self._entries if ledger_key_type(key) == message_type.value]
            for key in keys:
                del self._entries[key]
                self._attempts.pop(key, None)
            if self.persistence:
                self.persistence.delete_ledger_entries(keys)
            logger.info(
                "duplicate_ledger_cleared message_type=%s cleared=%s",
                message_type.value,
                len(keys),
            )
            return len(keys)

    def reset(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries.clear()
            self._reset_stats()
            if self.persistence:
                self.persistence.clear_ledger()
            logger.info("duplicate_ledger_reset cleared=%s", cleared)
            return cleared
