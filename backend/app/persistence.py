from __future__ import annotations

from pathlib import Path
from threading import Lock

from sqlalchemy import (
    BigInteger,
    Column,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.app.models import DuplicateLedgerEntry, StatusHistoryEntry


def _normalize_database_url(database_url: str) -> str:
    value = database_url.strip()
    if value.startswith("sqlite:///"):
        sqlite_path = value[len("sqlite:///") :].split("?", 1)[0]
        if sqlite_path and sqlite_path != ":memory:":
            path = Path(sqlite_path)
            if path.parent:
                path.parent.mkdir(parents=True, exist_ok=True)
        return value
    if "://" in value:
        return value
    path = Path(value)
    if path.parent:
        path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{str(path).replace(chr(92), '/')}"


class SqlitePersistence:
    """
    Durable backing for the status history and duplicate ledger.
    Uses SQLAlchemy and supports both SQLite and PostgreSQL URLs.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = _normalize_database_url(database_url)
        self._lock = Lock()
        self.engine: Engine = create_engine(
            self.database_url,
            future=True,
            pool_pre_ping=True,
        )
        self.metadata = MetaData()
        self.status_history = Table(
            "status_history",
            self.metadata,
            Column("order_id", String(255), primary_key=True),
            Column("last_status", Text, nullable=False),
            Column("observed_at_ms", BigInteger, nullable=False),
            Column("changed_at_ms", BigInteger, nullable=False),
        )
        self.duplicate_ledger = Table(
            "duplicate_ledger",
            self.metadata,
            Column("key", String(255), primary_key=True),
            Column("last_sent_at_ms", BigInteger, nullable=False),
        )
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        self.metadata.create_all(self.engine)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
            return True
        except SQLAlchemyError:
            return False

    def upsert_status_entry(self, entry: StatusHistoryEntry) -> None:
        payload = {
            "last_status": entry.last_status,
            "observed_at_ms": entry.observed_at_ms,
            "changed_at_ms": entry.changed_at_ms,
        }
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.status_history.c.order_id).where(
                        self.status_history.c.order_id == entry.order_id
                    )
                ).first()
                if existing:
                    conn.execute(
                        self.status_history.update()
                        .where(self.status_history.c.order_id == entry.order_id)
                        .values(**payload)
                    )
                else:
                    conn.execute(
                        self.status_history.insert().values(order_id=entry.order_id, **payload)
                    )

    def list_status_entries(self) -> list[StatusHistoryEntry]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.status_history.c.order_id,
                        self.status_history.c.last_status,
                        self.status_history.c.observed_at_ms,
                        self.status_history.c.changed_at_ms,
                    )
                ).all()
        return [
            StatusHistoryEntry(
                order_id=row.order_id,
                last_status=row.last_status,
                observed_at_ms=int(row.observed_at_ms),
                changed_at_ms=int(row.changed_at_ms),
            )
            for row in rows
        ]

    def clear_status_history(self) -> int:
        with self._lock:
            with self.engine.begin() as conn:
                count = conn.execute(
                    select(func.count()).select_from(self.status_history)
                ).scalar_one()
                conn.execute(delete(self.status_history))
        return int(count)

    def delete_status_entries(self, order_ids: list[str]) -> None:
        if not order_ids:
            return
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(
                    delete(self.status_history).where(
                        self.status_history.c.order_id.in_(order_ids)
                    )
                )

    def upsert_ledger_entry(self, entry: DuplicateLedgerEntry) -> None:
        with self._lock:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    select(self.duplicate_ledger.c.key).where(
                        self.duplicate_ledger.c.key == entry.key
                    )
                ).first()
                if existing:
                    conn.execute(
                        self.duplicate_ledger.update()
                        .where(self.duplicate_ledger.c.key == entry.key)
                        .values(last_sent_at_ms=entry.last_sent_at_ms)
                    )
                else:
                    conn.execute(
                        self.duplicate_ledger.insert().values(
                            key=entry.key,
                            last_sent_at_ms=entry.last_sent_at_ms,
                        )
                    )

    def list_ledger_entries(self) -> list[DuplicateLedgerEntry]:
        with self._lock:
            with self.engine.connect() as conn:
                rows = conn.execute(
                    select(
                        self.duplicate_ledger.c.key,
                        self.duplicate_ledger.c.last_sent_at_ms,
                    )
                ).all()
        return [
            DuplicateLedgerEntry(key=row.key, last_sent_at_ms=int(row.last_sent_at_ms))
            for row in rows
        ]

    def delete_ledger_entries(self, keys: list[str]) -> None:
        if not keys:
            return
        with self._lock:
            with self.engine.begin() as conn:
                conn.execute(delete(self.duplicate_ledger).where(self.duplicate_ledger.c.key.in_(keys)))

    def clear_ledger(self) -> int:
        with self._lock:
            with self.engine.begin() as conn:
                count = conn.execute(
                    select(func.count()).select_from(self.duplicate_ledger)
                ).scalar_one()
                conn.execute(delete(self.duplicate_ledger))
        return int(count)
