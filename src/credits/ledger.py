"""Credit ledger - the source of truth for mints, balances and history.

The ledger is the one piece of state written by more than one flow, so
``append_mint`` is the atomic unit: it checks for an overlapping window of
the same device and inserts the new mint in one step, raising
``DuplicateMintError`` when the window was already minted.

Two backends:
- ``InMemoryCreditLedger``: a threading lock around dict state
- ``SqliteCreditLedger``: UNIQUE(device_id, window_start, window_end) plus an
  overlap check inside a BEGIN IMMEDIATE transaction

Windows are inclusive ``[start, end]`` in epoch milliseconds; two windows
overlap when ``start <= other_end and other_start <= end``.

Usage:
    ledger = SqliteCreditLedger(Path("credits.db"))
    ledger.append_mint(MintRecord(device_id="seq-001", owner_id="greenco",
                                  window_start=0, window_end=86_400_000,
                                  credits=3.0))
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from ..config import get_validated_config
from ..config_schema import StorageConfig
from ..errors import DuplicateMintError, ValidationError
from ..protocol.messages import now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MintRequestStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


@dataclass(frozen=True)
class MintRecord:
    """One successful mint for a device window."""

    device_id: str
    owner_id: str
    window_start: int
    window_end: int
    credits: float
    result: dict[str, Any] = field(default_factory=dict)
    created_at: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class HistoryEntry:
    owner_id: str
    device_id: str
    credits: float
    window_start: int
    window_end: int
    created_at: int = field(default_factory=now_ms)


@dataclass
class MintRequest:
    """A request to mint on-chain tokens for credits already earned."""

    request_id: str
    owner_id: str
    amount: float
    data_hash: str
    status: MintRequestStatus = MintRequestStatus.PENDING
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "requestId": self.request_id,
            "ownerId": self.owner_id,
            "amount": self.amount,
            "dataHash": self.data_hash,
            "status": self.status.value,
            "createdAt": self.created_at,
        }


def windows_overlap(start: int, end: int, other_start: int, other_end: int) -> bool:
    return start <= other_end and other_start <= end


def _check_window(start: int, end: int) -> None:
    if end < start:
        raise ValidationError(f"window end ({end}) precedes start ({start})", start=start, end=end)


class CreditLedger(ABC):
    """Ledger contract consumed by the credit engine."""

    @abstractmethod
    def has_mint_for_window(self, device_id: str, start: int, end: int) -> bool:
        """True if any mint of ``device_id`` overlaps ``[start, end]``."""

    @abstractmethod
    def append_mint(self, record: MintRecord) -> None:
        """Atomically check for an overlapping mint and insert.

        Raises:
            DuplicateMintError: an overlapping window is already minted
        """

    @abstractmethod
    def append_history(self, owner_id: str, entry: HistoryEntry) -> None:
        ...

    @abstractmethod
    def add_balance(self, owner_id: str, credits: float) -> float:
        """Bump the running balance and total minted; return the new balance."""

    @abstractmethod
    def get_balance(self, owner_id: str) -> float:
        ...

    @abstractmethod
    def total_minted(self, owner_id: str) -> float:
        ...

    @abstractmethod
    def history(self, owner_id: str, limit: int = 50) -> list[HistoryEntry]:
        """Most recent entries first."""

    @abstractmethod
    def last_mint(self, device_id: str) -> MintRecord | None:
        """Mint with the latest window end for a device."""

    @abstractmethod
    def last_owner_mint(self, owner_id: str) -> MintRecord | None:
        """Most recently created mint credited to an owner."""

    @abstractmethod
    def minted_between(self, device_id: str, start: int, end: int) -> float:
        """Credits minted for windows ending within ``[start, end]``."""

    @abstractmethod
    def create_mint_request(self, owner_id: str, amount: float, data_hash: str) -> MintRequest:
        ...

    @abstractmethod
    def pending_mint_requests(self, owner_id: str) -> list[MintRequest]:
        ...

    @abstractmethod
    def confirm_mint_request(self, request_id: str) -> MintRequest:
        """Mark a request CONFIRMED.

        Raises:
            KeyError: unknown request id
        """


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryCreditLedger(CreditLedger):
    """Dict-backed ledger; every mutation holds one lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mints: dict[str, list[MintRecord]] = {}
        self._history: dict[str, list[HistoryEntry]] = {}
        self._balances: dict[str, float] = {}
        self._totals: dict[str, float] = {}
        self._requests: dict[str, MintRequest] = {}

    def has_mint_for_window(self, device_id: str, start: int, end: int) -> bool:
        with self._lock:
            return self._overlaps(device_id, start, end)

    def _overlaps(self, device_id: str, start: int, end: int) -> bool:
        return any(
            windows_overlap(start, end, m.window_start, m.window_end)
            for m in self._mints.get(device_id, [])
        )

    def append_mint(self, record: MintRecord) -> None:
        _check_window(record.window_start, record.window_end)
        with self._lock:
            if self._overlaps(record.device_id, record.window_start, record.window_end):
                raise DuplicateMintError(
                    "Credits already calculated for this period",
                    deviceId=record.device_id,
                    start=record.window_start,
                    end=record.window_end,
                )
            self._mints.setdefault(record.device_id, []).append(record)

    def append_history(self, owner_id: str, entry: HistoryEntry) -> None:
        with self._lock:
            self._history.setdefault(owner_id, []).append(entry)

    def add_balance(self, owner_id: str, credits: float) -> float:
        with self._lock:
            self._balances[owner_id] = self._balances.get(owner_id, 0.0) + credits
            if credits > 0:
                self._totals[owner_id] = self._totals.get(owner_id, 0.0) + credits
            return self._balances[owner_id]

    def get_balance(self, owner_id: str) -> float:
        return self._balances.get(owner_id, 0.0)

    def total_minted(self, owner_id: str) -> float:
        return self._totals.get(owner_id, 0.0)

    def history(self, owner_id: str, limit: int = 50) -> list[HistoryEntry]:
        with self._lock:
            entries = list(self._history.get(owner_id, []))
        entries.sort(key=lambda e: e.created_at, reverse=True)
        return entries[:limit]

    def last_mint(self, device_id: str) -> MintRecord | None:
        with self._lock:
            mints = self._mints.get(device_id, [])
            return max(mints, key=lambda m: m.window_end) if mints else None

    def last_owner_mint(self, owner_id: str) -> MintRecord | None:
        with self._lock:
            owned = [m for mints in self._mints.values() for m in mints if m.owner_id == owner_id]
        return max(owned, key=lambda m: m.created_at) if owned else None

    def minted_between(self, device_id: str, start: int, end: int) -> float:
        with self._lock:
            return sum(
                m.credits for m in self._mints.get(device_id, [])
                if start <= m.window_end <= end
            )

    def create_mint_request(self, owner_id: str, amount: float, data_hash: str) -> MintRequest:
        request = MintRequest(f"mint_{uuid.uuid4().hex[:12]}", owner_id, amount, data_hash)
        with self._lock:
            self._requests[request.request_id] = request
        return request

    def pending_mint_requests(self, owner_id: str) -> list[MintRequest]:
        with self._lock:
            return [
                r for r in self._requests.values()
                if r.owner_id == owner_id and r.status == MintRequestStatus.PENDING
            ]

    def confirm_mint_request(self, request_id: str) -> MintRequest:
        with self._lock:
            request = self._requests[request_id]
            request.status = MintRequestStatus.CONFIRMED
            return request


# =============================================================================
# SQLITE BACKEND
# =============================================================================


def _with_retry(
    func: Callable[[], T],
    max_retries: int,
    base_delay: float,
    max_delay: float,
) -> T:
    """Execute a function with retry logic for SQLite lock errors.

    Uses exponential backoff to handle transient 'database is locked' errors
    that can occur when multiple threads/processes access SQLite concurrently.

    Raises:
        sqlite3.OperationalError: If func raises a non-lock error or
            exceeds max_retries with lock errors
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except sqlite3.OperationalError as e:
            if "database is locked" not in str(e):
                raise

            if attempt >= max_retries:
                logger.warning(
                    "SQLite lock error after %d attempts, giving up: %s",
                    attempt,
                    e,
                )
                raise

            delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
            logger.debug(
                "SQLite lock error (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                max_retries,
                delay,
                e,
            )
            time.sleep(delay)


class SqliteCreditLedger(CreditLedger):
    """SQLite-backed ledger.

    Uses WAL mode so readers never block the single writer. Writes open
    with IMMEDIATE isolation, which takes the write lock before the overlap
    check, so check + insert cannot interleave across processes. The UNIQUE
    constraint catches exact-window duplicates even if that were bypassed.

    Each call opens its own connection; instances are safe to share across
    threads.
    """

    def __init__(self, db_path: Path | str, storage_config: StorageConfig | None = None) -> None:
        """Initialize the ledger.

        Args:
            db_path: Path to SQLite database file
            storage_config: Timeout/retry settings (defaults to global config)
        """
        self.db_path = Path(db_path)
        self._cfg = storage_config or get_validated_config().storage
        self._ensure_db()

    def _ensure_db(self) -> None:
        with self._connect_write() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS mints (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    owner_id TEXT NOT NULL,
                    window_start INTEGER NOT NULL,
                    window_end INTEGER NOT NULL,
                    credits REAL NOT NULL,
                    result_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    UNIQUE (device_id, window_start, window_end)
                );
                CREATE INDEX IF NOT EXISTS idx_mints_device ON mints (device_id, window_end);
                CREATE TABLE IF NOT EXISTS history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner_id TEXT NOT NULL,
                    device_id TEXT NOT NULL,
                    credits REAL NOT NULL,
                    window_start INTEGER NOT NULL,
                    window_end INTEGER NOT NULL,
                    created_at INTEGER NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_history_owner ON history (owner_id, created_at);
                CREATE TABLE IF NOT EXISTS balances (
                    owner_id TEXT PRIMARY KEY,
                    balance REAL NOT NULL DEFAULT 0,
                    total_minted REAL NOT NULL DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS mint_requests (
                    request_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    data_hash TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at INTEGER NOT NULL
                );
            """)
            conn.commit()

    def _open(self, isolation_level: str | None) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self._cfg.lock_timeout,
            isolation_level=isolation_level,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connect_read(self) -> Iterator[sqlite3.Connection]:
        """Read connection with DEFERRED isolation (concurrent readers)."""
        conn = self._open("DEFERRED")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _connect_write(self) -> Iterator[sqlite3.Connection]:
        """Write connection with IMMEDIATE isolation (serialized writers)."""
        conn = self._open("IMMEDIATE")
        try:
            yield conn
        finally:
            conn.close()

    def _retry(self, func: Callable[[], T]) -> T:
        return _with_retry(
            func,
            max_retries=self._cfg.retry_max,
            base_delay=self._cfg.retry_base,
            max_delay=self._cfg.retry_max_delay,
        )

    @staticmethod
    def _mint_from_row(row: sqlite3.Row) -> MintRecord:
        return MintRecord(
            device_id=row["device_id"],
            owner_id=row["owner_id"],
            window_start=row["window_start"],
            window_end=row["window_end"],
            credits=row["credits"],
            result=json.loads(row["result_json"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _request_from_row(row: sqlite3.Row) -> MintRequest:
        return MintRequest(
            request_id=row["request_id"],
            owner_id=row["owner_id"],
            amount=row["amount"],
            data_hash=row["data_hash"],
            status=MintRequestStatus(row["status"]),
            created_at=row["created_at"],
        )

    _OVERLAP_SQL = (
        "SELECT 1 FROM mints WHERE device_id = ? AND window_start <= ? AND ? <= window_end LIMIT 1"
    )

    def has_mint_for_window(self, device_id: str, start: int, end: int) -> bool:
        def do_check() -> bool:
            with self._connect_read() as conn:
                row = conn.execute(self._OVERLAP_SQL, (device_id, end, start)).fetchone()
                return row is not None

        return self._retry(do_check)

    def append_mint(self, record: MintRecord) -> None:
        _check_window(record.window_start, record.window_end)
        result_json = json.dumps(record.result, default=str)

        def do_append() -> None:
            with self._connect_write() as conn:
                try:
                    # Take the write lock before the overlap check; held until commit.
                    conn.execute("BEGIN IMMEDIATE")
                    exists = conn.execute(
                        self._OVERLAP_SQL,
                        (record.device_id, record.window_end, record.window_start),
                    ).fetchone()
                    if exists is not None:
                        conn.rollback()
                        raise DuplicateMintError(
                            "Credits already calculated for this period",
                            deviceId=record.device_id,
                            start=record.window_start,
                            end=record.window_end,
                        )
                    conn.execute(
                        """
                        INSERT INTO mints (device_id, owner_id, window_start, window_end,
                                           credits, result_json, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            record.device_id,
                            record.owner_id,
                            record.window_start,
                            record.window_end,
                            record.credits,
                            result_json,
                            record.created_at,
                        ),
                    )
                    conn.commit()
                except sqlite3.IntegrityError as e:
                    conn.rollback()
                    raise DuplicateMintError(
                        "Credits already calculated for this period",
                        deviceId=record.device_id,
                    ) from e

        self._retry(do_append)

    def append_history(self, owner_id: str, entry: HistoryEntry) -> None:
        def do_append() -> None:
            with self._connect_write() as conn:
                conn.execute(
                    """
                    INSERT INTO history (owner_id, device_id, credits, window_start,
                                         window_end, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        owner_id,
                        entry.device_id,
                        entry.credits,
                        entry.window_start,
                        entry.window_end,
                        entry.created_at,
                    ),
                )
                conn.commit()

        self._retry(do_append)

    def add_balance(self, owner_id: str, credits: float) -> float:
        minted = credits if credits > 0 else 0.0

        def do_add() -> float:
            with self._connect_write() as conn:
                conn.execute(
                    """
                    INSERT INTO balances (owner_id, balance, total_minted) VALUES (?, ?, ?)
                    ON CONFLICT(owner_id) DO UPDATE SET
                        balance = balance + excluded.balance,
                        total_minted = total_minted + excluded.total_minted
                    """,
                    (owner_id, credits, minted),
                )
                row = conn.execute(
                    "SELECT balance FROM balances WHERE owner_id = ?", (owner_id,)
                ).fetchone()
                conn.commit()
                return float(row["balance"])

        return self._retry(do_add)

    def _balance_column(self, owner_id: str, column: str) -> float:
        def do_read() -> float:
            with self._connect_read() as conn:
                row = conn.execute(
                    f"SELECT {column} FROM balances WHERE owner_id = ?", (owner_id,)
                ).fetchone()
                return float(row[column]) if row else 0.0

        return self._retry(do_read)

    def get_balance(self, owner_id: str) -> float:
        return self._balance_column(owner_id, "balance")

    def total_minted(self, owner_id: str) -> float:
        return self._balance_column(owner_id, "total_minted")

    def history(self, owner_id: str, limit: int = 50) -> list[HistoryEntry]:
        def do_read() -> list[HistoryEntry]:
            with self._connect_read() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM history WHERE owner_id = ?
                    ORDER BY created_at DESC, id DESC LIMIT ?
                    """,
                    (owner_id, limit),
                ).fetchall()
            return [
                HistoryEntry(
                    owner_id=r["owner_id"],
                    device_id=r["device_id"],
                    credits=r["credits"],
                    window_start=r["window_start"],
                    window_end=r["window_end"],
                    created_at=r["created_at"],
                )
                for r in rows
            ]

        return self._retry(do_read)

    def last_mint(self, device_id: str) -> MintRecord | None:
        def do_read() -> MintRecord | None:
            with self._connect_read() as conn:
                row = conn.execute(
                    "SELECT * FROM mints WHERE device_id = ? ORDER BY window_end DESC LIMIT 1",
                    (device_id,),
                ).fetchone()
            return self._mint_from_row(row) if row else None

        return self._retry(do_read)

    def last_owner_mint(self, owner_id: str) -> MintRecord | None:
        def do_read() -> MintRecord | None:
            with self._connect_read() as conn:
                row = conn.execute(
                    "SELECT * FROM mints WHERE owner_id = ? ORDER BY created_at DESC, id DESC LIMIT 1",
                    (owner_id,),
                ).fetchone()
            return self._mint_from_row(row) if row else None

        return self._retry(do_read)

    def minted_between(self, device_id: str, start: int, end: int) -> float:
        def do_read() -> float:
            with self._connect_read() as conn:
                row = conn.execute(
                    """
                    SELECT COALESCE(SUM(credits), 0) AS total FROM mints
                    WHERE device_id = ? AND window_end BETWEEN ? AND ?
                    """,
                    (device_id, start, end),
                ).fetchone()
            return float(row["total"])

        return self._retry(do_read)

    def create_mint_request(self, owner_id: str, amount: float, data_hash: str) -> MintRequest:
        request = MintRequest(f"mint_{uuid.uuid4().hex[:12]}", owner_id, amount, data_hash)

        def do_insert() -> None:
            with self._connect_write() as conn:
                conn.execute(
                    """
                    INSERT INTO mint_requests (request_id, owner_id, amount, data_hash,
                                               status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.request_id,
                        request.owner_id,
                        request.amount,
                        request.data_hash,
                        request.status.value,
                        request.created_at,
                    ),
                )
                conn.commit()

        self._retry(do_insert)
        return request

    def pending_mint_requests(self, owner_id: str) -> list[MintRequest]:
        def do_read() -> list[MintRequest]:
            with self._connect_read() as conn:
                rows = conn.execute(
                    "SELECT * FROM mint_requests WHERE owner_id = ? AND status = ? ORDER BY created_at",
                    (owner_id, MintRequestStatus.PENDING.value),
                ).fetchall()
            return [self._request_from_row(r) for r in rows]

        return self._retry(do_read)

    def confirm_mint_request(self, request_id: str) -> MintRequest:
        def do_confirm() -> MintRequest:
            with self._connect_write() as conn:
                conn.execute(
                    "UPDATE mint_requests SET status = ? WHERE request_id = ?",
                    (MintRequestStatus.CONFIRMED.value, request_id),
                )
                row = conn.execute(
                    "SELECT * FROM mint_requests WHERE request_id = ?", (request_id,)
                ).fetchone()
                conn.commit()
            if row is None:
                raise KeyError(request_id)
            return self._request_from_row(row)

        return self._retry(do_confirm)


def create_ledger(storage_config: StorageConfig | None = None) -> CreditLedger:
    """Build the ledger backend named in config."""
    cfg = storage_config or get_validated_config().storage
    if cfg.backend == "sqlite":
        return SqliteCreditLedger(cfg.sqlite_path, cfg)
    return InMemoryCreditLedger()
