"""
SQLite storage for bridge and redemption records.

Tables:
    - bridges: one row per forward conversion (BridgeRecord).
    - redemptions: one row per reverse conversion (RedemptionRecord).
    - status_transitions: append-only audit log of every status change.
    - positions: vault position ledger, credited on share mint and
      debited on redemption.
    - withdrawals: append-only log of settled redemptions.

Invariants:
    - Status changes are conditional updates on the expected prior
      status (optimistic concurrency). A lost race raises
      StaleRecordError; an edge outside the transition graph raises
      InvalidTransitionError.
    - vault_mint_tx_hash and confirmation_tx_hash are write-once.
    - status_transitions and withdrawals are never updated or deleted.
    - Records are never deleted.
    - All timestamps are RFC3339 UTC.

SQLite conventions:
    - _get_conn() with persistent connection for :memory:
    - _transaction() context manager with commit/rollback
    - _init_schema() via executescript
    - sqlite3.Row row factory
    - WAL mode for file-backed databases
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from pathlib import Path
from typing import Any, TypeVar

from fassets_bridge.errors import (
    BridgeError,
    InvalidTransitionError,
    RecordNotFoundError,
    StaleRecordError,
)
from fassets_bridge.records import (
    BRIDGE_NON_TERMINAL,
    BRIDGE_TRANSITIONS,
    REDEMPTION_TRANSITIONS,
    BridgeRecord,
    BridgeStatus,
    RedemptionRecord,
    RedemptionStatus,
    now_utc,
)

logger = logging.getLogger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS bridges (
    id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL,
    vault_id TEXT NOT NULL,
    source_amount TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    destination_amount_expected TEXT,
    position_id TEXT,
    source_payment_reference TEXT,
    agent_vault_address TEXT,
    agent_source_address TEXT,
    reservation_tx_hash TEXT,
    collateral_reservation_id TEXT,
    reserved_value_raw TEXT,
    reserved_fee_raw TEXT,
    total_amount_raw TEXT,
    minting_fee_bips INTEGER,
    reservation_expiry TEXT,
    source_tx_hash TEXT,
    source_confirmed_at TEXT,
    attestation_tx_hash TEXT,
    voting_round_id INTEGER,
    request_bytes TEXT,
    proof_blob TEXT,
    destination_tx_hash TEXT,
    destination_amount_received TEXT,
    vault_mint_tx_hash TEXT,
    error_message TEXT,
    error_kind TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    bridge_started_at TEXT,
    reserved_at TEXT,
    proof_generated_at TEXT,
    destination_received_at TEXT,
    completed_at TEXT,
    vault_minted_at TEXT,
    expires_at TEXT,
    cancelled_at TEXT,
    cancellation_reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_bridges_status
ON bridges(status);

CREATE INDEX IF NOT EXISTS idx_bridges_wallet
ON bridges(wallet_address);

CREATE TABLE IF NOT EXISTS redemptions (
    id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL,
    vault_id TEXT NOT NULL,
    position_id TEXT NOT NULL,
    share_amount TEXT NOT NULL,
    user_source_address TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    vault_redeem_tx_hash TEXT,
    fxrp_redeemed TEXT,
    redemption_tx_hash TEXT,
    destination_request_id TEXT,
    agent_vault_address TEXT,
    agent_source_address TEXT,
    payment_reference TEXT,
    expected_payout_raw TEXT,
    source_payout_tx_hash TEXT,
    xrp_sent TEXT,
    attestation_tx_hash TEXT,
    voting_round_id INTEGER,
    request_bytes TEXT,
    proof_blob TEXT,
    confirmation_tx_hash TEXT,
    error_message TEXT,
    error_kind TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_retry_at TEXT,
    payout_received_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_redemptions_status
ON redemptions(status);

CREATE TABLE IF NOT EXISTS status_transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    record_kind TEXT NOT NULL,
    record_id TEXT NOT NULL,
    from_status TEXT,
    to_status TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_record
ON status_transitions(record_kind, record_id, seq);

CREATE TABLE IF NOT EXISTS positions (
    position_id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL,
    vault_id TEXT NOT NULL,
    amount TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS withdrawals (
    redemption_id TEXT PRIMARY KEY,
    wallet_address TEXT NOT NULL,
    vault_id TEXT NOT NULL,
    position_id TEXT NOT NULL,
    share_amount TEXT NOT NULL,
    xrp_amount TEXT,
    confirmation_tx_hash TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

RecordT = TypeVar("RecordT", BridgeRecord, RedemptionRecord)
StatusT = TypeVar("StatusT", BridgeStatus, RedemptionStatus)

_BRIDGE_KIND = "bridge"
_REDEMPTION_KIND = "redemption"


class BridgeStore:
    """SQLite-backed store for bridge and redemption records.

    Thread-safe via SQLite's built-in locking. Callers in the same
    process additionally serialize per record (see fassets_bridge.locks).

    Args:
        db_path: Path to SQLite database file, or ":memory:" for in-memory.
        now_fn: Clock used for updated_at and log timestamps. Inject for tests.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        self._db_path = str(db_path)
        self._is_memory = self._db_path == ":memory:"
        self._now_fn = now_fn or now_utc

        if self._is_memory:
            self._persistent_conn = sqlite3.connect(":memory:", check_same_thread=False)
            self._persistent_conn.row_factory = sqlite3.Row
            self._persistent_conn.execute("PRAGMA foreign_keys = ON")
        else:
            self._persistent_conn = None

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get a database connection with proper settings."""
        if self._persistent_conn is not None:
            return self._persistent_conn

        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for a database transaction."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._persistent_conn is None:
                conn.close()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self._transaction() as conn:
            conn.executescript(_SCHEMA)

    def close(self) -> None:
        """Close the persistent in-memory connection, if any."""
        if self._persistent_conn is not None:
            self._persistent_conn.close()
            self._persistent_conn = None

    # -----------------------------------------------------------------
    # Bridge records
    # -----------------------------------------------------------------

    def insert_bridge(self, record: BridgeRecord) -> bool:
        """Insert a bridge row. Returns True if inserted, False if the id exists."""
        return self._insert(record, _BRIDGE_KIND)

    def get_bridge(self, bridge_id: str) -> BridgeRecord:
        """Fetch a bridge. Raises RecordNotFoundError if absent."""
        return self._get(BridgeRecord, bridge_id)

    def find_bridge(self, bridge_id: str) -> BridgeRecord | None:
        with self._transaction() as conn:
            return self._select(conn, BridgeRecord, bridge_id)

    def transition_bridge(
        self,
        bridge_id: str,
        expected: BridgeStatus | Iterable[BridgeStatus],
        new_status: BridgeStatus,
        *,
        note: str | None = None,
        **changes: Any,
    ) -> BridgeRecord:
        """Move a bridge to ``new_status`` if it is currently in ``expected``.

        Args:
            bridge_id: Record id.
            expected: Status or statuses the caller observed.
            new_status: Target status; must be a graph edge from the
                current status.
            note: Optional audit note for the transition log.
            **changes: Other columns to write in the same update.

        Returns:
            The updated record.

        Raises:
            RecordNotFoundError: No such record.
            StaleRecordError: Current status is not in ``expected``.
            InvalidTransitionError: Edge not allowed by BRIDGE_TRANSITIONS.
        """
        return self._transition(
            BridgeRecord, _BRIDGE_KIND, BRIDGE_TRANSITIONS,
            bridge_id, expected, new_status, note, changes,
        )

    def update_bridge(self, bridge_id: str, **changes: Any) -> BridgeRecord:
        """Write non-status columns. Returns the updated record."""
        return self._update(BridgeRecord, bridge_id, changes)

    def record_vault_mint(
        self,
        bridge_id: str,
        tx_hash: str,
        position_id: str,
        amount: Decimal,
    ) -> bool:
        """Record the share mint and credit the position, once.

        The tx hash, position id and position credit are written in one
        transaction, conditional on vault_mint_tx_hash still being NULL.

        Returns:
            False if a share mint was already recorded (nothing written).
        """
        updated_at = BridgeRecord.encode_field("updated_at", self._now_fn())
        with self._transaction() as conn:
            record = self._require(conn, BridgeRecord, bridge_id)
            cursor = conn.execute(
                "UPDATE bridges SET vault_mint_tx_hash = ?, position_id = ?, updated_at = ? "
                "WHERE id = ? AND vault_mint_tx_hash IS NULL",
                (tx_hash, position_id, updated_at, bridge_id),
            )
            if cursor.rowcount == 0:
                return False
            self._credit_position(
                conn, position_id, record.wallet_address, record.vault_id, amount, updated_at
            )
            return True

    def list_bridges(
        self,
        statuses: Iterable[BridgeStatus] | None = None,
        wallet_address: str | None = None,
    ) -> list[BridgeRecord]:
        """List bridges, oldest first, optionally filtered."""
        return self._list(BridgeRecord, statuses, wallet_address)

    def list_expired_bridges(self, now: datetime) -> list[BridgeRecord]:
        """Non-terminal bridges whose payment deadline has passed."""
        candidates = self._list(BridgeRecord, BRIDGE_NON_TERMINAL, None)
        return [r for r in candidates if r.expires_at is not None and r.expires_at <= now]

    # -----------------------------------------------------------------
    # Redemption records
    # -----------------------------------------------------------------

    def insert_redemption(self, record: RedemptionRecord) -> bool:
        """Insert a redemption row. Returns True if inserted, False if the id exists."""
        return self._insert(record, _REDEMPTION_KIND)

    def get_redemption(self, redemption_id: str) -> RedemptionRecord:
        return self._get(RedemptionRecord, redemption_id)

    def transition_redemption(
        self,
        redemption_id: str,
        expected: RedemptionStatus | Iterable[RedemptionStatus],
        new_status: RedemptionStatus,
        *,
        note: str | None = None,
        **changes: Any,
    ) -> RedemptionRecord:
        """Conditional status change; same contract as transition_bridge."""
        return self._transition(
            RedemptionRecord, _REDEMPTION_KIND, REDEMPTION_TRANSITIONS,
            redemption_id, expected, new_status, note, changes,
        )

    def update_redemption(self, redemption_id: str, **changes: Any) -> RedemptionRecord:
        return self._update(RedemptionRecord, redemption_id, changes)

    def set_confirmation_tx_hash(self, redemption_id: str, tx_hash: str) -> bool:
        """Record the payout confirmation tx. Returns False if already recorded."""
        return self._set_once(RedemptionRecord, redemption_id, "confirmation_tx_hash", tx_hash)

    def list_redemptions(
        self,
        statuses: Iterable[RedemptionStatus] | None = None,
        wallet_address: str | None = None,
    ) -> list[RedemptionRecord]:
        return self._list(RedemptionRecord, statuses, wallet_address)

    def settle_redemption(
        self,
        redemption_id: str,
        expected: Iterable[RedemptionStatus],
    ) -> RedemptionRecord:
        """Debit the position, write the withdrawal and mark completed.

        All three writes happen in one transaction. The record must
        already carry its confirmation_tx_hash.

        Raises:
            BridgeError: Position missing or holding less than the
                redeemed share amount.
        """
        with self._transaction() as conn:
            record = self._require(conn, RedemptionRecord, redemption_id)
            if record.confirmation_tx_hash is None:
                raise InvalidTransitionError(
                    f"redemption {redemption_id} has no confirmation tx",
                    details={"redemption_id": redemption_id},
                )
            now = self._now_fn()
            self._debit_position(conn, record.position_id, record.share_amount, now)
            conn.execute(
                """
                INSERT INTO withdrawals
                (redemption_id, wallet_address, vault_id, position_id,
                 share_amount, xrp_amount, confirmation_tx_hash, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.wallet_address,
                    record.vault_id,
                    record.position_id,
                    f"{record.share_amount:f}",
                    f"{record.xrp_sent:f}" if record.xrp_sent is not None else None,
                    record.confirmation_tx_hash,
                    now.isoformat(),
                ),
            )
            return self._apply_transition(
                conn, RedemptionRecord, _REDEMPTION_KIND, REDEMPTION_TRANSITIONS,
                record, _as_set(expected), RedemptionStatus.COMPLETED,
                "withdrawal recorded", {"completed_at": now},
            )

    # -----------------------------------------------------------------
    # Positions and withdrawals
    # -----------------------------------------------------------------

    def credit_position(
        self,
        position_id: str,
        wallet_address: str,
        vault_id: str,
        amount: Decimal,
    ) -> Decimal:
        """Add ``amount`` to a position, creating it if needed. Returns the new balance."""
        now = self._now_fn().isoformat()
        with self._transaction() as conn:
            return self._credit_position(conn, position_id, wallet_address, vault_id, amount, now)

    def get_position(self, position_id: str) -> dict[str, Any] | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM positions WHERE position_id = ?", (position_id,)
            ).fetchone()
            return dict(row) if row else None

    def list_withdrawals(self, wallet_address: str | None = None) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            if wallet_address is None:
                rows = conn.execute("SELECT * FROM withdrawals ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM withdrawals WHERE wallet_address = ? ORDER BY created_at",
                    (wallet_address,),
                ).fetchall()
            return [dict(row) for row in rows]

    def _credit_position(
        self,
        conn: sqlite3.Connection,
        position_id: str,
        wallet_address: str,
        vault_id: str,
        amount: Decimal,
        now: str,
    ) -> Decimal:
        row = conn.execute(
            "SELECT amount FROM positions WHERE position_id = ?", (position_id,)
        ).fetchone()
        balance = amount if row is None else Decimal(row["amount"]) + amount
        conn.execute(
            """
            INSERT INTO positions (position_id, wallet_address, vault_id, amount, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(position_id) DO UPDATE SET amount = excluded.amount,
                updated_at = excluded.updated_at
            """,
            (position_id, wallet_address, vault_id, f"{balance:f}", now),
        )
        return balance

    def _debit_position(
        self,
        conn: sqlite3.Connection,
        position_id: str,
        amount: Decimal,
        now: datetime,
    ) -> None:
        row = conn.execute(
            "SELECT amount FROM positions WHERE position_id = ?", (position_id,)
        ).fetchone()
        if row is None:
            raise BridgeError(
                f"position {position_id} not found",
                details={"position_id": position_id},
            )
        balance = Decimal(row["amount"])
        if balance < amount:
            raise BridgeError(
                f"position {position_id} holds {balance}, cannot debit {amount}",
                details={"position_id": position_id},
            )
        conn.execute(
            "UPDATE positions SET amount = ?, updated_at = ? WHERE position_id = ?",
            (f"{balance - amount:f}", now.isoformat(), position_id),
        )

    # -----------------------------------------------------------------
    # Transition log
    # -----------------------------------------------------------------

    def history(self, record_id: str, record_kind: str = _BRIDGE_KIND) -> list[dict[str, Any]]:
        """Status transitions for a record, in order."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT seq, from_status, to_status, note, created_at
                FROM status_transitions
                WHERE record_kind = ? AND record_id = ?
                ORDER BY seq
                """,
                (record_kind, record_id),
            ).fetchall()
            return [dict(row) for row in rows]

    # -----------------------------------------------------------------
    # Shared row plumbing
    # -----------------------------------------------------------------

    def _insert(self, record: BridgeRecord | RedemptionRecord, kind: str) -> bool:
        row = record.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        with self._transaction() as conn:
            try:
                conn.execute(
                    f"INSERT INTO {record.TABLE} ({columns}) VALUES ({placeholders})",
                    tuple(row.values()),
                )
            except sqlite3.IntegrityError:
                return False
            self._log_transition(conn, kind, record.id, None, record.status, "created")
            return True

    def _select(
        self,
        conn: sqlite3.Connection,
        cls: type[RecordT],
        record_id: str,
    ) -> RecordT | None:
        row = conn.execute(f"SELECT * FROM {cls.TABLE} WHERE id = ?", (record_id,)).fetchone()
        return cls.from_row(dict(row)) if row else None

    def _require(
        self,
        conn: sqlite3.Connection,
        cls: type[RecordT],
        record_id: str,
    ) -> RecordT:
        record = self._select(conn, cls, record_id)
        if record is None:
            raise RecordNotFoundError(
                f"{cls.TABLE} record {record_id} not found",
                details={"record_id": record_id},
            )
        return record

    def _get(self, cls: type[RecordT], record_id: str) -> RecordT:
        with self._transaction() as conn:
            return self._require(conn, cls, record_id)

    def _list(
        self,
        cls: type[RecordT],
        statuses: Iterable[StrEnum] | None,
        wallet_address: str | None,
    ) -> list[RecordT]:
        clauses: list[str] = []
        params: list[Any] = []
        if statuses is not None:
            status_values = [str(s) for s in statuses]
            if not status_values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        if wallet_address is not None:
            clauses.append("wallet_address = ?")
            params.append(wallet_address)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM {cls.TABLE}{where} ORDER BY created_at, id", params
            ).fetchall()
            return [cls.from_row(dict(row)) for row in rows]

    def _encode_changes(
        self,
        cls: type[RecordT],
        changes: Mapping[str, Any],
    ) -> dict[str, Any]:
        columns = set(cls.column_names())
        unknown = [name for name in changes if name not in columns]
        if unknown:
            raise ValueError(f"unknown {cls.TABLE} columns: {', '.join(sorted(unknown))}")
        if "id" in changes or "status" in changes:
            raise ValueError("id and status cannot be written directly")
        encoded = {name: cls.encode_field(name, value) for name, value in changes.items()}
        encoded["updated_at"] = cls.encode_field("updated_at", self._now_fn())
        return encoded

    def _update(
        self,
        cls: type[RecordT],
        record_id: str,
        changes: Mapping[str, Any],
    ) -> RecordT:
        encoded = self._encode_changes(cls, changes)
        assignments = ", ".join(f"{name} = ?" for name in encoded)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {cls.TABLE} SET {assignments} WHERE id = ?",
                (*encoded.values(), record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(
                    f"{cls.TABLE} record {record_id} not found",
                    details={"record_id": record_id},
                )
            return self._require(conn, cls, record_id)

    def _set_once(self, cls: type[RecordT], record_id: str, column: str, value: str) -> bool:
        updated_at = cls.encode_field("updated_at", self._now_fn())
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE {cls.TABLE} SET {column} = ?, updated_at = ? "
                f"WHERE id = ? AND {column} IS NULL",
                (value, updated_at, record_id),
            )
            if cursor.rowcount == 0:
                self._require(conn, cls, record_id)
                return False
            return True

    def _transition(
        self,
        cls: type[RecordT],
        kind: str,
        graph: Mapping[Any, frozenset[Any]],
        record_id: str,
        expected: StatusT | Iterable[StatusT],
        new_status: StatusT,
        note: str | None,
        changes: Mapping[str, Any],
    ) -> RecordT:
        with self._transaction() as conn:
            record = self._require(conn, cls, record_id)
            return self._apply_transition(
                conn, cls, kind, graph, record, _as_set(expected), new_status, note, changes
            )

    def _apply_transition(
        self,
        conn: sqlite3.Connection,
        cls: type[RecordT],
        kind: str,
        graph: Mapping[Any, frozenset[Any]],
        record: RecordT,
        expected: set[Any],
        new_status: Any,
        note: str | None,
        changes: Mapping[str, Any],
    ) -> RecordT:
        current = record.status
        if current not in expected:
            raise StaleRecordError(
                f"{cls.TABLE} record {record.id} is {current}, expected one of "
                f"{', '.join(sorted(str(s) for s in expected))}",
                details={"record_id": record.id, "status": str(current)},
            )
        if new_status not in graph[current]:
            raise InvalidTransitionError(
                f"{cls.TABLE} record {record.id}: {current} -> {new_status} is not allowed",
                details={"record_id": record.id, "from": str(current), "to": str(new_status)},
            )

        encoded = self._encode_changes(cls, changes)
        encoded["status"] = str(new_status)
        assignments = ", ".join(f"{name} = ?" for name in encoded)
        cursor = conn.execute(
            f"UPDATE {cls.TABLE} SET {assignments} WHERE id = ? AND status = ?",
            (*encoded.values(), record.id, str(current)),
        )
        if cursor.rowcount == 0:
            raise StaleRecordError(
                f"{cls.TABLE} record {record.id} changed concurrently",
                details={"record_id": record.id},
            )
        self._log_transition(conn, kind, record.id, current, new_status, note)
        logger.info(f"{kind} {record.id}: {current} -> {new_status}")
        return self._require(conn, cls, record.id)

    def _log_transition(
        self,
        conn: sqlite3.Connection,
        kind: str,
        record_id: str,
        from_status: StrEnum | None,
        to_status: StrEnum,
        note: str | None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO status_transitions
            (record_kind, record_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                kind,
                record_id,
                str(from_status) if from_status is not None else None,
                str(to_status),
                note,
                self._now_fn().isoformat(),
            ),
        )


def _as_set(expected: Any) -> set[Any]:
    if isinstance(expected, StrEnum):
        return {expected}
    return set(expected)
