from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import date
from typing import Any, Iterator, List, Optional

from quantlab.models import (
    AllocationPosition,
    AllocationSnapshot,
    ExitReason,
    PendingSignal,
    Position,
    PositionStatus,
    Side,
    SignalStatus,
)

log = logging.getLogger(__name__)


class RunInProgressError(RuntimeError):
    """Another owner holds the lease for the same (run kind, date)."""

    def __init__(self, kind: str, run_date: date, owner: str) -> None:
        self.kind = kind
        self.run_date = run_date
        self.owner = owner
        super().__init__(f"{kind} run for {run_date.isoformat()} already in progress (owner={owner})")


_SIGNAL_ORDER = "rank_score IS NULL, rank_score DESC, r_multiple IS NULL, r_multiple DESC, id ASC"


class SqliteStore:
    """
    Signals, positions, allocation snapshots and run leases in one SQLite file.

    A single connection is shared by all threads and guarded by a re-entrant lock.
    Statements outside `transaction()` autocommit.
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self._db_path = db_path
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._ensure_schema()

    @property
    def db_path(self) -> str:
        return self._db_path

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator["SqliteStore"]:
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self._conn.execute(sql, params)

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    # -- signals ---------------------------------------------------------------

    def insert_signal(self, signal: PendingSignal) -> PendingSignal:
        """Insert a PENDING signal; a duplicate (symbol, date, strategy, side) returns the stored row."""
        now = time.time()
        with self._lock:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO signals(symbol, signal_date, side, entry_price, stop_loss, target_price, "
                "quantity, strategy_code, confidence_score, status, rank_score, r_multiple, created_epoch_s, updated_epoch_s) "
                "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    signal.symbol,
                    signal.signal_date.isoformat(),
                    Side(signal.side).value,
                    float(signal.entry_price),
                    signal.stop_loss,
                    signal.target_price,
                    int(signal.quantity),
                    signal.strategy_code,
                    signal.confidence_score,
                    SignalStatus(signal.status).value,
                    signal.rank_score,
                    signal.r_multiple,
                    now,
                    now,
                ),
            )
            if cur.rowcount:
                signal_id = int(cur.lastrowid)
            else:
                row = self._conn.execute(
                    "SELECT id FROM signals WHERE symbol=? AND signal_date=? AND strategy_code=? AND side=?",
                    (signal.symbol, signal.signal_date.isoformat(), signal.strategy_code, Side(signal.side).value),
                ).fetchone()
                signal_id = int(row["id"])
                log.debug("Signal %s/%s/%s already stored as id=%d", signal.symbol, signal.signal_date, signal.strategy_code, signal_id)
        stored = self.get_signal(signal_id)
        if stored is None:
            raise RuntimeError(f"signal {signal_id} vanished after insert")
        return stored

    def get_signal(self, signal_id: int) -> Optional[PendingSignal]:
        row = self._fetchone("SELECT * FROM signals WHERE id=?", (int(signal_id),))
        return _row_to_signal(row) if row else None

    def list_signals(
        self,
        *,
        status: Optional[SignalStatus] = None,
        signal_date: Optional[date] = None,
    ) -> List[PendingSignal]:
        clauses, params = [], []
        if status is not None:
            clauses.append("status=?")
            params.append(SignalStatus(status).value)
        if signal_date is not None:
            clauses.append("signal_date=?")
            params.append(signal_date.isoformat())
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._fetchall(f"SELECT * FROM signals {where} ORDER BY {_SIGNAL_ORDER}", tuple(params))
        return [_row_to_signal(r) for r in rows]

    def pending_signals(self, signal_date: Optional[date] = None, limit: Optional[int] = None) -> List[PendingSignal]:
        """PENDING signals in rank order (rank desc, R desc, id asc; unranked last)."""
        sql = "SELECT * FROM signals WHERE status=?"
        params: list[Any] = [SignalStatus.PENDING.value]
        if signal_date is not None:
            sql += " AND signal_date=?"
            params.append(signal_date.isoformat())
        sql += f" ORDER BY {_SIGNAL_ORDER}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [_row_to_signal(r) for r in self._fetchall(sql, tuple(params))]

    def update_signal_rank(self, signal_id: int, rank_score: float, r_multiple: float) -> bool:
        cur = self._execute(
            "UPDATE signals SET rank_score=?, r_multiple=?, updated_epoch_s=? WHERE id=? AND status=?",
            (float(rank_score), float(r_multiple), time.time(), int(signal_id), SignalStatus.PENDING.value),
        )
        return cur.rowcount == 1

    def transition_signal(self, signal_id: int, new_status: SignalStatus) -> bool:
        """PENDING -> new_status. Returns False when the row is no longer PENDING."""
        cur = self._execute(
            "UPDATE signals SET status=?, updated_epoch_s=? WHERE id=? AND status=?",
            (SignalStatus(new_status).value, time.time(), int(signal_id), SignalStatus.PENDING.value),
        )
        return cur.rowcount == 1

    # -- positions -------------------------------------------------------------

    def insert_position(self, position: Position, *, simulated: bool = False) -> Position:
        cur = self._execute(
            "INSERT INTO positions(signal_id, symbol, strategy_code, entry_date, entry_price, quantity, stop_loss, "
            "target_price, status, current_price, unrealized_pnl, unrealized_pnl_pct, r_multiple, exit_date, "
            "exit_price, exit_reason, pnl, pnl_pct, simulated, created_epoch_s) "
            "VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                position.signal_id,
                position.symbol,
                position.strategy_code,
                position.entry_date.isoformat(),
                float(position.entry_price),
                int(position.quantity),
                position.stop_loss,
                position.target_price,
                PositionStatus(position.status).value,
                position.current_price,
                position.unrealized_pnl,
                position.unrealized_pnl_pct,
                position.r_multiple,
                position.exit_date.isoformat() if position.exit_date else None,
                position.exit_price,
                ExitReason(position.exit_reason).value if position.exit_reason else None,
                position.pnl,
                position.pnl_pct,
                1 if simulated else 0,
                time.time(),
            ),
        )
        stored = self.get_position(int(cur.lastrowid))
        if stored is None:
            raise RuntimeError(f"position {cur.lastrowid} vanished after insert")
        return stored

    def get_position(self, position_id: int) -> Optional[Position]:
        row = self._fetchone("SELECT * FROM positions WHERE id=?", (int(position_id),))
        return _row_to_position(row) if row else None

    def list_positions(self, status: Optional[PositionStatus] = None) -> List[Position]:
        if status is None:
            rows = self._fetchall("SELECT * FROM positions ORDER BY id")
        else:
            rows = self._fetchall("SELECT * FROM positions WHERE status=? ORDER BY id", (PositionStatus(status).value,))
        return [_row_to_position(r) for r in rows]

    def open_positions(self) -> List[Position]:
        return self.list_positions(PositionStatus.OPEN)

    def closed_positions_for_strategy(self, strategy_code: str) -> List[Position]:
        rows = self._fetchall(
            "SELECT * FROM positions WHERE status=? AND strategy_code=? ORDER BY exit_date, id",
            (PositionStatus.CLOSED.value, strategy_code),
        )
        return [_row_to_position(r) for r in rows]

    def update_position_marks(self, position: Position) -> bool:
        cur = self._execute(
            "UPDATE positions SET current_price=?, unrealized_pnl=?, unrealized_pnl_pct=?, r_multiple=? "
            "WHERE id=? AND status=?",
            (
                position.current_price,
                position.unrealized_pnl,
                position.unrealized_pnl_pct,
                position.r_multiple,
                int(position.id),
                PositionStatus.OPEN.value,
            ),
        )
        return cur.rowcount == 1

    def close_position(self, position: Position) -> bool:
        """OPEN -> CLOSED with the exit fields of `position`. False when already closed."""
        cur = self._execute(
            "UPDATE positions SET status=?, current_price=NULL, unrealized_pnl=NULL, unrealized_pnl_pct=NULL, "
            "r_multiple=?, exit_date=?, exit_price=?, exit_reason=?, pnl=?, pnl_pct=? WHERE id=? AND status=?",
            (
                PositionStatus.CLOSED.value,
                position.r_multiple,
                position.exit_date.isoformat() if position.exit_date else None,
                position.exit_price,
                ExitReason(position.exit_reason).value if position.exit_reason else None,
                position.pnl,
                position.pnl_pct,
                int(position.id),
                PositionStatus.OPEN.value,
            ),
        )
        return cur.rowcount == 1

    # -- allocation snapshots --------------------------------------------------

    def save_allocation(self, snapshot: AllocationSnapshot) -> AllocationSnapshot:
        with self.transaction():
            cur = self._conn.execute(
                "INSERT INTO allocation_snapshots(run_date, total_capital, deployed_capital, free_cash, "
                "expected_r_multiple, created_epoch_s) VALUES(?, ?, ?, ?, ?, ?)",
                (
                    snapshot.run_date.isoformat(),
                    snapshot.total_capital,
                    snapshot.deployed_capital,
                    snapshot.free_cash,
                    snapshot.expected_r_multiple,
                    time.time(),
                ),
            )
            snapshot_id = int(cur.lastrowid)
            self._conn.executemany(
                "INSERT INTO allocation_positions(snapshot_id, ordinal, signal_id, symbol, quantity, entry_price, "
                "capital_used, risk_amount, expected_r, allocation_pct) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        snapshot_id,
                        i,
                        p.signal_id,
                        p.symbol,
                        p.quantity,
                        p.entry_price,
                        p.capital_used,
                        p.risk_amount,
                        p.expected_r,
                        p.allocation_pct,
                    )
                    for i, p in enumerate(snapshot.positions)
                ],
            )
        stored = self.get_allocation(snapshot_id)
        if stored is None:
            raise RuntimeError(f"allocation snapshot {snapshot_id} vanished after insert")
        return stored

    def get_allocation(self, snapshot_id: int) -> Optional[AllocationSnapshot]:
        row = self._fetchone("SELECT * FROM allocation_snapshots WHERE id=?", (int(snapshot_id),))
        return self._row_to_snapshot(row) if row else None

    def allocation_snapshots(self, start: Optional[date] = None, end: Optional[date] = None) -> List[AllocationSnapshot]:
        rows = self._fetchall(
            "SELECT * FROM allocation_snapshots WHERE run_date >= ? AND run_date <= ? ORDER BY run_date, id",
            ((start or date.min).isoformat(), (end or date.max).isoformat()),
        )
        return [self._row_to_snapshot(r) for r in rows]

    def _row_to_snapshot(self, row: sqlite3.Row) -> AllocationSnapshot:
        items = self._fetchall(
            "SELECT * FROM allocation_positions WHERE snapshot_id=? ORDER BY ordinal", (int(row["id"]),)
        )
        return AllocationSnapshot(
            id=int(row["id"]),
            run_date=date.fromisoformat(row["run_date"]),
            total_capital=float(row["total_capital"]),
            deployed_capital=float(row["deployed_capital"]),
            free_cash=float(row["free_cash"]),
            expected_r_multiple=float(row["expected_r_multiple"]),
            positions=tuple(
                AllocationPosition(
                    symbol=r["symbol"],
                    quantity=int(r["quantity"]),
                    capital_used=float(r["capital_used"]),
                    risk_amount=float(r["risk_amount"]),
                    expected_r=float(r["expected_r"]),
                    allocation_pct=float(r["allocation_pct"]),
                    signal_id=r["signal_id"],
                    entry_price=float(r["entry_price"]),
                )
                for r in items
            ),
        )

    # -- run leases ------------------------------------------------------------

    def claim_run(self, kind: str, run_date: date, *, ttl_s: float = 900.0, owner: Optional[str] = None) -> str:
        """Claim (kind, run_date); raises RunInProgressError while another live lease exists."""
        owner = owner or f"{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"
        now = time.time()
        with self.transaction():
            self._conn.execute(
                "DELETE FROM run_leases WHERE kind=? AND run_date=? AND expires_epoch_s < ?",
                (kind, run_date.isoformat(), now),
            )
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO run_leases(kind, run_date, owner, expires_epoch_s) VALUES(?, ?, ?, ?)",
                (kind, run_date.isoformat(), owner, now + ttl_s),
            )
            if cur.rowcount == 0:
                holder = self._conn.execute(
                    "SELECT owner FROM run_leases WHERE kind=? AND run_date=?", (kind, run_date.isoformat())
                ).fetchone()
                raise RunInProgressError(kind, run_date, holder["owner"] if holder else "?")
        return owner

    def release_run(self, kind: str, run_date: date, owner: str) -> None:
        self._execute(
            "DELETE FROM run_leases WHERE kind=? AND run_date=? AND owner=?",
            (kind, run_date.isoformat(), owner),
        )

    @contextmanager
    def lease(self, kind: str, run_date: date, *, ttl_s: float = 900.0) -> Iterator[str]:
        owner = self.claim_run(kind, run_date, ttl_s=ttl_s)
        try:
            yield owner
        finally:
            self.release_run(kind, run_date, owner)

    # -- errors ----------------------------------------------------------------

    def log_error(self, *, where: str, message: str) -> None:
        self._execute(
            "INSERT INTO errors(ts_epoch_s, where_text, message) VALUES(?, ?, ?)",
            (time.time(), str(where), str(message)),
        )

    def errors(self) -> list[tuple[str, str]]:
        return [(r["where_text"], r["message"]) for r in self._fetchall("SELECT * FROM errors ORDER BY id")]

    def _ensure_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS schema_version(
                version INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS signals(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                signal_date TEXT NOT NULL,
                side TEXT NOT NULL,
                entry_price REAL NOT NULL,
                stop_loss REAL,
                target_price REAL,
                quantity INTEGER NOT NULL DEFAULT 1,
                strategy_code TEXT NOT NULL,
                confidence_score REAL,
                status TEXT NOT NULL,
                rank_score REAL,
                r_multiple REAL,
                created_epoch_s REAL NOT NULL,
                updated_epoch_s REAL NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_signals_natural
                ON signals(symbol, signal_date, strategy_code, side);
            CREATE INDEX IF NOT EXISTS idx_signals_date_status ON signals(signal_date, status);

            CREATE TABLE IF NOT EXISTS positions(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                signal_id INTEGER,
                symbol TEXT NOT NULL,
                strategy_code TEXT NOT NULL DEFAULT '',
                entry_date TEXT NOT NULL,
                entry_price REAL NOT NULL,
                quantity INTEGER NOT NULL,
                stop_loss REAL,
                target_price REAL,
                status TEXT NOT NULL,
                current_price REAL,
                unrealized_pnl REAL,
                unrealized_pnl_pct REAL,
                r_multiple REAL,
                exit_date TEXT,
                exit_price REAL,
                exit_reason TEXT,
                pnl REAL,
                pnl_pct REAL,
                simulated INTEGER NOT NULL DEFAULT 0,
                created_epoch_s REAL NOT NULL,
                FOREIGN KEY(signal_id) REFERENCES signals(id)
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_positions_signal
                ON positions(signal_id) WHERE signal_id IS NOT NULL;
            CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status);
            CREATE INDEX IF NOT EXISTS idx_positions_strategy ON positions(strategy_code, status);

            CREATE TABLE IF NOT EXISTS allocation_snapshots(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_date TEXT NOT NULL,
                total_capital REAL NOT NULL,
                deployed_capital REAL NOT NULL,
                free_cash REAL NOT NULL,
                expected_r_multiple REAL NOT NULL,
                created_epoch_s REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_allocation_snapshots_date ON allocation_snapshots(run_date);

            CREATE TABLE IF NOT EXISTS allocation_positions(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                snapshot_id INTEGER NOT NULL,
                ordinal INTEGER NOT NULL,
                signal_id INTEGER,
                symbol TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                entry_price REAL NOT NULL,
                capital_used REAL NOT NULL,
                risk_amount REAL NOT NULL,
                expected_r REAL NOT NULL,
                allocation_pct REAL NOT NULL,
                FOREIGN KEY(snapshot_id) REFERENCES allocation_snapshots(id)
            );

            CREATE TABLE IF NOT EXISTS run_leases(
                kind TEXT NOT NULL,
                run_date TEXT NOT NULL,
                owner TEXT NOT NULL,
                expires_epoch_s REAL NOT NULL,
                PRIMARY KEY(kind, run_date)
            );

            CREATE TABLE IF NOT EXISTS errors(
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts_epoch_s REAL NOT NULL,
                where_text TEXT NOT NULL,
                message TEXT NOT NULL
            );
            """
        )
        cur = self._conn.execute("SELECT COUNT(*) FROM schema_version")
        if int(cur.fetchone()[0]) == 0:
            self._conn.execute("INSERT INTO schema_version(version) VALUES(1)")


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _row_to_signal(row: sqlite3.Row) -> PendingSignal:
    return PendingSignal(
        id=int(row["id"]),
        symbol=row["symbol"],
        signal_date=date.fromisoformat(row["signal_date"]),
        side=Side(row["side"]),
        entry_price=float(row["entry_price"]),
        strategy_code=row["strategy_code"],
        stop_loss=_opt_float(row["stop_loss"]),
        target_price=_opt_float(row["target_price"]),
        quantity=int(row["quantity"]),
        confidence_score=_opt_float(row["confidence_score"]),
        status=SignalStatus(row["status"]),
        rank_score=_opt_float(row["rank_score"]),
        r_multiple=_opt_float(row["r_multiple"]),
    )


def _row_to_position(row: sqlite3.Row) -> Position:
    return Position(
        id=int(row["id"]),
        symbol=row["symbol"],
        entry_date=date.fromisoformat(row["entry_date"]),
        entry_price=float(row["entry_price"]),
        quantity=int(row["quantity"]),
        strategy_code=row["strategy_code"],
        signal_id=row["signal_id"],
        stop_loss=_opt_float(row["stop_loss"]),
        target_price=_opt_float(row["target_price"]),
        status=PositionStatus(row["status"]),
        current_price=_opt_float(row["current_price"]),
        unrealized_pnl=_opt_float(row["unrealized_pnl"]),
        unrealized_pnl_pct=_opt_float(row["unrealized_pnl_pct"]),
        r_multiple=_opt_float(row["r_multiple"]),
        exit_date=date.fromisoformat(row["exit_date"]) if row["exit_date"] else None,
        exit_price=_opt_float(row["exit_price"]),
        exit_reason=ExitReason(row["exit_reason"]) if row["exit_reason"] else None,
        pnl=_opt_float(row["pnl"]),
        pnl_pct=_opt_float(row["pnl_pct"]),
    )
