"""
SQLite persistence for positions and the trade ledger.

PositionManager writes through to a PositionStore when one is given and
reloads from it on startup. Without a store everything stays in memory.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from trade_engine.models import ExecutionResult, Position, TradeRecord

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


class PositionStore:
    """SQLite storage for positions and trades."""

    def __init__(self, db_path: Union[str, Path] = MEMORY):
        self.db_path = str(db_path)
        # An in-memory database only lives as long as its connection
        self._shared_conn: Optional[sqlite3.Connection] = None
        if self.db_path == MEMORY:
            self._shared_conn = sqlite3.connect(MEMORY, check_same_thread=False)
            self._shared_conn.row_factory = sqlite3.Row
        else:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    token_mint TEXT NOT NULL,
                    token_symbol TEXT,
                    quantity REAL NOT NULL,
                    entry_value_native REAL NOT NULL,
                    realized_pnl_native REAL DEFAULT 0,
                    targets_hit_json TEXT,
                    opened_at TEXT,
                    updated_at TEXT,
                    closed_at TEXT,
                    is_open INTEGER DEFAULT 1
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    agent_id TEXT NOT NULL,
                    position_id TEXT NOT NULL,
                    token_mint TEXT NOT NULL,
                    side TEXT NOT NULL,
                    signature TEXT,
                    native_amount REAL,
                    token_amount REAL,
                    total_fees REAL,
                    realized_pnl_native REAL,
                    executed_at TEXT,
                    result_json TEXT NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_agent ON positions(agent_id, token_mint)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_open ON positions(is_open)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_agent ON trades(agent_id)")

            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get database connection."""
        if self._shared_conn is not None:
            yield self._shared_conn
            return
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def close(self):
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def save_position(self, position: Position) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO positions (
                    id, agent_id, token_mint, token_symbol, quantity,
                    entry_value_native, realized_pnl_native, targets_hit_json,
                    opened_at, updated_at, closed_at, is_open
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                position.id,
                position.agent_id,
                position.token_mint,
                position.token_symbol,
                position.quantity,
                position.entry_value_native,
                position.realized_pnl_native,
                json.dumps(list(position.targets_hit)),
                position.opened_at.isoformat(),
                position.updated_at.isoformat(),
                position.closed_at.isoformat() if position.closed_at else None,
                1 if position.is_open else 0,
            ))
            conn.commit()

    def load_positions(self) -> List[Position]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM positions ORDER BY opened_at").fetchall()
        return [self._row_to_position(row) for row in rows]

    def _row_to_position(self, row: sqlite3.Row) -> Position:
        return Position(
            id=row["id"],
            agent_id=row["agent_id"],
            token_mint=row["token_mint"],
            token_symbol=row["token_symbol"] or "",
            quantity=row["quantity"],
            entry_value_native=row["entry_value_native"],
            realized_pnl_native=row["realized_pnl_native"] or 0.0,
            targets_hit=json.loads(row["targets_hit_json"] or "[]"),
            opened_at=datetime.fromisoformat(row["opened_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            closed_at=datetime.fromisoformat(row["closed_at"]) if row["closed_at"] else None,
        )

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    def save_trade(self, record: TradeRecord) -> None:
        result = record.result
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO trades (
                    agent_id, position_id, token_mint, side, signature,
                    native_amount, token_amount, total_fees,
                    realized_pnl_native, executed_at, result_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.agent_id,
                record.position_id,
                result.token_mint,
                result.side.value,
                result.signature,
                result.native_amount,
                result.token_amount,
                result.total_fees,
                record.realized_pnl_native,
                result.executed_at.isoformat(),
                json.dumps(result.to_dict()),
            ))
            conn.commit()

    def load_trades(self) -> List[TradeRecord]:
        """All trades in insertion order."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM trades ORDER BY id").fetchall()
        return [
            TradeRecord(
                agent_id=row["agent_id"],
                result=ExecutionResult.from_dict(json.loads(row["result_json"])),
                position_id=row["position_id"],
                realized_pnl_native=row["realized_pnl_native"],
            )
            for row in rows
        ]
