"""
Database Manager for the sniper engine

Handles all database operations for wallets, strategy settings, positions,
trades and per-user stats.
"""

import json
import sqlite3
import logging
from contextlib import contextmanager
from typing import Optional, List, Dict, Any
from pathlib import Path

from ..exceptions import PositionNotFound, StaleRecordError
from ..utils.helpers import utc_now

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("open", "partial")


class DatabaseManager:
    """
    SQLite database manager for engine persistence.

    Features:
    - Encrypted wallet records (one per user)
    - Strategy settings per user x mode
    - Position tracking with optimistic versioning
    - Append-only trade history
    - Derived per-user stats

    Every operation opens its own connection; read-modify-write paths run
    inside BEGIN IMMEDIATE so concurrent writers serialize on the file lock.
    """

    def __init__(self, db_path: str = "data/apex_sniper.db"):
        """
        Initialize database manager.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        logger.info(f"Database initialized: {db_path}")

    def _init_db(self):
        """Initialize database with schema"""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            logger.error(f"Schema file not found: {schema_path}")
            raise FileNotFoundError(f"Schema file not found: {schema_path}")

        with open(schema_path, 'r') as f:
            schema_sql = f.read()

        with self._connect() as conn:
            conn.executescript(schema_sql)

        logger.info("Database schema created/verified")

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # =========================================================================
    # Wallet Operations
    # =========================================================================

    def save_wallet(self, user_id: str, public_key: str, encrypted_secret: str):
        """Insert or overwrite the user's wallet record"""
        now = utc_now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO wallets (user_id, public_key, encrypted_secret, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    public_key = excluded.public_key,
                    encrypted_secret = excluded.encrypted_secret,
                    updated_at = excluded.updated_at
                """,
                (user_id, public_key, encrypted_secret, now, now)
            )
        logger.info(f"Wallet saved for user {user_id}: {public_key}")

    def get_wallet(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM wallets WHERE user_id = ?", (user_id,)).fetchone()
            return dict(row) if row else None

    # =========================================================================
    # Strategy Settings
    # =========================================================================

    def get_strategy_settings(self, user_id: str, mode: str) -> Optional[Dict[str, Any]]:
        """Stored settings dict for (user, mode), or None if the user never saved any"""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT settings_json FROM strategy_settings WHERE user_id = ? AND mode = ?",
                (user_id, mode)
            ).fetchone()
        return json.loads(row["settings_json"]) if row else None

    def save_strategy_settings(self, user_id: str, mode: str, settings: Dict[str, Any]):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO strategy_settings (user_id, mode, settings_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, mode) DO UPDATE SET
                    settings_json = excluded.settings_json,
                    updated_at = excluded.updated_at
                """,
                (user_id, mode, json.dumps(settings), utc_now())
            )

    # =========================================================================
    # Position Operations
    # =========================================================================

    def create_position(
        self,
        user_id: str,
        token_id: str,
        mode: str,
        entry_price: float,
        entry_cost: float,
        size_bought: float,
        broadcast_id: Optional[str],
        token_symbol: Optional[str] = None,
        trigger_reason: str = "signal",
    ) -> int:
        """
        Record a verified buy: the position row and its buy trade in one transaction.

        Returns:
            Position ID
        """
        now = utc_now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO positions (
                    user_id, token_id, token_symbol, mode,
                    entry_price, entry_cost, size_bought, size_remaining,
                    current_price, entry_broadcast_id, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (user_id, token_id, token_symbol, mode,
                 entry_price, entry_cost, size_bought, size_bought,
                 entry_price, broadcast_id, now, now)
            )
            position_id = cursor.lastrowid
            self._insert_trade(
                conn, position_id, user_id, token_id, "buy",
                size_bought, entry_cost, entry_price, broadcast_id, trigger_reason, now
            )

        logger.info(f"Position saved: {token_id[:20]}... size={size_bought:g} (ID: {position_id})")
        return position_id

    def get_position(self, position_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
            return dict(row) if row else None

    def get_active_positions(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Open and partial positions, for one user or everybody"""
        query = "SELECT * FROM positions WHERE status IN ('open', 'partial')"
        params: tuple = ()
        if user_id is not None:
            query += " AND user_id = ?"
            params = (user_id,)
        query += " ORDER BY created_at ASC, id ASC"
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    def count_active_positions(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM positions WHERE user_id = ? AND status IN ('open', 'partial')",
                (user_id,)
            ).fetchone()
            return row["n"]

    def update_position_price(self, position_id: int, current_price: float, unrealized_pnl_percent: float):
        """Refresh mark-to-market fields; these are not state and do not bump the version"""
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE positions
                SET current_price = ?, unrealized_pnl_percent = ?, updated_at = ?
                WHERE id = ? AND status != 'closed'
                """,
                (current_price, unrealized_pnl_percent, utc_now(), position_id)
            )

    def apply_sell(
        self,
        position_id: int,
        expected_version: int,
        new_size_remaining: float,
        sold_amount: float,
        sol_amount: float,
        unit_price: float,
        broadcast_id: Optional[str],
        trigger_reason: str,
        bracket_index: Optional[int] = None,
        close: bool = False,
    ) -> Dict[str, Any]:
        """
        Persist a verified sell atomically: size, bracket flag, status and trade row.

        Flags only ever go up (MAX) and size_remaining only ever goes down (MIN),
        whatever order concurrent writers land in.

        Raises:
            PositionNotFound: unknown id
            StaleRecordError: row version moved since the caller read it
        """
        now = utc_now()
        new_size_remaining = 0.0 if close else max(0.0, new_size_remaining)
        flags = [1 if bracket_index == i else 0 for i in (1, 2, 3)]

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
            if row is None:
                raise PositionNotFound(position_id=position_id)
            if row["version"] != expected_version:
                raise StaleRecordError(
                    position_id=position_id,
                    expected=expected_version,
                    actual=row["version"],
                )

            remaining = min(row["size_remaining"], new_size_remaining)
            closed = close or remaining <= 0
            conn.execute(
                """
                UPDATE positions SET
                    size_remaining = MIN(size_remaining, ?),
                    bracket_1_hit = MAX(bracket_1_hit, ?),
                    bracket_2_hit = MAX(bracket_2_hit, ?),
                    bracket_3_hit = MAX(bracket_3_hit, ?),
                    status = ?,
                    close_reason = CASE WHEN ? THEN ? ELSE close_reason END,
                    closed_at = CASE WHEN ? THEN ? ELSE closed_at END,
                    version = version + 1,
                    updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (remaining, *flags,
                 "closed" if closed else "partial",
                 closed, trigger_reason,
                 closed, now,
                 now, position_id, expected_version)
            )
            self._insert_trade(
                conn, position_id, row["user_id"], row["token_id"], "sell",
                sold_amount, sol_amount, unit_price, broadcast_id, trigger_reason, now
            )
            updated = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()

        logger.info(
            f"Position {position_id} sell recorded: {trigger_reason} "
            f"remaining={updated['size_remaining']:g} status={updated['status']}"
        )
        return dict(updated)

    def force_close_position(self, position_id: int, reason: str, expected_version: Optional[int] = None) -> Dict[str, Any]:
        """Terminate a position without a sale (tokens stay wherever they are)"""
        now = utc_now()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
            if row is None:
                raise PositionNotFound(position_id=position_id)
            if expected_version is not None and row["version"] != expected_version:
                raise StaleRecordError(
                    position_id=position_id,
                    expected=expected_version,
                    actual=row["version"],
                )
            if row["status"] != "closed":
                conn.execute(
                    """
                    UPDATE positions
                    SET status = 'closed', close_reason = ?, closed_at = ?,
                        version = version + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (reason, now, now, position_id)
                )
            updated = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()

        logger.info(f"Position {position_id} force-closed (Reason: {reason})")
        return dict(updated)

    # =========================================================================
    # Trade Operations
    # =========================================================================

    @staticmethod
    def _insert_trade(conn, position_id, user_id, token_id, side, amount,
                      sol_amount, unit_price, broadcast_id, trigger_reason, created_at) -> int:
        cursor = conn.execute(
            """
            INSERT INTO trades (
                position_id, user_id, token_id, side, amount, sol_amount,
                unit_price, broadcast_id, trigger_reason, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (position_id, user_id, token_id, side, amount, sol_amount,
             unit_price, broadcast_id, trigger_reason, created_at)
        )
        return cursor.lastrowid

    def get_trades(
        self,
        position_id: Optional[int] = None,
        user_id: Optional[str] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """
        Get recent trades, optionally filtered by position or user.
        """
        query = "SELECT * FROM trades WHERE 1=1"
        params: list = []
        if position_id is not None:
            query += " AND position_id = ?"
            params.append(position_id)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            return [dict(row) for row in conn.execute(query, params).fetchall()]

    # =========================================================================
    # Stats Operations
    # =========================================================================

    def get_users_with_positions(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT user_id FROM positions ORDER BY user_id").fetchall()
            return [r["user_id"] for r in rows]

    def recompute_user_stats(self, user_id: str) -> Dict[str, Any]:
        """
        Rebuild the user's derived stats row from positions and trades.

        A closed position is a win when what came back exceeds what went in.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            counts = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN status IN ('open', 'partial') THEN 1 ELSE 0 END) AS open_positions,
                    SUM(CASE WHEN status = 'closed' THEN 1 ELSE 0 END) AS closed_positions
                FROM positions WHERE user_id = ?
                """,
                (user_id,)
            ).fetchone()
            flows = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN side = 'buy' THEN sol_amount END), 0) AS invested,
                    COALESCE(SUM(CASE WHEN side = 'sell' THEN sol_amount END), 0) AS returned
                FROM trades WHERE user_id = ?
                """,
                (user_id,)
            ).fetchone()
            closed = conn.execute(
                """
                SELECT p.id,
                       p.entry_cost AS invested,
                       COALESCE(SUM(CASE WHEN t.side = 'sell' THEN t.sol_amount END), 0) AS returned
                FROM positions p
                LEFT JOIN trades t ON t.position_id = p.id
                WHERE p.user_id = ? AND p.status = 'closed'
                GROUP BY p.id
                """,
                (user_id,)
            ).fetchall()

            realized = sum(r["returned"] - r["invested"] for r in closed)
            wins = sum(1 for r in closed if r["returned"] > r["invested"])
            win_rate = (wins / len(closed) * 100) if closed else 0.0

            stats = {
                "user_id": user_id,
                "open_positions": counts["open_positions"] or 0,
                "closed_positions": counts["closed_positions"] or 0,
                "total_invested_sol": flows["invested"],
                "total_returned_sol": flows["returned"],
                "realized_pnl_sol": realized,
                "win_rate": win_rate,
                "updated_at": utc_now(),
            }
            conn.execute(
                """
                INSERT INTO user_stats (
                    user_id, open_positions, closed_positions, total_invested_sol,
                    total_returned_sol, realized_pnl_sol, win_rate, updated_at
                )
                VALUES (:user_id, :open_positions, :closed_positions, :total_invested_sol,
                        :total_returned_sol, :realized_pnl_sol, :win_rate, :updated_at)
                ON CONFLICT(user_id) DO UPDATE SET
                    open_positions = excluded.open_positions,
                    closed_positions = excluded.closed_positions,
                    total_invested_sol = excluded.total_invested_sol,
                    total_returned_sol = excluded.total_returned_sol,
                    realized_pnl_sol = excluded.realized_pnl_sol,
                    win_rate = excluded.win_rate,
                    updated_at = excluded.updated_at
                """,
                stats
            )
        return stats

    def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM user_stats WHERE user_id = ?", (user_id,)).fetchone()
            return dict(row) if row else None
