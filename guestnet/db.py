"""SQLite store for guest access records and the access log."""

import asyncio
import sqlite3
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite
from pydantic import BaseModel

from .errors import PersistenceError


class GuestStatus(str, Enum):
    """Lifecycle status of a guest access record."""
    ACTIVE = "active"
    EXPIRED = "expired"
    DISABLED = "disabled"


class SyncStatus(str, Enum):
    """Whether the router is known to match the record."""
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class AccessAction(str, Enum):
    """Actions written to the access log."""
    CREATED = "created"
    DISABLED = "disabled"
    EXPIRED = "expired"
    REMOVED = "removed"
    SYNC_FAILED = "sync_failed"
    SYNC_SUCCESS = "sync_success"


class GuestAccessRecord(BaseModel):
    """Credentials issued to one guest stay."""
    id: Optional[int] = None
    room_number: str
    guest_name: str
    username: str
    password: str
    profile_name: str
    checkin_date: date
    checkout_date: date
    status: GuestStatus = GuestStatus.ACTIVE
    sync_status: SyncStatus = SyncStatus.PENDING
    last_sync: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self.one_active_per_room = True

    async def connect(self, one_active_per_room: bool = True) -> None:
        """Connect to the database and create tables if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self.one_active_per_room = one_active_per_room
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        async with self._lock:
            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS guest_access (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    room_number TEXT NOT NULL,
                    guest_name TEXT NOT NULL,
                    username TEXT NOT NULL,
                    password TEXT NOT NULL,
                    profile_name TEXT NOT NULL,
                    checkin_date DATE NOT NULL,
                    checkout_date DATE NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    sync_status TEXT NOT NULL DEFAULT 'pending',
                    last_sync TIMESTAMP,
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS uq_active_username
                ON guest_access(username) WHERE status = 'active'
            """)

            if self.one_active_per_room:
                await self._connection.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_active_room
                    ON guest_access(room_number) WHERE status = 'active'
                """)
            else:
                await self._connection.execute("DROP INDEX IF EXISTS uq_active_room")

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_room
                ON guest_access(room_number)
            """)

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_status
                ON guest_access(status)
            """)

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_dates
                ON guest_access(checkin_date, checkout_date)
            """)

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_sync
                ON guest_access(sync_status)
            """)

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS access_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    username TEXT NOT NULL,
                    room_number TEXT NOT NULL,
                    action TEXT NOT NULL,
                    response_time REAL DEFAULT 0,
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_log_username
                ON access_logs(username)
            """)

            await self._connection.commit()

    async def create_guest(self, record: GuestAccessRecord) -> int:
        """Insert a guest record.

        Raises:
            PersistenceError: if a uniqueness guard rejects the row.
        """
        now = datetime.now().isoformat()

        async with self._lock:
            try:
                cursor = await self._connection.execute("""
                    INSERT INTO guest_access
                    (room_number, guest_name, username, password, profile_name,
                     checkin_date, checkout_date, status, sync_status, last_sync,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    record.room_number,
                    record.guest_name,
                    record.username,
                    record.password,
                    record.profile_name,
                    record.checkin_date.isoformat(),
                    record.checkout_date.isoformat(),
                    record.status.value,
                    record.sync_status.value,
                    record.last_sync.isoformat() if record.last_sync else None,
                    now,
                    now,
                ))
            except sqlite3.IntegrityError as e:
                await self._connection.rollback()
                raise PersistenceError(f"Guest record rejected: {e}", constraint=_constraint_name(e))

            await self._connection.commit()
            return cursor.lastrowid

    async def update_guest(self, guest_id: int, **kwargs) -> None:
        """Update columns of a guest record."""
        if not kwargs:
            return

        for key, value in list(kwargs.items()):
            if isinstance(value, Enum):
                kwargs[key] = value.value
            elif isinstance(value, (datetime, date)):
                kwargs[key] = value.isoformat()
        kwargs.setdefault("updated_at", datetime.now().isoformat())

        set_clause = ", ".join(f"{k} = ?" for k in kwargs.keys())
        values = list(kwargs.values()) + [guest_id]

        async with self._lock:
            try:
                await self._connection.execute(
                    f"UPDATE guest_access SET {set_clause} WHERE id = ?",
                    values
                )
            except sqlite3.IntegrityError as e:
                await self._connection.rollback()
                raise PersistenceError(f"Guest update rejected: {e}", constraint=_constraint_name(e))
            await self._connection.commit()

    async def get_guest(self, guest_id: int) -> Optional[GuestAccessRecord]:
        """Get a guest record by ID."""
        rows = await self._fetch("SELECT * FROM guest_access WHERE id = ?", (guest_id,))
        return self._row_to_record(rows[0]) if rows else None

    async def get_active_by_room(self, room_number: str) -> Optional[GuestAccessRecord]:
        """Get the oldest active record for a room."""
        rows = await self._fetch(
            "SELECT * FROM guest_access WHERE room_number = ? AND status = 'active' ORDER BY id LIMIT 1",
            (room_number,)
        )
        return self._row_to_record(rows[0]) if rows else None

    async def username_in_use(self, username: str) -> bool:
        """Check whether an active record already holds ``username``."""
        rows = await self._fetch(
            "SELECT 1 FROM guest_access WHERE username = ? AND status = 'active' LIMIT 1",
            (username,)
        )
        return bool(rows)

    async def list_active(self) -> List[GuestAccessRecord]:
        """Active records, failed syncs first, then by room."""
        rows = await self._fetch("""
            SELECT * FROM guest_access WHERE status = 'active'
            ORDER BY CASE sync_status WHEN 'failed' THEN 1 WHEN 'pending' THEN 2 ELSE 3 END,
                     room_number
        """)
        return [self._row_to_record(row) for row in rows]

    async def list_expired(self, today: date) -> List[GuestAccessRecord]:
        """Active records whose checkout date is before ``today``."""
        rows = await self._fetch(
            "SELECT * FROM guest_access WHERE status = 'active' AND checkout_date < ? ORDER BY checkout_date, id",
            (today.isoformat(),)
        )
        return [self._row_to_record(row) for row in rows]

    async def inactive_usernames(self) -> List[str]:
        """Usernames the store issued that are no longer active anywhere."""
        rows = await self._fetch("""
            SELECT DISTINCT username FROM guest_access
            WHERE status != 'active'
              AND username NOT IN (SELECT username FROM guest_access WHERE status = 'active')
        """)
        return [row["username"] for row in rows]

    async def list_unsynced_retired(self) -> List[GuestAccessRecord]:
        """Retired records whose router user could not be removed."""
        rows = await self._fetch("""
            SELECT * FROM guest_access
            WHERE status != 'active' AND sync_status = 'failed'
              AND username NOT IN (SELECT username FROM guest_access WHERE status = 'active')
            ORDER BY updated_at, id
        """)
        return [self._row_to_record(row) for row in rows]

    async def log_action(
        self,
        username: str,
        room_number: str,
        action: AccessAction,
        response_time: float = 0,
        error_message: Optional[str] = None,
    ) -> None:
        """Append an entry to the access log."""
        async with self._lock:
            await self._connection.execute("""
                INSERT INTO access_logs (username, room_number, action, response_time, error_message, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (username, room_number, action.value, response_time, error_message, datetime.now().isoformat()))
            await self._connection.commit()

    async def get_access_log(self, username: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Recent access log entries, newest first."""
        if username:
            rows = await self._fetch(
                "SELECT * FROM access_logs WHERE username = ? ORDER BY id DESC LIMIT ?",
                (username, limit)
            )
        else:
            rows = await self._fetch("SELECT * FROM access_logs ORDER BY id DESC LIMIT ?", (limit,))
        return [dict(row) for row in rows]

    async def get_stats(self, today: date) -> Dict[str, int]:
        """Aggregate counts over all records."""
        rows = await self._fetch("""
            SELECT
                COUNT(*) AS total_guests,
                COALESCE(SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END), 0) AS active_guests,
                COALESCE(SUM(CASE WHEN DATE(created_at) = ? THEN 1 ELSE 0 END), 0) AS today_guests,
                COALESCE(SUM(CASE WHEN status = 'active' AND sync_status = 'synced' THEN 1 ELSE 0 END), 0) AS synced_guests,
                COALESCE(SUM(CASE WHEN status = 'active' AND sync_status = 'failed' THEN 1 ELSE 0 END), 0) AS sync_failed
            FROM guest_access
        """, (today.isoformat(),))
        return dict(rows[0])

    async def _fetch(self, sql: str, params: tuple = ()) -> List[aiosqlite.Row]:
        async with self._lock:
            cursor = await self._connection.execute(sql, params)
            return await cursor.fetchall()

    def _row_to_record(self, row: aiosqlite.Row) -> GuestAccessRecord:
        """Convert a database row to a GuestAccessRecord."""
        return GuestAccessRecord(
            id=row["id"],
            room_number=row["room_number"],
            guest_name=row["guest_name"],
            username=row["username"],
            password=row["password"],
            profile_name=row["profile_name"],
            checkin_date=date.fromisoformat(row["checkin_date"]),
            checkout_date=date.fromisoformat(row["checkout_date"]),
            status=GuestStatus(row["status"]),
            sync_status=SyncStatus(row["sync_status"]),
            last_sync=datetime.fromisoformat(row["last_sync"]) if row["last_sync"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


def _constraint_name(error: sqlite3.IntegrityError) -> Optional[str]:
    """Best-effort name of the column set behind an integrity error."""
    # SQLite reports e.g. "UNIQUE constraint failed: guest_access.username"
    message = str(error)
    if "constraint failed:" in message:
        return message.split("constraint failed:", 1)[1].strip()
    return None
