"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from backend.domain.models import (
    ActivityAction,
    ActivityRecord,
    AssignedSlot,
    CarryOverRecord,
    ChainLink,
    Member,
    PreferredBlock,
    Request,
    RequestStatus,
    RequestType,
    RoomState,
    SlotStatus,
    TimeSlotRef,
)
from backend.utils.config import Settings, get_settings
from backend.utils.logger import get_logger


logger = get_logger(__name__)


class RepositoryError(Exception):
    """Base failure for persistence operations."""


class ConcurrentModificationError(RepositoryError):
    """Raised when a room or user changed since it was read."""


def _slot_ref_to_dict(ref: TimeSlotRef) -> dict[str, str]:
    return {
        "date": ref.date.isoformat(),
        "start_time": ref.start_time,
        "end_time": ref.end_time,
    }


def _slot_ref_from_dict(raw: dict[str, str]) -> TimeSlotRef:
    return TimeSlotRef(
        date=date.fromisoformat(raw["date"]),
        start_time=raw["start_time"],
        end_time=raw["end_time"],
    )


def serialize_chain(chain: Optional[ChainLink]) -> Optional[str]:
    if chain is None:
        return None
    return json.dumps(
        {
            "original_requester": chain.original_requester,
            "original_request_id": chain.original_request_id,
            "intermediate_user": chain.intermediate_user,
            "intermediate_slot": _slot_ref_to_dict(chain.intermediate_slot),
            "chain_user": chain.chain_user,
            "fresh_slot": _slot_ref_to_dict(chain.fresh_slot),
            "candidate_users": list(chain.candidate_users),
            "rejected_users": list(chain.rejected_users),
            "hop": chain.hop,
        }
    )


def deserialize_chain(raw: Optional[str]) -> Optional[ChainLink]:
    if not raw:
        return None
    payload = json.loads(raw)
    return ChainLink(
        original_requester=payload["original_requester"],
        original_request_id=payload["original_request_id"],
        intermediate_user=payload["intermediate_user"],
        intermediate_slot=_slot_ref_from_dict(payload["intermediate_slot"]),
        chain_user=payload["chain_user"],
        fresh_slot=_slot_ref_from_dict(payload["fresh_slot"]),
        candidate_users=tuple(payload.get("candidate_users", [])),
        rejected_users=tuple(payload.get("rejected_users", [])),
        hop=int(payload.get("hop", 1)),
    )


class DataRepository:
    """Encapsulates SQLite access so coordination logic stays storage-agnostic."""

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS Users (
                        id TEXT PRIMARY KEY,
                        display_name TEXT NOT NULL DEFAULT '',
                        location TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                    );

                    CREATE TABLE IF NOT EXISTS PreferredBlocks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        user_id TEXT NOT NULL,
                        day_of_week INTEGER CHECK (day_of_week BETWEEN 1 AND 7),
                        specific_date TEXT,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        priority INTEGER NOT NULL DEFAULT 2,
                        FOREIGN KEY (user_id) REFERENCES Users(id)
                    );

                    CREATE TABLE IF NOT EXISTS Rooms (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        owner_id TEXT NOT NULL,
                        min_minutes_per_week INTEGER NOT NULL,
                        schedule_run_count INTEGER NOT NULL DEFAULT 0,
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        FOREIGN KEY (owner_id) REFERENCES Users(id)
                    );

                    CREATE TABLE IF NOT EXISTS RoomMembers (
                        room_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        priority INTEGER NOT NULL DEFAULT 2,
                        carry_over_hours REAL NOT NULL DEFAULT 0,
                        joined_at TEXT NOT NULL,
                        PRIMARY KEY (room_id, user_id),
                        FOREIGN KEY (room_id) REFERENCES Rooms(id),
                        FOREIGN KEY (user_id) REFERENCES Users(id)
                    );

                    CREATE TABLE IF NOT EXISTS CarryOverHistory (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        run_number INTEGER NOT NULL,
                        week_start TEXT NOT NULL,
                        needed_hours REAL NOT NULL,
                        recorded_at TEXT NOT NULL,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );

                    CREATE TABLE IF NOT EXISTS AssignedSlots (
                        id TEXT PRIMARY KEY,
                        room_id TEXT NOT NULL,
                        user_id TEXT NOT NULL,
                        date TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        subject TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'confirmed',
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );

                    CREATE TABLE IF NOT EXISTS Requests (
                        id TEXT PRIMARY KEY,
                        room_id TEXT NOT NULL,
                        requester TEXT NOT NULL,
                        target_user TEXT,
                        type TEXT NOT NULL,
                        date TEXT NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        requester_slot_ids TEXT NOT NULL DEFAULT '[]',
                        status TEXT NOT NULL DEFAULT 'pending',
                        message TEXT NOT NULL DEFAULT '',
                        response_message TEXT NOT NULL DEFAULT '',
                        chain_data TEXT,
                        parent_request_id TEXT,
                        created_at TEXT NOT NULL,
                        responded_at TEXT,
                        FOREIGN KEY (room_id) REFERENCES Rooms(id)
                    );

                    CREATE TABLE IF NOT EXISTS ActivityLogs (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        room_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        action TEXT NOT NULL,
                        details TEXT NOT NULL DEFAULT '',
                        metadata TEXT NOT NULL DEFAULT '{}',
                        created_at TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_slots_room_date
                    ON AssignedSlots(room_id, date, start_time);

                    CREATE INDEX IF NOT EXISTS idx_requests_room_status
                    ON Requests(room_id, status);

                    CREATE INDEX IF NOT EXISTS idx_blocks_user
                    ON PreferredBlocks(user_id);

                    CREATE INDEX IF NOT EXISTS idx_activity_room_created
                    ON ActivityLogs(room_id, created_at);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    # --- users & preference store -------------------------------------------------

    def create_user(
        self,
        user_id: str,
        display_name: str = "",
        location: Optional[str] = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO Users (id, display_name, location)
                VALUES (?, ?, ?);
                """,
                (user_id, display_name, location),
            )
            conn.commit()

    def user_exists(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT 1 FROM Users WHERE id = ?;", (user_id,)).fetchone()
            return row is not None

    def get_preferred_blocks(self, user_id: str) -> list[PreferredBlock]:
        with self._connect() as conn:
            return self._read_blocks(conn, user_id)

    def replace_preferred_blocks(
        self,
        user_id: str,
        blocks: Iterable[PreferredBlock],
    ) -> None:
        """Replace a user's blocks wholesale and bump the user version."""
        block_list = list(blocks)
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE Users SET version = version + 1 WHERE id = ?;",
                (user_id,),
            )
            if cursor.rowcount == 0:
                raise RepositoryError(f"Unknown user_id={user_id}")
            self._write_blocks(conn, user_id, block_list)
            conn.commit()
        logger.info(
            "Preferred blocks replaced | user_id=%s | blocks=%s",
            user_id,
            len(block_list),
        )

    def _read_blocks(self, conn: sqlite3.Connection, user_id: str) -> list[PreferredBlock]:
        rows = conn.execute(
            """
            SELECT day_of_week, specific_date, start_time, end_time, priority
            FROM PreferredBlocks
            WHERE user_id = ?
            ORDER BY id ASC;
            """,
            (user_id,),
        ).fetchall()
        return [
            PreferredBlock(
                start_time=str(row["start_time"]),
                end_time=str(row["end_time"]),
                day_of_week=int(row["day_of_week"]) if row["day_of_week"] is not None else None,
                specific_date=(
                    date.fromisoformat(row["specific_date"]) if row["specific_date"] else None
                ),
                priority=int(row["priority"]),
            )
            for row in rows
        ]

    def _write_blocks(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        blocks: list[PreferredBlock],
    ) -> None:
        conn.execute("DELETE FROM PreferredBlocks WHERE user_id = ?;", (user_id,))
        conn.executemany(
            """
            INSERT INTO PreferredBlocks (
                user_id, day_of_week, specific_date, start_time, end_time, priority
            )
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    user_id,
                    block.day_of_week,
                    block.specific_date.isoformat() if block.specific_date else None,
                    block.start_time,
                    block.end_time,
                    block.priority,
                )
                for block in blocks
            ],
        )

    # --- rooms ----------------------------------------------------------------------

    def create_room(
        self,
        room_id: str,
        name: str,
        owner_id: str,
        min_minutes_per_week: int,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO Rooms (id, name, owner_id, min_minutes_per_week)
                VALUES (?, ?, ?, ?);
                """,
                (room_id, name, owner_id, min_minutes_per_week),
            )
            conn.commit()
        logger.info("Room created | room_id=%s | owner_id=%s", room_id, owner_id)

    def add_member(self, room_id: str, user_id: str, priority: int = 2) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO RoomMembers (room_id, user_id, priority, joined_at)
                VALUES (?, ?, ?, ?);
                """,
                (room_id, user_id, priority, datetime.now().isoformat()),
            )
            conn.execute(
                "UPDATE Rooms SET version = version + 1 WHERE id = ?;",
                (room_id,),
            )
            conn.commit()

    def load_room_state(self, room_id: str) -> Optional[RoomState]:
        """Read the whole room aggregate together with its version token."""
        with self._connect() as conn:
            room_row = conn.execute(
                """
                SELECT id, name, owner_id, min_minutes_per_week, schedule_run_count, version
                FROM Rooms
                WHERE id = ?;
                """,
                (room_id,),
            ).fetchone()
            if room_row is None:
                return None

            owner = self._read_member(conn, room_id, str(room_row["owner_id"]), None)
            member_rows = conn.execute(
                """
                SELECT user_id, priority, carry_over_hours, joined_at
                FROM RoomMembers
                WHERE room_id = ?
                ORDER BY joined_at ASC, user_id ASC;
                """,
                (room_id,),
            ).fetchall()
            members: dict[str, Member] = {}
            for row in member_rows:
                user_id = str(row["user_id"])
                if user_id == owner.user_id:
                    continue
                members[user_id] = self._read_member(conn, room_id, user_id, row)

            slots = self._read_slots(conn, room_id)
            requests = self._read_requests(conn, room_id)

        return RoomState(
            room_id=str(room_row["id"]),
            name=str(room_row["name"]),
            owner=owner,
            members=members,
            assigned_slots=slots,
            requests=requests,
            min_minutes_per_week=int(room_row["min_minutes_per_week"]),
            schedule_run_count=int(room_row["schedule_run_count"]),
            version=int(room_row["version"]),
        )

    def _read_member(
        self,
        conn: sqlite3.Connection,
        room_id: str,
        user_id: str,
        membership: Optional[sqlite3.Row],
    ) -> Member:
        user_row = conn.execute(
            "SELECT id, display_name, location, version FROM Users WHERE id = ?;",
            (user_id,),
        ).fetchone()
        if user_row is None:
            raise RepositoryError(f"Unknown user_id={user_id}")
        history_rows = conn.execute(
            """
            SELECT run_number, week_start, needed_hours, recorded_at
            FROM CarryOverHistory
            WHERE room_id = ? AND user_id = ?
            ORDER BY run_number ASC, id ASC;
            """,
            (room_id, user_id),
        ).fetchall()
        member = Member(
            user_id=user_id,
            preferred_blocks=self._read_blocks(conn, user_id),
            display_name=str(user_row["display_name"]),
            location=user_row["location"],
            version=int(user_row["version"]),
            carry_over_history=[
                CarryOverRecord(
                    run_number=int(row["run_number"]),
                    week_start=date.fromisoformat(row["week_start"]),
                    needed_hours=float(row["needed_hours"]),
                    recorded_at=datetime.fromisoformat(row["recorded_at"]),
                )
                for row in history_rows
            ],
        )
        if membership is not None:
            member.priority = int(membership["priority"])
            member.carry_over_hours = float(membership["carry_over_hours"])
            member.joined_at = datetime.fromisoformat(membership["joined_at"])
        return member

    def save_room_state(self, state: RoomState) -> int:
        """Write the aggregate atomically; fail if anyone else wrote first.

        Returns the new room version.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE Rooms
                SET version = version + 1, schedule_run_count = ?
                WHERE id = ? AND version = ?;
                """,
                (state.schedule_run_count, state.room_id, state.version),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise ConcurrentModificationError(
                    f"Room {state.room_id} changed since version {state.version}"
                )

            for user_id in sorted(state.dirty_users):
                member = state.member(user_id)
                if member is None:
                    continue
                cursor = conn.execute(
                    """
                    UPDATE Users SET version = version + 1
                    WHERE id = ? AND version = ?;
                    """,
                    (user_id, member.version),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    raise ConcurrentModificationError(
                        f"User {user_id} preferences changed since version {member.version}"
                    )
                self._write_blocks(conn, user_id, member.preferred_blocks)

            conn.execute("DELETE FROM AssignedSlots WHERE room_id = ?;", (state.room_id,))
            self._insert_slots(conn, state.room_id, state.assigned_slots)

            for request in state.requests:
                self._upsert_request(conn, request)

            conn.execute("DELETE FROM CarryOverHistory WHERE room_id = ?;", (state.room_id,))
            for member in state.members.values():
                conn.execute(
                    """
                    UPDATE RoomMembers
                    SET priority = ?, carry_over_hours = ?
                    WHERE room_id = ? AND user_id = ?;
                    """,
                    (member.priority, member.carry_over_hours, state.room_id, member.user_id),
                )
                conn.executemany(
                    """
                    INSERT INTO CarryOverHistory (
                        room_id, user_id, run_number, week_start, needed_hours, recorded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?);
                    """,
                    [
                        (
                            state.room_id,
                            member.user_id,
                            record.run_number,
                            record.week_start.isoformat(),
                            record.needed_hours,
                            record.recorded_at.isoformat(),
                        )
                        for record in member.carry_over_history
                    ],
                )
            conn.commit()

        state.version += 1
        for user_id in state.dirty_users:
            member = state.member(user_id)
            if member is not None:
                member.version += 1
        state.dirty_users.clear()
        logger.debug(
            "Room state saved | room_id=%s | version=%s | slots=%s | requests=%s",
            state.room_id,
            state.version,
            len(state.assigned_slots),
            len(state.requests),
        )
        return state.version

    # --- assigned slots ---------------------------------------------------------

    def _read_slots(
        self,
        conn: sqlite3.Connection,
        room_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[AssignedSlot]:
        query = """
            SELECT id, user_id, date, start_time, end_time, subject, status
            FROM AssignedSlots
            WHERE room_id = ?
        """
        params: list[Any] = [room_id]
        if start_date is not None:
            query += " AND date >= ?"
            params.append(start_date.isoformat())
        if end_date is not None:
            query += " AND date < ?"
            params.append(end_date.isoformat())
        query += " ORDER BY date ASC, start_time ASC, user_id ASC;"
        return [
            AssignedSlot(
                slot_id=str(row["id"]),
                user_id=str(row["user_id"]),
                date=date.fromisoformat(row["date"]),
                start_time=str(row["start_time"]),
                end_time=str(row["end_time"]),
                subject=str(row["subject"]),
                status=SlotStatus(row["status"]),
            )
            for row in conn.execute(query, params).fetchall()
        ]

    def _insert_slots(
        self,
        conn: sqlite3.Connection,
        room_id: str,
        slots: Iterable[AssignedSlot],
    ) -> None:
        conn.executemany(
            """
            INSERT INTO AssignedSlots (
                id, room_id, user_id, date, start_time, end_time, subject, status
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                (
                    slot.slot_id,
                    room_id,
                    slot.user_id,
                    slot.date.isoformat(),
                    slot.start_time,
                    slot.end_time,
                    slot.subject,
                    slot.status.value,
                )
                for slot in slots
            ],
        )

    def get_assigned_slots(
        self,
        room_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> list[AssignedSlot]:
        with self._connect() as conn:
            return self._read_slots(conn, room_id, start_date, end_date)

    def save_assigned_slots(
        self,
        room_id: str,
        slots: Iterable[AssignedSlot],
        start_date: date,
        end_date: date,
    ) -> None:
        """Idempotently replace every slot of the room inside ``[start, end)``."""
        slot_list = [slot for slot in slots if start_date <= slot.date < end_date]
        with self._connect() as conn:
            conn.execute(
                """
                DELETE FROM AssignedSlots
                WHERE room_id = ? AND date >= ? AND date < ?;
                """,
                (room_id, start_date.isoformat(), end_date.isoformat()),
            )
            self._insert_slots(conn, room_id, slot_list)
            conn.execute(
                "UPDATE Rooms SET version = version + 1 WHERE id = ?;",
                (room_id,),
            )
            conn.commit()

    def count_assigned_slots(self, room_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM AssignedSlots WHERE room_id = ?;",
                (room_id,),
            ).fetchone()
            return int(row["count"])

    # --- requests -------------------------------------------------------------------

    def _read_requests(self, conn: sqlite3.Connection, room_id: str) -> list[Request]:
        rows = conn.execute(
            """
            SELECT *
            FROM Requests
            WHERE room_id = ?
            ORDER BY created_at ASC, id ASC;
            """,
            (room_id,),
        ).fetchall()
        return [
            Request(
                request_id=str(row["id"]),
                room_id=str(row["room_id"]),
                requester=str(row["requester"]),
                target_user=row["target_user"],
                kind=RequestType(row["type"]),
                time_slot=TimeSlotRef(
                    date=date.fromisoformat(row["date"]),
                    start_time=str(row["start_time"]),
                    end_time=str(row["end_time"]),
                ),
                requester_slot_ids=json.loads(row["requester_slot_ids"]),
                status=RequestStatus(row["status"]),
                message=str(row["message"]),
                response_message=str(row["response_message"]),
                chain_data=deserialize_chain(row["chain_data"]),
                parent_request_id=row["parent_request_id"],
                created_at=datetime.fromisoformat(row["created_at"]),
                responded_at=(
                    datetime.fromisoformat(row["responded_at"]) if row["responded_at"] else None
                ),
            )
            for row in rows
        ]

    def _upsert_request(self, conn: sqlite3.Connection, request: Request) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO Requests (
                id, room_id, requester, target_user, type, date, start_time, end_time,
                requester_slot_ids, status, message, response_message, chain_data,
                parent_request_id, created_at, responded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                request.request_id,
                request.room_id,
                request.requester,
                request.target_user,
                request.kind.value,
                request.time_slot.date.isoformat(),
                request.time_slot.start_time,
                request.time_slot.end_time,
                json.dumps(request.requester_slot_ids),
                request.status.value,
                request.message,
                request.response_message,
                serialize_chain(request.chain_data),
                request.parent_request_id,
                request.created_at.isoformat(),
                request.responded_at.isoformat() if request.responded_at else None,
            ),
        )

    def append_request(self, request: Request) -> None:
        """Persist a single request without rewriting the rest of the room."""
        with self._connect() as conn:
            self._upsert_request(conn, request)
            conn.commit()
        logger.info(
            "Request appended | room_id=%s | request_id=%s", request.room_id, request.request_id
        )

    def update_request(self, request: Request) -> bool:
        """Rewrite a stored request. Returns False when it was never appended."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM Requests WHERE id = ? AND room_id = ?;",
                (request.request_id, request.room_id),
            ).fetchone()
            if row is None:
                return False
            self._upsert_request(conn, request)
            conn.commit()
        return True

    def get_request_status(self, request_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT status FROM Requests WHERE id = ?;",
                (request_id,),
            ).fetchone()
            if row is None:
                return None
            return str(row["status"])

    # --- activity sink --------------------------------------------------------------

    def log_activity(self, record: ActivityRecord) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO ActivityLogs (room_id, actor_id, action, details, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    record.room_id,
                    record.actor_id,
                    record.action.value,
                    record.details,
                    json.dumps(record.metadata, default=str),
                    record.created_at.isoformat(),
                ),
            )
            conn.commit()

    def list_activities(self, room_id: str, limit: int = 50) -> list[ActivityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT room_id, actor_id, action, details, metadata, created_at
                FROM ActivityLogs
                WHERE room_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?;
                """,
                (room_id, limit),
            ).fetchall()
            return [
                ActivityRecord(
                    room_id=str(row["room_id"]),
                    actor_id=str(row["actor_id"]),
                    action=ActivityAction(row["action"]),
                    details=str(row["details"]),
                    metadata=json.loads(row["metadata"]),
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in rows
            ]

    def count_activities(self, room_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM ActivityLogs WHERE room_id = ?;",
                (room_id,),
            ).fetchone()
            return int(row["count"])
