"""Best-effort room snapshots in DuckDB.

Each room has two logical keys, ``messages`` and ``settings``, stored as JSON
text with a schema version. Snapshots written by another schema version are
ignored on load.
"""
import json
import logging
from datetime import datetime
from typing import Any, List, Optional

import duckdb
from pydantic import TypeAdapter, ValidationError

from .schemas import AdminSettings, BaseMessage, Message

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

MESSAGES_KEY = "messages"
SETTINGS_KEY = "settings"

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS room_snapshots (
    room_id        VARCHAR NOT NULL,
    key            VARCHAR NOT NULL,
    schema_version INTEGER NOT NULL,
    payload        VARCHAR NOT NULL,
    updated_at     TIMESTAMP NOT NULL,
    PRIMARY KEY (room_id, key)
)
"""

_message_list_adapter: TypeAdapter = TypeAdapter(List[Message])


class SnapshotStore:
    """Singleton service for room snapshots.

    All writes are synchronous (DuckDB is embedded and fast for this volume
    of data). Failures are logged and swallowed: a room keeps running on its
    in-memory state when the snapshot file is unavailable.
    """

    _instance: Optional["SnapshotStore"] = None
    _default_db_path: str = "chatroom_snapshots.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or self._default_db_path
        self._conn = duckdb.connect(self._db_path)
        self._conn.execute(_CREATE_TABLE)
        logger.info("[SnapshotStore] Initialized with db=%s", self._db_path)

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "SnapshotStore":
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None

    def close(self) -> None:
        self._conn.close()

    # -----------------------------------------------------------------------
    # Raw key access
    # -----------------------------------------------------------------------

    def save(self, room_id: str, key: str, data: Any) -> bool:
        try:
            self._conn.execute(
                """
                INSERT OR REPLACE INTO room_snapshots
                  (room_id, key, schema_version, payload, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [room_id, key, SCHEMA_VERSION, json.dumps(data), datetime.utcnow()],
            )
            return True
        except duckdb.Error as exc:
            logger.error("[SnapshotStore] Failed to save %s/%s: %s", room_id, key, exc)
            return False

    def load(self, room_id: str, key: str) -> Optional[Any]:
        try:
            row = self._conn.execute(
                "SELECT schema_version, payload FROM room_snapshots WHERE room_id = ? AND key = ?",
                [room_id, key],
            ).fetchone()
        except duckdb.Error as exc:
            logger.error("[SnapshotStore] Failed to load %s/%s: %s", room_id, key, exc)
            return None
        if row is None:
            return None

        version, payload = row
        if version != SCHEMA_VERSION:
            logger.warning(
                "[SnapshotStore] Ignoring %s/%s snapshot with schema version %s (expected %s)",
                room_id, key, version, SCHEMA_VERSION,
            )
            return None
        return json.loads(payload)

    def delete_room(self, room_id: str) -> int:
        """Delete every snapshot key for a room. Returns rows deleted."""
        count = self._conn.execute(
            "SELECT COUNT(*) FROM room_snapshots WHERE room_id = ?", [room_id]
        ).fetchone()[0]
        self._conn.execute("DELETE FROM room_snapshots WHERE room_id = ?", [room_id])
        return count

    # -----------------------------------------------------------------------
    # Typed helpers
    # -----------------------------------------------------------------------

    def save_messages(self, room_id: str, messages: List[BaseMessage]) -> bool:
        return self.save(room_id, MESSAGES_KEY, [m.model_dump(mode="json") for m in messages])

    def load_messages(self, room_id: str) -> List[BaseMessage]:
        data = self.load(room_id, MESSAGES_KEY)
        if data is None:
            return []
        try:
            return _message_list_adapter.validate_python(data)
        except ValidationError as exc:
            logger.warning("[SnapshotStore] Discarding unreadable message snapshot for %s: %s", room_id, exc)
            return []

    def save_settings(self, room_id: str, settings: AdminSettings) -> bool:
        return self.save(room_id, SETTINGS_KEY, settings.model_dump())

    def load_settings(self, room_id: str) -> Optional[AdminSettings]:
        data = self.load(room_id, SETTINGS_KEY)
        if data is None:
            return None
        try:
            return AdminSettings.model_validate(data)
        except ValidationError as exc:
            logger.warning("[SnapshotStore] Discarding unreadable settings snapshot for %s: %s", room_id, exc)
            return None
