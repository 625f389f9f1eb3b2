# Copyright 2025 Vijaykumar Singh <singhvjd@gmail.com>
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Thread stores (checkpointers) for conversation persistence.

A checkpoint is keyed by thread id and holds the serialized conversation
state plus the name of the node that should run next. The engine writes one
checkpoint at every stage boundary, so a paused or failed conversation can be
resumed at exactly the node it stopped in.

Implementations:
    - MemoryCheckpointer: In-process storage for development and tests
    - SQLiteCheckpointer: File-based SQLite storage

Example:
    from switchboard.framework.checkpointer import SQLiteCheckpointer

    checkpointer = SQLiteCheckpointer("~/.switchboard/checkpoints.db")
    outcome = await app.invoke({"messages": [...]}, thread_id=tid, checkpointer=checkpointer)

    latest = await checkpointer.load(tid)
    print(latest.pending_node, latest.status)
"""

from __future__ import annotations

import asyncio
import builtins
import copy
import json
import logging
import os
import sqlite3
import threading
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, AsyncIterator, Optional, Protocol

if TYPE_CHECKING:
    from switchboard.config.settings import Settings

logger = logging.getLogger(__name__)


class ThreadStatus(str, Enum):
    """Lifecycle of a persisted conversation thread."""

    RUNNING = "running"
    INTERRUPTED = "interrupted"
    FAILED = "failed"
    COMPLETED = "completed"


@dataclass
class ThreadCheckpoint:
    """Persisted snapshot of one conversation thread.

    Attributes:
        thread_id: Conversation identifier
        pending_node: Node to run next on resume ("__end__" once completed)
        state: Serialized ConversationState
        status: Thread lifecycle status at this boundary
        step: Number of stages executed on this thread so far
        checkpoint_id: Unique checkpoint identifier
        timestamp: When the checkpoint was created
        metadata: Additional metadata (interrupt reason, error summary)
    """

    thread_id: str
    pending_node: str
    state: dict[str, Any]
    status: ThreadStatus = ThreadStatus.RUNNING
    step: int = 0
    checkpoint_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize checkpoint to dictionary."""
        return {
            "checkpoint_id": self.checkpoint_id,
            "thread_id": self.thread_id,
            "pending_node": self.pending_node,
            "status": self.status.value,
            "step": self.step,
            "state": self.state,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ThreadCheckpoint":
        """Deserialize checkpoint from dictionary."""
        return cls(
            checkpoint_id=data["checkpoint_id"],
            thread_id=data["thread_id"],
            pending_node=data["pending_node"],
            status=ThreadStatus(data.get("status", ThreadStatus.RUNNING.value)),
            step=data.get("step", 0),
            state=data["state"],
            timestamp=data["timestamp"],
            metadata=data.get("metadata", {}),
        )


class CheckpointerProtocol(Protocol):
    """Protocol for thread checkpoint persistence."""

    async def save(self, checkpoint: ThreadCheckpoint) -> None:
        """Save a checkpoint."""
        ...

    async def load(self, thread_id: str) -> Optional[ThreadCheckpoint]:
        """Load latest checkpoint for thread."""
        ...

    async def list(self, thread_id: str) -> builtins.list[ThreadCheckpoint]:
        """List all checkpoints for thread, oldest first."""
        ...


class ThreadLockRegistry:
    """Per-thread-id asyncio locks.

    Locks are created on first use and dropped once nothing holds or awaits
    them, so idle threads cost nothing.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, thread_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(thread_id, asyncio.Lock())
        self._users[thread_id] = self._users.get(thread_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[thread_id] -= 1
            if self._users[thread_id] == 0:
                del self._users[thread_id]
                del self._locks[thread_id]

    def __len__(self) -> int:
        return len(self._locks)


class MemoryCheckpointer:
    """In-memory checkpoint storage.

    Writes to one thread id are serialized by a per-thread lock; different
    thread ids never contend. Checkpoints are deep-copied on the way in and
    out so callers cannot alias stored state.
    """

    def __init__(self) -> None:
        self._checkpoints: dict[str, list[ThreadCheckpoint]] = {}
        self._locks = ThreadLockRegistry()

    async def save(self, checkpoint: ThreadCheckpoint) -> None:
        async with self._locks.hold(checkpoint.thread_id):
            self._checkpoints.setdefault(checkpoint.thread_id, []).append(
                copy.deepcopy(checkpoint)
            )

    async def load(self, thread_id: str) -> Optional[ThreadCheckpoint]:
        async with self._locks.hold(thread_id):
            checkpoints = self._checkpoints.get(thread_id, [])
            return copy.deepcopy(checkpoints[-1]) if checkpoints else None

    async def list(self, thread_id: str) -> builtins.list[ThreadCheckpoint]:
        async with self._locks.hold(thread_id):
            return copy.deepcopy(self._checkpoints.get(thread_id, []))

    async def delete_thread(self, thread_id: str) -> int:
        async with self._locks.hold(thread_id):
            return len(self._checkpoints.pop(thread_id, []))

    def thread_ids(self) -> builtins.list[str]:
        return list(self._checkpoints)


class SQLiteCheckpointer:
    """SQLite-based checkpointer for thread state persistence.

    A single connection is shared behind a lock and queries run in the
    default executor, so the event loop never blocks on disk I/O and writes
    to the same thread id are applied in order.

    Attributes:
        db_path: Path to SQLite database file
        table_name: Name of the checkpoints table
    """

    def __init__(
        self,
        db_path: str = "~/.switchboard/checkpoints.db",
        table_name: str = "thread_checkpoints",
    ):
        """Initialize SQLite checkpointer.

        Args:
            db_path: Path to database file (created if missing), or ":memory:"
            table_name: Name for checkpoints table
        """
        self.db_path = db_path if db_path == ":memory:" else Path(os.path.expanduser(db_path))
        self.table_name = table_name
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._init_schema(self._conn)

        return self._conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table_name} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                checkpoint_id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                pending_node TEXT NOT NULL,
                status TEXT NOT NULL,
                step INTEGER NOT NULL,
                state TEXT NOT NULL,
                timestamp REAL NOT NULL,
                metadata TEXT
            )
        """)
        conn.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{self.table_name}_thread_seq
            ON {self.table_name}(thread_id, seq DESC)
        """)
        conn.commit()
        logger.debug(f"Initialized checkpoint schema: {self.db_path}")

    async def _run(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def save(self, checkpoint: ThreadCheckpoint) -> None:
        await self._run(self._save_sync, checkpoint)

    def _save_sync(self, checkpoint: ThreadCheckpoint) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute(
                f"""
                INSERT INTO {self.table_name}
                (checkpoint_id, thread_id, pending_node, status, step, state, timestamp, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    checkpoint.checkpoint_id,
                    checkpoint.thread_id,
                    checkpoint.pending_node,
                    checkpoint.status.value,
                    checkpoint.step,
                    json.dumps(checkpoint.state),
                    checkpoint.timestamp,
                    json.dumps(checkpoint.metadata),
                ),
            )
            conn.commit()
        logger.debug(
            f"Saved checkpoint {checkpoint.checkpoint_id} "
            f"(thread: {checkpoint.thread_id}, pending: {checkpoint.pending_node})"
        )

    async def load(self, thread_id: str) -> Optional[ThreadCheckpoint]:
        return await self._run(self._load_sync, thread_id)

    def _load_sync(self, thread_id: str) -> Optional[ThreadCheckpoint]:
        with self._lock:
            row = (
                self._get_connection()
                .execute(
                    f"""
                SELECT * FROM {self.table_name}
                WHERE thread_id = ?
                ORDER BY seq DESC
                LIMIT 1
            """,
                    (thread_id,),
                )
                .fetchone()
            )
        return self._row_to_checkpoint(row) if row is not None else None

    async def list(self, thread_id: str) -> builtins.list[ThreadCheckpoint]:
        return await self._run(self._list_sync, thread_id)

    def _list_sync(self, thread_id: str) -> builtins.list[ThreadCheckpoint]:
        with self._lock:
            rows = (
                self._get_connection()
                .execute(
                    f"SELECT * FROM {self.table_name} WHERE thread_id = ? ORDER BY seq ASC",
                    (thread_id,),
                )
                .fetchall()
            )
        return [self._row_to_checkpoint(row) for row in rows]

    async def delete_thread(self, thread_id: str) -> int:
        return await self._run(self._delete_thread_sync, thread_id)

    def _delete_thread_sync(self, thread_id: str) -> int:
        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute(
                f"DELETE FROM {self.table_name} WHERE thread_id = ?",
                (thread_id,),
            )
            conn.commit()
            return cursor.rowcount

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> ThreadCheckpoint:
        return ThreadCheckpoint(
            checkpoint_id=row["checkpoint_id"],
            thread_id=row["thread_id"],
            pending_node=row["pending_node"],
            status=ThreadStatus(row["status"]),
            step=row["step"],
            state=json.loads(row["state"]),
            timestamp=row["timestamp"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    def close(self) -> None:
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


def create_checkpointer(settings: "Settings") -> CheckpointerProtocol:
    """Build the thread store selected by settings."""
    if settings.checkpoint_backend == "sqlite":
        logger.info(f"Using SQLite thread store at {settings.checkpoint_db_path}")
        return SQLiteCheckpointer(settings.checkpoint_db_path)
    return MemoryCheckpointer()


__all__ = [
    "ThreadStatus",
    "ThreadCheckpoint",
    "CheckpointerProtocol",
    "ThreadLockRegistry",
    "MemoryCheckpointer",
    "SQLiteCheckpointer",
    "create_checkpointer",
]
