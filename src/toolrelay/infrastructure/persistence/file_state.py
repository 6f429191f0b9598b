"""
File-Based State Store

Persists each conversation's AgentState as ``{work_dir}/states/{id}.json``.

- Writes are atomic: temp file in the same directory, then ``os.replace``
- Optimistic concurrency: the stored ``version`` must match the version of
  the snapshot the writer started from
- Locks are ``{id}.lock`` files holding an expiry timestamp, created with
  exclusive mode so separate processes exclude each other
- Ids are checked against CONVERSATION_ID_PATTERN before any path is built
"""

import asyncio
import json
import time
import uuid
from pathlib import Path

import aiofiles
import aiofiles.os
import structlog

from toolrelay.core.domain.errors import StateConflictError
from toolrelay.core.domain.identifiers import validate_conversation_id
from toolrelay.core.domain.models import AgentState
from toolrelay.infrastructure.persistence.locks import LockPolicy, acquire_with_backoff


class FileStateStore:
    """StateStoreProtocol implementation on the local filesystem."""

    def __init__(self, work_dir: str = ".toolrelay", lock_policy: LockPolicy | None = None):
        """
        Args:
            work_dir: Root directory; states live in ``{work_dir}/states``
            lock_policy: TTL and retry settings for conversation locks
        """
        self.state_dir = Path(work_dir) / "states"
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_policy = lock_policy or LockPolicy()
        self._write_locks: dict[str, asyncio.Lock] = {}
        self.logger = structlog.get_logger().bind(component="file_state_store")

    def _state_path(self, conversation_id: str) -> Path:
        validate_conversation_id(conversation_id)
        return self.state_dir / f"{conversation_id}.json"

    def _lock_path(self, conversation_id: str) -> Path:
        validate_conversation_id(conversation_id)
        return self.state_dir / f"{conversation_id}.lock"

    def _get_write_lock(self, conversation_id: str) -> asyncio.Lock:
        if conversation_id not in self._write_locks:
            self._write_locks[conversation_id] = asyncio.Lock()
        return self._write_locks[conversation_id]

    async def _read_raw(self, conversation_id: str) -> dict | None:
        path = self._state_path(conversation_id)
        if not path.exists():
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return json.loads(await f.read())

    async def read(self, conversation_id: str) -> AgentState | None:
        data = await self._read_raw(conversation_id)
        if data is None:
            return None
        self.logger.debug("state_loaded", conversation_id=conversation_id, version=data["version"])
        return AgentState.from_dict(data)

    async def write(
        self,
        conversation_id: str,
        new_state: AgentState,
        previous_state: AgentState | None,
    ) -> AgentState:
        """
        Persist ``new_state`` if the store still holds ``previous_state``.

        Raises:
            StateConflictError: If another writer got there first
        """
        async with self._get_write_lock(conversation_id):
            stored = await self._read_raw(conversation_id)
            actual = stored["version"] if stored is not None else None
            expected = previous_state.version if previous_state is not None else None
            if actual != expected:
                self.logger.warning(
                    "state_write_conflict",
                    conversation_id=conversation_id,
                    expected=expected,
                    actual=actual,
                )
                raise StateConflictError(conversation_id, expected, actual)

            data = new_state.to_dict()
            data["version"] = (actual or 0) + 1
            await self._atomic_write_json(self._state_path(conversation_id), data)

        self.logger.info("state_saved", conversation_id=conversation_id, version=data["version"])
        return AgentState.from_dict(data)

    async def _atomic_write_json(self, path: Path, data: dict) -> None:
        temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(json.dumps(data, ensure_ascii=False, default=str, indent=2))
            await aiofiles.os.replace(temp_path, path)
        except Exception:
            if temp_path.exists():
                await aiofiles.os.remove(temp_path)
            raise

    async def lock(self, conversation_id: str) -> bool:
        lock_path = self._lock_path(conversation_id)

        async def attempt() -> bool:
            expires_at = time.time() + self.lock_policy.ttl_ms / 1000
            try:
                async with aiofiles.open(lock_path, "x", encoding="utf-8") as f:
                    await f.write(str(expires_at))
                return True
            except FileExistsError:
                pass

            try:
                async with aiofiles.open(lock_path, "r", encoding="utf-8") as f:
                    held_until = float((await f.read()).strip() or 0)
            except FileNotFoundError:
                return False
            if held_until <= time.time():
                self.logger.warning("expired_lock_removed", conversation_id=conversation_id)
                await self._remove_lock(lock_path)
            return False

        acquired = await acquire_with_backoff(attempt, self.lock_policy)
        if not acquired:
            self.logger.warning("state_lock_busy", conversation_id=conversation_id)
        return acquired

    async def unlock(self, conversation_id: str) -> None:
        await self._remove_lock(self._lock_path(conversation_id))

    async def _remove_lock(self, lock_path: Path) -> None:
        try:
            await aiofiles.os.remove(lock_path)
        except FileNotFoundError:
            pass

    async def list_conversations(self) -> list[str]:
        return sorted(path.stem for path in self.state_dir.glob("*.json"))
