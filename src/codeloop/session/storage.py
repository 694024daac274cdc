"""Session persistence.

Layout of ``YamlSessionStorage``::

    <root>/<session-id>/session.yaml     metadata (modes, cwd, model, title)
    <root>/<session-id>/plan.md          active plan, structured markdown
    <root>/<session-id>/turns/000001.yaml one file per turn

Each write goes to a temp file first and is moved into place with
``os.replace``, so a turn is either fully persisted or absent. Writes are
serialized per session; different sessions never wait on each other.
"""

from __future__ import annotations

import asyncio
import os
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import yaml

from codeloop.config.paths import get_default_storage_root
from codeloop.config.schema import StorageConfig
from codeloop.errors import FatalSessionError, PlanError, SessionNotFoundError, StorageError
from codeloop.logging import get_logger
from codeloop.plan import markdown as plan_markdown
from codeloop.session.model import Session, Turn

log = get_logger("storage")

SESSION_FILE = "session.yaml"
PLAN_FILE = "plan.md"
TURNS_DIR = "turns"


@dataclass
class SessionMetadata:
    """Lightweight session metadata for listing."""

    session_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    cwd: str
    parent_id: str | None = None


@runtime_checkable
class Storage(Protocol):
    async def append_turn(self, session_id: str, turn: Turn) -> None:
        """Persist one finalized turn atomically."""
        ...

    async def save_session_meta(self, session: Session) -> None:
        """Persist everything but the turns (modes, title, plan)."""
        ...

    async def load_session(self, session_id: str) -> Session:
        ...

    async def list_sessions(self) -> list[SessionMetadata]:
        ...

    async def delete_session(self, session_id: str) -> bool:
        ...


class _PerSessionLocks:
    def __init__(self) -> None:
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, session_id: str) -> asyncio.Lock:
        return self._locks[session_id]


def _atomic_write(path: Path, text: str) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        if tmp.exists():
            tmp.unlink()
        raise


def _dump(data: dict[str, Any]) -> str:
    return yaml.safe_dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False)


class YamlSessionStorage:
    """Directory-per-session YAML store."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self._lock = _PerSessionLocks()

    @classmethod
    def from_config(cls, config: StorageConfig) -> YamlSessionStorage:
        """Store under ``config.root``, or the per-user data directory."""
        root = Path(config.root).expanduser() if config.root else get_default_storage_root()
        return cls(root)

    def _session_dir(self, session_id: str) -> Path:
        return self.root / session_id

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def _write_turn(self, session_id: str, turn: Turn) -> Path:
        turns_dir = self._session_dir(session_id) / TURNS_DIR
        turns_dir.mkdir(parents=True, exist_ok=True)
        path = turns_dir / f"{turn.seq:06d}.yaml"
        _atomic_write(path, _dump(turn.to_dict()))
        return path

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        async with self._lock(session_id):
            try:
                path = await asyncio.to_thread(self._write_turn, session_id, turn)
            except (OSError, yaml.YAMLError) as e:
                raise StorageError(session_id, f"turn {turn.seq}: {e}") from e
        log.debug("Saved turn %d of session %s to %s", turn.seq, session_id, path)

    def _write_meta(self, session: Session) -> None:
        session_dir = self._session_dir(session.id)
        session_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(session_dir / SESSION_FILE, _dump(session.meta_dict()))
        plan_path = session_dir / PLAN_FILE
        if session.plan is not None:
            _atomic_write(plan_path, plan_markdown.serialize(session.plan))
        elif plan_path.exists():
            plan_path.unlink()

    async def save_session_meta(self, session: Session) -> None:
        async with self._lock(session.id):
            try:
                await asyncio.to_thread(self._write_meta, session)
            except (OSError, yaml.YAMLError) as e:
                raise StorageError(session.id, f"metadata: {e}") from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def _read(self, session_id: str) -> Session:
        session_dir = self._session_dir(session_id)
        meta_path = session_dir / SESSION_FILE
        if not meta_path.exists():
            raise SessionNotFoundError(session_id)

        try:
            session = Session.from_meta_dict(yaml.safe_load(meta_path.read_text(encoding="utf-8")))
            plan_path = session_dir / PLAN_FILE
            if plan_path.exists():
                session.plan = plan_markdown.parse(plan_path.read_text(encoding="utf-8"))
            turns_dir = session_dir / TURNS_DIR
            if turns_dir.exists():
                for path in sorted(turns_dir.glob("*.yaml")):
                    session.turns.append(Turn.from_dict(yaml.safe_load(path.read_text(encoding="utf-8"))))
        except (yaml.YAMLError, KeyError, TypeError, ValueError, PlanError) as e:
            raise FatalSessionError(f"Session {session_id} is corrupted: {e}") from e
        return session

    async def load_session(self, session_id: str) -> Session:
        async with self._lock(session_id):
            try:
                return await asyncio.to_thread(self._read, session_id)
            except OSError as e:
                raise StorageError(session_id, f"load: {e}") from e

    def _list(self) -> list[SessionMetadata]:
        if not self.root.exists():
            return []
        sessions: list[SessionMetadata] = []
        for meta_path in self.root.glob(f"*/{SESSION_FILE}"):
            try:
                data = yaml.safe_load(meta_path.read_text(encoding="utf-8"))
                sessions.append(
                    SessionMetadata(
                        session_id=data["id"],
                        title=data.get("title") or "Untitled",
                        created_at=datetime.fromisoformat(data["created_at"]),
                        updated_at=datetime.fromisoformat(data["updated_at"]),
                        cwd=data.get("cwd", ""),
                        parent_id=data.get("parent_id"),
                    )
                )
            except (OSError, yaml.YAMLError, KeyError, TypeError, ValueError) as e:
                log.warning("Failed to load session metadata from %s: %s", meta_path, e)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def list_sessions(self) -> list[SessionMetadata]:
        """All sessions, newest first. Unreadable entries are skipped."""
        return await asyncio.to_thread(self._list)

    def _delete(self, session_id: str) -> bool:
        session_dir = self._session_dir(session_id)
        if not session_dir.exists():
            return False
        for path in sorted(session_dir.rglob("*"), reverse=True):
            if path.is_dir():
                path.rmdir()
            else:
                path.unlink()
        session_dir.rmdir()
        return True

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock(session_id):
            deleted = await asyncio.to_thread(self._delete, session_id)
        if deleted:
            log.debug("Deleted session %s", session_id)
        return deleted


class InMemoryStorage:
    """Storage kept in process memory.

    Values are stored serialized, so loading returns independent copies just
    like the file store does. Used for sub-agent sessions and tests.
    """

    def __init__(self) -> None:
        self._meta: dict[str, dict[str, Any]] = {}
        self._plans: dict[str, str] = {}
        self._turns: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self._lock = _PerSessionLocks()

    async def append_turn(self, session_id: str, turn: Turn) -> None:
        async with self._lock(session_id):
            self._turns[session_id].append(turn.to_dict())

    async def save_session_meta(self, session: Session) -> None:
        async with self._lock(session.id):
            self._meta[session.id] = session.meta_dict()
            if session.plan is not None:
                self._plans[session.id] = plan_markdown.serialize(session.plan)
            else:
                self._plans.pop(session.id, None)

    async def load_session(self, session_id: str) -> Session:
        async with self._lock(session_id):
            if session_id not in self._meta:
                raise SessionNotFoundError(session_id)
            session = Session.from_meta_dict(self._meta[session_id])
            if session_id in self._plans:
                session.plan = plan_markdown.parse(self._plans[session_id])
            session.turns = [Turn.from_dict(t) for t in self._turns.get(session_id, [])]
            return session

    async def list_sessions(self) -> list[SessionMetadata]:
        return sorted(
            (
                SessionMetadata(
                    session_id=m["id"],
                    title=m.get("title") or "Untitled",
                    created_at=datetime.fromisoformat(m["created_at"]),
                    updated_at=datetime.fromisoformat(m["updated_at"]),
                    cwd=m["cwd"],
                    parent_id=m.get("parent_id"),
                )
                for m in self._meta.values()
            ),
            key=lambda s: s.updated_at,
            reverse=True,
        )

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock(session_id):
            self._plans.pop(session_id, None)
            self._turns.pop(session_id, None)
            return self._meta.pop(session_id, None) is not None
