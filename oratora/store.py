"""Long-lived session history persistence.

The evaluation core only needs create / update / get by id, plus listing a
user's history for analytics. Two backends: an in-process dict (default, used
in tests and local dev) and an HTTP backend speaking a Convex-style
``/api/query`` + ``/api/mutation`` protocol.
"""
from __future__ import annotations

import abc
import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from . import config
from .errors import PersistenceFailure


class SessionStore(abc.ABC):
    @abc.abstractmethod
    async def create_session(self, data: Dict[str, Any]) -> str:
        """Persist a new game session record and return its store id."""

    @abc.abstractmethod
    async def update_session(self, store_id: str, data: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    async def get_session(self, store_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def list_user_sessions(self, user_id: str, game_type: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return the user's session records, oldest first."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    async def create_session(self, data: Dict[str, Any]) -> str:
        store_id = str(uuid.uuid4())
        record = copy.deepcopy(data)
        record["id"] = store_id
        record.setdefault("created_at", _now_iso())
        self._records[store_id] = record
        return store_id

    async def update_session(self, store_id: str, data: Dict[str, Any]) -> None:
        record = self._records.get(store_id)
        if record is None:
            raise PersistenceFailure(f"unknown session record {store_id}")
        record.update(copy.deepcopy(data))
        record["updated_at"] = _now_iso()

    async def get_session(self, store_id: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(store_id)
        return copy.deepcopy(record) if record is not None else None

    async def list_user_sessions(self, user_id: str, game_type: Optional[str] = None) -> List[Dict[str, Any]]:
        out = [
            copy.deepcopy(r)
            for r in self._records.values()
            if r.get("user_id") == user_id and (game_type is None or r.get("game_type") == game_type)
        ]
        out.sort(key=lambda r: str(r.get("created_at") or ""))
        return out


class HttpSessionStore(SessionStore):
    """Session store reached over HTTP.

    Responses use the ``{status, value}`` envelope; ``status == "error"`` or an
    HTTP status >= 400 raises ``PersistenceFailure``.
    """

    def __init__(self, base_url: str, *, secret: str = "", timeout: float = 10.0):
        self._base = base_url.rstrip("/")
        self._secret = secret
        self._timeout = timeout

    async def _call(self, kind: str, path: str, args: Dict[str, Any]) -> Any:
        url = f"{self._base}/api/{kind}"
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["Authorization"] = f"Bearer {self._secret}"
        payload = {"path": path, "args": args, "format": "json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"{path}: {e}") from e
        if resp.status_code >= 400:
            raise PersistenceFailure(f"{path}: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise PersistenceFailure(f"{path}: invalid JSON") from e
        if isinstance(data, dict) and data.get("status") == "error":
            raise PersistenceFailure(f"{path}: {data.get('errorMessage') or 'error'}")
        return data.get("value") if isinstance(data, dict) else None

    async def create_session(self, data: Dict[str, Any]) -> str:
        value = await self._call("mutation", "gameSessions:create", {"session": data})
        if isinstance(value, dict):
            value = value.get("id")
        if not value:
            raise PersistenceFailure("gameSessions:create returned no id")
        return str(value)

    async def update_session(self, store_id: str, data: Dict[str, Any]) -> None:
        await self._call("mutation", "gameSessions:update", {"id": store_id, "patch": data})

    async def get_session(self, store_id: str) -> Optional[Dict[str, Any]]:
        value = await self._call("query", "gameSessions:get", {"id": store_id})
        return value if isinstance(value, dict) else None

    async def list_user_sessions(self, user_id: str, game_type: Optional[str] = None) -> List[Dict[str, Any]]:
        args: Dict[str, Any] = {"userId": user_id}
        if game_type:
            args["gameType"] = game_type
        value = await self._call("query", "gameSessions:listByUser", args)
        return [v for v in value if isinstance(v, dict)] if isinstance(value, list) else []


def get_session_store() -> SessionStore:
    if config.SESSION_STORE_URL:
        return HttpSessionStore(
            config.SESSION_STORE_URL,
            secret=config.SESSION_STORE_SECRET,
            timeout=config.SESSION_STORE_TIMEOUT_SECONDS,
        )
    return MemorySessionStore()
