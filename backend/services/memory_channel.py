"""
In-process realtime channel.

Backs local play (CHANNEL_BACKEND=memory) and tests. Every committed write
is fanned out synchronously to matching subscribers, so several PlayerSession
objects sharing one MemoryChannel behave like devices sharing one Firestore
project, minus network latency.
"""
import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from models.game import utcnow
from services.realtime import (
    ErrorCallback, RealtimeChannel, Unsubscribe, WhereClause, is_document_path,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Increment:
    amount: int


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


_SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class _Subscription:
    path: str
    on_change: Callable[[Any], None]
    where: Optional[WhereClause]
    on_error: Optional[ErrorCallback]
    is_document: bool
    active: bool = True


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0]


class MemoryChannel(RealtimeChannel):

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._docs: Dict[str, Dict[str, Any]] = {}
        self._subs: List[_Subscription] = []
        # (path, resolved fields) for every committed write, oldest first
        self.write_log: List[Tuple[str, Dict[str, Any]]] = []

    # ── Sentinels ─────────────────────────────────────────────────────────────

    def increment(self, amount: int = 1) -> Any:
        return _Increment(amount)

    def server_timestamp(self) -> Any:
        return _SERVER_TIMESTAMP

    def _resolve(self, existing: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        merged = dict(existing)
        for key, value in fields.items():
            if isinstance(value, _Increment):
                current = merged.get(key)
                merged[key] = (current if isinstance(current, (int, float)) else 0) + value.amount
            elif value is _SERVER_TIMESTAMP:
                merged[key] = self._clock()
            elif isinstance(value, dict):
                current = merged.get(key)
                merged[key] = self._resolve(current if isinstance(current, dict) else {}, value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscribe(
        self,
        path: str,
        on_change: Callable[[Any], None],
        *,
        where: Optional[WhereClause] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        sub = _Subscription(
            path=path,
            on_change=on_change,
            where=where,
            on_error=on_error,
            is_document=is_document_path(path),
        )
        self._subs.append(sub)
        self._deliver(sub)

        def unsubscribe() -> None:
            if not sub.active:
                return
            sub.active = False
            self._subs.remove(sub)

        return unsubscribe

    def _collection_view(self, path: str, where: Optional[WhereClause]) -> Dict[str, Dict[str, Any]]:
        prefix = path + "/"
        view = {}
        for doc_path, data in self._docs.items():
            if not doc_path.startswith(prefix) or "/" in doc_path[len(prefix):]:
                continue
            if where is not None:
                field, op, value = where
                if op != "==":
                    raise ValueError(f"Unsupported filter operator: {op}")
                if data.get(field) != value:
                    continue
            view[doc_path[len(prefix):]] = copy.deepcopy(data)
        return view

    def _deliver(self, sub: _Subscription) -> None:
        if sub.is_document:
            data = self._docs.get(sub.path)
            payload = copy.deepcopy(data) if data is not None else None
        else:
            payload = self._collection_view(sub.path, sub.where)
        try:
            sub.on_change(payload)
        except Exception as exc:
            if sub.on_error is not None:
                sub.on_error(exc)
            else:
                logger.exception("Subscriber for %s raised", sub.path)

    def _notify(self, doc_path: str) -> None:
        collection = _parent(doc_path)
        for sub in list(self._subs):
            if not sub.active:
                continue
            if (sub.is_document and sub.path == doc_path) or (
                not sub.is_document and sub.path == collection
            ):
                self._deliver(sub)

    # ── Reads / writes ────────────────────────────────────────────────────────

    def _commit(self, path: str, fields: Dict[str, Any]) -> None:
        resolved = self._resolve(self._docs.get(path, {}), fields)
        self._docs[path] = resolved
        self.write_log.append((path, copy.deepcopy(resolved)))
        self._notify(path)

    async def write(self, path: str, fields: Dict[str, Any]) -> None:
        self._commit(path, fields)

    async def write_if_unset(self, path: str, fields: Dict[str, Any], guard_field: str) -> bool:
        # No await between the check and the commit.
        if self._docs.get(path, {}).get(guard_field) is not None:
            return False
        self._commit(path, fields)
        return True

    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self.write(f"{collection_path}/{doc_id}", fields)
        return doc_id

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        data = self._docs.get(path)
        return copy.deepcopy(data) if data is not None else None

    async def list(self, collection_path: str) -> Dict[str, Dict[str, Any]]:
        return self._collection_view(collection_path, None)

    async def delete(self, path: str) -> None:
        if self._docs.pop(path, None) is not None:
            self._notify(path)
