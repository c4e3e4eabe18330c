"""
Realtime document channel — the persistence/push collaborator every client talks to.

Layout (Firestore-style paths, even segment count = document):
  games/{game_id}
  games/{game_id}/players/{uid}
  games/{game_id}/locations/{uid}      latest-wins, one per player
  games/{game_id}/pins/{pin_id}
  games/{game_id}/alerts/{alert_id}    append-only, addressed by toUid
  games/{game_id}/events/{event_id}    append-only audit log

Writes are field-level merges; whole-document overwrites are never issued
after creation.
"""
import abc
from typing import Any, Callable, Dict, Optional, Tuple

Unsubscribe = Callable[[], None]
DocumentCallback = Callable[[Optional[Dict[str, Any]]], None]
CollectionCallback = Callable[[Dict[str, Dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]
WhereClause = Tuple[str, str, Any]


def game_path(game_id: str) -> str:
    return f"games/{game_id}"


def players_path(game_id: str) -> str:
    return f"games/{game_id}/players"


def player_path(game_id: str, uid: str) -> str:
    return f"games/{game_id}/players/{uid}"


def locations_path(game_id: str) -> str:
    return f"games/{game_id}/locations"


def location_path(game_id: str, uid: str) -> str:
    return f"games/{game_id}/locations/{uid}"


def pins_path(game_id: str) -> str:
    return f"games/{game_id}/pins"


def pin_path(game_id: str, pin_id: str) -> str:
    return f"games/{game_id}/pins/{pin_id}"


def alerts_path(game_id: str) -> str:
    return f"games/{game_id}/alerts"


def events_path(game_id: str) -> str:
    return f"games/{game_id}/events"


def is_document_path(path: str) -> bool:
    return len([s for s in path.split("/") if s]) % 2 == 0


class RealtimeChannel(abc.ABC):
    """Abstract document store with realtime push."""

    @abc.abstractmethod
    def subscribe(
        self,
        path: str,
        on_change: Callable[[Any], None],
        *,
        where: Optional[WhereClause] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        """
        Push the current value, then every committed change.

        Document paths call back with the document dict (None when absent).
        Collection paths call back with {doc_id: dict}; `where` narrows a
        collection to documents whose field equals a value.
        The returned handle may be called any number of times.
        """

    @abc.abstractmethod
    async def write(self, path: str, fields: Dict[str, Any]) -> None:
        """Deep-merge `fields` into the document, creating it if absent."""

    @abc.abstractmethod
    async def write_if_unset(self, path: str, fields: Dict[str, Any], guard_field: str) -> bool:
        """
        Merge `fields` only while the document's `guard_field` is missing or
        null, checked and committed atomically. Returns False when another
        writer already set it.
        """

    @abc.abstractmethod
    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        """Append a new document with a generated id; returns the id."""

    @abc.abstractmethod
    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        """One-shot document read."""

    @abc.abstractmethod
    async def list(self, collection_path: str) -> Dict[str, Dict[str, Any]]:
        """One-shot collection read."""

    @abc.abstractmethod
    async def delete(self, path: str) -> None:
        """Remove a document. Deleting a missing document is not an error."""

    @abc.abstractmethod
    def increment(self, amount: int = 1) -> Any:
        """Sentinel applying an atomic numeric increment inside a write."""

    @abc.abstractmethod
    def server_timestamp(self) -> Any:
        """Sentinel resolved to the commit time by the store."""


_channel: Optional[RealtimeChannel] = None


def get_channel() -> RealtimeChannel:
    """Process-wide channel selected by CHANNEL_BACKEND ("firestore" or "memory")."""
    global _channel
    if _channel is None:
        from config import settings
        if settings.channel_backend == "memory":
            from services.memory_channel import MemoryChannel
            _channel = MemoryChannel()
        else:
            from services.firestore_service import get_firestore_service
            _channel = get_firestore_service()
    return _channel
