import asyncio
import logging
import os
from typing import Any, Callable, Dict, Optional

from config import settings
from services.realtime import (
    ErrorCallback, RealtimeChannel, Unsubscribe, WhereClause, is_document_path,
)

logger = logging.getLogger(__name__)


class FirestoreService(RealtimeChannel):
    """
    Firestore-backed realtime channel.

    Blocking client calls run in the default thread pool so the event loop is
    never held. Watch callbacks arrive on Firestore's listener thread and are
    handed back to the loop that opened the subscription.
    """

    def __init__(self):
        if settings.firestore_emulator_host:
            os.environ["FIRESTORE_EMULATOR_HOST"] = settings.firestore_emulator_host
        # Lazy import so the service can be instantiated before GCP creds exist
        from google.cloud import firestore
        self._firestore = firestore
        self.db = firestore.Client(project=settings.google_cloud_project or None)

    def _run(self, fn):
        """Run a sync Firestore call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(None, fn)

    # ── Sentinels ─────────────────────────────────────────────────────────────

    def increment(self, amount: int = 1) -> Any:
        return self._firestore.Increment(amount)

    def server_timestamp(self) -> Any:
        return self._firestore.SERVER_TIMESTAMP

    # ── Subscriptions ─────────────────────────────────────────────────────────

    def subscribe(
        self,
        path: str,
        on_change: Callable[[Any], None],
        *,
        where: Optional[WhereClause] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Unsubscribe:
        try:
            loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        def deliver(payload: Any) -> None:
            try:
                on_change(payload)
            except Exception as exc:
                if on_error is not None:
                    on_error(exc)
                else:
                    logger.exception("Subscriber for %s raised", path)

        def dispatch(payload: Any) -> None:
            if loop is not None and not loop.is_closed():
                loop.call_soon_threadsafe(deliver, payload)
            else:
                deliver(payload)

        if is_document_path(path):
            ref = self.db.document(path)

            def on_snapshot(doc_snapshots, changes, read_time):
                snap = doc_snapshots[0] if doc_snapshots else None
                dispatch(snap.to_dict() if snap is not None and snap.exists else None)
        else:
            ref = self.db.collection(path)
            if where is not None:
                from google.cloud.firestore_v1.base_query import FieldFilter
                ref = ref.where(filter=FieldFilter(*where))

            def on_snapshot(col_snapshot, changes, read_time):
                dispatch({d.id: d.to_dict() for d in col_snapshot})

        watch = ref.on_snapshot(on_snapshot)
        closed = False

        def unsubscribe() -> None:
            nonlocal closed
            if closed:
                return
            closed = True
            watch.unsubscribe()

        return unsubscribe

    # ── Reads / writes ────────────────────────────────────────────────────────

    async def write(self, path: str, fields: Dict[str, Any]) -> None:
        await self._run(lambda: self.db.document(path).set(fields, merge=True))

    async def write_if_unset(self, path: str, fields: Dict[str, Any], guard_field: str) -> bool:
        ref = self.db.document(path)

        @self._firestore.transactional
        def _write_txn(transaction) -> bool:
            snap = ref.get(transaction=transaction)
            data = (snap.to_dict() or {}) if snap.exists else {}
            if data.get(guard_field) is not None:
                return False
            transaction.set(ref, fields, merge=True)
            return True

        return await self._run(lambda: _write_txn(self.db.transaction()))

    async def add(self, collection_path: str, fields: Dict[str, Any]) -> str:
        _, ref = await self._run(lambda: self.db.collection(collection_path).add(fields))
        return ref.id

    async def get(self, path: str) -> Optional[Dict[str, Any]]:
        doc = await self._run(lambda: self.db.document(path).get())
        if doc.exists:
            return doc.to_dict()
        return None

    async def list(self, collection_path: str) -> Dict[str, Dict[str, Any]]:
        docs = await self._run(lambda: list(self.db.collection(collection_path).stream()))
        return {d.id: d.to_dict() for d in docs}

    async def delete(self, path: str) -> None:
        await self._run(lambda: self.db.document(path).delete())


_firestore_service: Optional["FirestoreService"] = None


def get_firestore_service() -> "FirestoreService":
    """Lazy singleton — initialised on first call, not at import time.
    This prevents credential errors from crashing the app before FastAPI boots.
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService()
    return _firestore_service
