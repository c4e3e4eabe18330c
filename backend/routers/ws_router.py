"""
WebSocket Hub — live per-player views for connected devices.

URL: /ws/{game_id}?uid={uid}

Connection flow:
  1. Open (or reuse) the player's session → validate game + player exist
  2. Accept and register the socket
  3. Send a private "view" message with the current per-player view
  4. Push a fresh "view" after every store change and every 1-second tick
  5. Message loop (_handle_message dispatcher)
  6. On disconnect: stop pushing; the session stays open for HTTP callers
  7. When the registry evicts the session of a finished game, close with 1000

Client → server message types:
  ping      — keep-alive heartbeat → responds with "pong"
  location  — GPS fix {lat, lng, accuracyM}
  capture   — oni captures {targetUid?}
  rescue    — runner rescues {targetUid?}
  clear     — runner clears objective {pinId?}

Every view a player receives is already filtered by the proximity rules, so
hidden players never leave the server for that socket.
"""
import asyncio
import json
import logging
from typing import Any, Dict, Tuple

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from agents.errors import GameActionError, GameNotFoundError
from agents.session import TICK_INTERVAL_SEC, PlayerSession, SessionRegistry, get_registry

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectionManager:
    """
    Live sockets, one per (game_id, uid). A reconnect from the same player
    replaces the older socket; the older handler's cleanup then leaves the
    newer one in place.
    Safe for asyncio single-threaded event loop (no extra locking needed).
    """

    def __init__(self):
        self._sockets: Dict[Tuple[str, str], WebSocket] = {}

    # ── Lifecycle ──────────────────────────────────────────────────────────────

    async def connect(self, session: PlayerSession, ws: WebSocket) -> None:
        await ws.accept()
        key = (session.game_id, session.uid)
        if key in self._sockets:
            logger.info(f"[{session.game_id}] {session.uid} reconnected, replacing older socket")
        self._sockets[key] = ws

    def disconnect(self, session: PlayerSession, ws: WebSocket) -> None:
        key = (session.game_id, session.uid)
        if self._sockets.get(key) is ws:
            del self._sockets[key]

    def is_connected(self, session: PlayerSession, ws: WebSocket) -> bool:
        return self._sockets.get((session.game_id, session.uid)) is ws

    # ── Sending ────────────────────────────────────────────────────────────────

    async def send(self, session: PlayerSession, message: Dict) -> None:
        """Send a private message to the player's current socket."""
        ws = self._sockets.get((session.game_id, session.uid))
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception as exc:
            logger.warning(f"[{session.game_id}] send to {session.uid} failed: {exc}")
            self.disconnect(session, ws)

    async def send_view(self, session: PlayerSession) -> None:
        await self.send(session, {
            "type": "view",
            "view": session.view().model_dump(by_alias=True, mode="json"),
        })


manager = ConnectionManager()


# ── Message handling ──────────────────────────────────────────────────────────

async def _handle_message(session: PlayerSession, msg_type: str, data: Dict[str, Any]) -> None:
    if msg_type == "ping":
        await manager.send(session, {"type": "pong"})
        return

    try:
        if msg_type == "location":
            written = await session.on_gps_fix(
                float(data["lat"]),
                float(data["lng"]),
                float(data.get("accuracyM", 0.0)),
            )
            await manager.send(session, {
                "type": "location_ack",
                "written": written,
                "outOfBounds": session.publisher.out_of_bounds,
            })
        elif msg_type == "capture":
            victim = await session.capture(data.get("targetUid"))
            await manager.send(session, {
                "type": "captured", "player": victim.to_document(mode="json"),
            })
        elif msg_type == "rescue":
            rescued = await session.rescue(data.get("targetUid"))
            await manager.send(session, {
                "type": "rescued", "player": rescued.to_document(mode="json"),
            })
        elif msg_type == "clear":
            pin = await session.clear_objective(data.get("pinId"))
            await manager.send(session, {
                "type": "cleared", "pin": pin.to_document(mode="json"),
            })
        else:
            await manager.send(session, {
                "type": "error",
                "message": f"Unknown message type: {msg_type}",
                "code": "UNKNOWN_TYPE",
            })
    except GameActionError as exc:
        await manager.send(session, {
            "type": "error",
            "message": str(exc),
            "code": "ACTION_FAILED" if exc.status_code >= 500 else "ACTION_REJECTED",
        })
    except (KeyError, TypeError, ValueError):
        await manager.send(session, {
            "type": "error",
            "message": f"Malformed {msg_type} payload",
            "code": "PARSE_ERROR",
        })


async def _push_views(session: PlayerSession, ws: WebSocket, changed: asyncio.Event) -> None:
    """Send a view after each store change, and at least once per tick."""
    while manager.is_connected(session, ws) and session.is_open:
        try:
            await asyncio.wait_for(changed.wait(), timeout=TICK_INTERVAL_SEC)
        except asyncio.TimeoutError:
            pass
        changed.clear()
        await session.tick()
        await manager.send_view(session)

    if manager.is_connected(session, ws):
        # session was evicted after its game finished
        await ws.close(code=1000, reason="Session closed")


# ── Endpoint ──────────────────────────────────────────────────────────────────

@router.websocket("/ws/{game_id}")
async def websocket_endpoint(
    ws: WebSocket,
    game_id: str,
    uid: str = Query(..., description="Player uid from join response"),
    registry: SessionRegistry = Depends(get_registry),
):
    # ── Validate game and player ───────────────────────────────────────────────
    try:
        session = await registry.require(game_id, uid)
    except GameNotFoundError:
        await ws.close(code=4404, reason="Game not found")
        return
    if session.snapshot.player(uid) is None:
        await ws.close(code=4403, reason="Player not found in this game")
        return

    # ── Accept and register ────────────────────────────────────────────────────
    await manager.connect(session, ws)
    logger.debug(f"[{game_id}] {uid} connected")
    changed = asyncio.Event()
    remove_listener = session.add_listener(lambda _snapshot: changed.set())
    await manager.send_view(session)
    pusher = asyncio.create_task(_push_views(session, ws, changed))

    # ── Message loop ───────────────────────────────────────────────────────────
    try:
        while True:
            raw = await ws.receive_text()
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                await manager.send(session, {
                    "type": "error",
                    "message": "Invalid JSON",
                    "code": "PARSE_ERROR",
                })
                continue

            msg_type = data.get("type", "")
            # Frontend sends { type, data: { ... } }; unwrap inner payload for handlers
            inner_data = data.get("data") if isinstance(data.get("data"), dict) else {}
            await _handle_message(session, msg_type, inner_data)

    except WebSocketDisconnect:
        pass
    finally:
        manager.disconnect(session, ws)
        remove_listener()
        pusher.cancel()
        logger.info(f"[{game_id}] {uid} disconnected")
