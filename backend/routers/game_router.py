"""
Game HTTP endpoints.

Routes:
  POST /api/games                               — Create game + register owner as first player (oni)
  POST /api/games/{game_id}/join                — Player joins (or rejoins) the game
  POST /api/games/{game_id}/leave               — Player leaves; player + location removed
  GET  /api/games/{game_id}/view?uid=           — Per-player view (visibility, targets, timers)
  POST /api/games/{game_id}/location?uid=       — GPS fix (throttled before it is written)
  POST /api/games/{game_id}/capture             — Oni captures the current (or named) runner
  POST /api/games/{game_id}/rescue              — Runner rescues the current (or named) downed runner
  POST /api/games/{game_id}/clear               — Runner clears the current (or named) objective pin
  POST /api/games/{game_id}/countdown           — Owner starts the countdown
  POST /api/games/{game_id}/end                 — Owner ends the game
  POST /api/games/{game_id}/owner               — Owner transfers ownership
  POST /api/games/{game_id}/role                — Owner changes a player's role
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from agents.errors import GameActionError, GameNotFoundError
from agents.session import SessionRegistry, get_registry
from models.game import (
    ActorRequest, CountdownRequest, CreateGameRequest, CreateGameResponse,
    JoinGameRequest, JoinGameResponse, LocationFixRequest, OwnerTransferRequest,
    RoleChangeRequest,
)
from services.realtime import game_path

logger = logging.getLogger(__name__)

router = APIRouter(tags=["games"])


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, GameActionError):
        return HTTPException(status_code=exc.status_code, detail=str(exc))
    return HTTPException(status_code=404, detail=str(exc) or "Game not found")


# ── Setup & membership ────────────────────────────────────────────────────────

@router.post("/games", response_model=CreateGameResponse, status_code=201)
async def create_game(body: CreateGameRequest, registry: SessionRegistry = Depends(get_registry)):
    registry.evict_finished()
    tunables = body.model_dump(exclude={"owner_uid", "nickname", "avatar_url"}, exclude_none=True)
    game_id = await registry.lobby.create_game(body.owner_uid, **tunables)
    await registry.lobby.join_game(game_id, body.owner_uid, body.nickname, avatar_url=body.avatar_url)
    await registry.open(game_id, body.owner_uid)
    return CreateGameResponse(game_id=game_id, owner_uid=body.owner_uid)


@router.post("/games/{game_id}/join", response_model=JoinGameResponse)
async def join_game(game_id: str, body: JoinGameRequest, registry: SessionRegistry = Depends(get_registry)):
    try:
        player = await registry.lobby.join_game(
            game_id, body.uid, body.nickname, body.role, body.avatar_url,
        )
        await registry.open(game_id, body.uid)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)

    game = await registry.channel.get(game_path(game_id)) or {}
    return JoinGameResponse(
        game_id=game_id,
        uid=body.uid,
        role=player.role,
        is_owner=game.get("ownerUid") == body.uid,
    )


@router.post("/games/{game_id}/leave", status_code=204)
async def leave_game(game_id: str, body: ActorRequest, registry: SessionRegistry = Depends(get_registry)):
    registry.close(game_id, body.uid)
    await registry.lobby.leave_game(game_id, body.uid)


# ── Per-player view & device input ────────────────────────────────────────────

@router.get("/games/{game_id}/view")
async def get_view(
    game_id: str,
    uid: str = Query(..., description="Player uid"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = await registry.require(game_id, uid)
    except GameNotFoundError as exc:
        raise _http_error(exc)
    await session.tick()
    return session.view().model_dump(by_alias=True, mode="json")


@router.post("/games/{game_id}/location")
async def post_location(
    game_id: str,
    body: LocationFixRequest,
    uid: str = Query(..., description="Player uid"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = await registry.require(game_id, uid)
    except GameNotFoundError as exc:
        raise _http_error(exc)
    written = await session.on_gps_fix(body.lat, body.lng, body.accuracy_m)
    return {"written": written, "outOfBounds": session.publisher.out_of_bounds}


@router.post("/games/{game_id}/capture")
async def capture(
    game_id: str,
    body: ActorRequest,
    target: Optional[str] = Query(None, description="Explicit target id"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = await registry.require(game_id, body.uid)
        victim = await session.capture(target)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return victim.to_document(mode="json")


@router.post("/games/{game_id}/rescue")
async def rescue(
    game_id: str,
    body: ActorRequest,
    target: Optional[str] = Query(None, description="Explicit target id"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = await registry.require(game_id, body.uid)
        rescued = await session.rescue(target)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return rescued.to_document(mode="json")


@router.post("/games/{game_id}/clear")
async def clear_objective(
    game_id: str,
    body: ActorRequest,
    target: Optional[str] = Query(None, description="Explicit target id"),
    registry: SessionRegistry = Depends(get_registry),
):
    try:
        session = await registry.require(game_id, body.uid)
        pin = await session.clear_objective(target)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return pin.to_document(mode="json")


# ── Owner actions ─────────────────────────────────────────────────────────────

@router.post("/games/{game_id}/countdown")
async def start_countdown(game_id: str, body: CountdownRequest, registry: SessionRegistry = Depends(get_registry)):
    try:
        session = await registry.require(game_id, body.uid)
        timer = await session.start_countdown(body.duration_sec)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return {"status": "countdown", "durationSec": timer.duration_sec}


@router.post("/games/{game_id}/end")
async def end_game(game_id: str, body: ActorRequest, registry: SessionRegistry = Depends(get_registry)):
    try:
        session = await registry.require(game_id, body.uid)
        await session.end_game()
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return {"status": "ended"}


@router.post("/games/{game_id}/owner")
async def transfer_owner(game_id: str, body: OwnerTransferRequest, registry: SessionRegistry = Depends(get_registry)):
    try:
        await registry.lobby.transfer_ownership(game_id, body.uid, body.new_owner_uid)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return {"ownerUid": body.new_owner_uid}


@router.post("/games/{game_id}/role")
async def change_role(game_id: str, body: RoleChangeRequest, registry: SessionRegistry = Depends(get_registry)):
    try:
        await registry.lobby.set_role(game_id, body.uid, body.target_uid, body.role)
    except (GameActionError, GameNotFoundError) as exc:
        raise _http_error(exc)
    return {"uid": body.target_uid, "role": body.role.value}
