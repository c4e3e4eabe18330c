"""
Lobby — game setup and membership writes.

Responsibilities:
- Create a pending game
- Join / rejoin / leave (first player becomes oni and owner)
- Owner-only administration: role changes, kicks, ownership transfer
- Running-start housekeeping: player reset and objective pin reconciliation
"""
import logging
import random
import uuid
from itertools import count, islice
from typing import Any, Dict, Optional

from pydantic.alias_generators import to_camel

from agents.errors import GameActionError, GameNotFoundError
from models.game import Game, GameStatus, Player, PlayerState, Role
from services.realtime import (
    RealtimeChannel,
    game_path, location_path, pin_path, pins_path, player_path, players_path,
)
from utils.geo import BoundingBox

logger = logging.getLogger(__name__)


class Lobby:

    def __init__(self, channel: RealtimeChannel):
        self._channel = channel

    async def _require_game(self, game_id: str) -> Game:
        data = await self._channel.get(game_path(game_id))
        if data is None:
            raise GameNotFoundError(f"Game {game_id} not found")
        return Game.model_validate({**data, "id": game_id})

    async def _require_owner(self, game_id: str, requester_uid: str) -> Game:
        game = await self._require_game(game_id)
        if game.owner_uid != requester_uid:
            raise GameActionError("Only the game owner can do that", status_code=403)
        return game

    # ── Game creation ─────────────────────────────────────────────────────────

    async def create_game(self, owner_uid: str, **tunables: Any) -> str:
        game_id = str(uuid.uuid4())[:8].upper()
        data: Dict[str, Any] = {
            "status": GameStatus.PENDING.value,
            "ownerUid": owner_uid,
            "startAt": None,
            "countdownStartAt": None,
            "countdownDurationSec": None,
            "createdAt": self._channel.server_timestamp(),
        }
        # Unset tunables fall back to config defaults at read time.
        for name, value in tunables.items():
            if name not in Game.model_fields:
                raise TypeError(f"Unknown game setting: {name}")
            if value is not None:
                data[to_camel(name)] = value
        await self._channel.write(game_path(game_id), data)
        logger.info(f"[{game_id}] Game created by {owner_uid}")
        return game_id

    # ── Membership ────────────────────────────────────────────────────────────

    async def join_game(
        self,
        game_id: str,
        uid: str,
        nickname: str,
        role: Role = Role.RUNNER,
        avatar_url: Optional[str] = None,
    ) -> Player:
        """
        Add or re-add a player.

        The first player in an empty game is forced to oni and becomes owner.
        A rejoining player keeps role, state, downs and stats.
        """
        game = await self._require_game(game_id)
        docs = await self._channel.list(players_path(game_id))
        existing = (
            Player.model_validate({**docs[uid], "uid": uid}) if uid in docs else None
        )

        if not docs:
            role = Role.ONI
            if game.owner_uid != uid:
                await self._channel.write(game_path(game_id), {"ownerUid": uid})
                logger.info(f"[{game_id}] First player {uid} is now owner")
        elif existing is not None:
            role = existing.role

        if existing is not None:
            player = existing.model_copy(update={
                "nickname": nickname,
                "role": role,
                "active": True,
                "state": existing.state or PlayerState.ACTIVE,
                "avatar_url": avatar_url or existing.avatar_url,
            })
        else:
            player = Player(
                uid=uid,
                nickname=nickname,
                role=role,
                state=PlayerState.ACTIVE,
                avatar_url=avatar_url,
            )

        await self._channel.write(
            player_path(game_id, uid),
            player.to_document(exclude_none=True),
        )
        logger.info(f"[{game_id}] {uid} ({nickname}) joined as {role.value}")
        return player

    async def leave_game(self, game_id: str, uid: str) -> None:
        await self._channel.delete(player_path(game_id, uid))
        await self._channel.delete(location_path(game_id, uid))
        logger.info(f"[{game_id}] {uid} left")

    # ── Owner administration ──────────────────────────────────────────────────

    async def set_role(self, game_id: str, requester_uid: str, target_uid: str, role: Role) -> None:
        await self._require_owner(game_id, requester_uid)
        if await self._channel.get(player_path(game_id, target_uid)) is None:
            raise GameActionError("Player not found", status_code=404)
        await self._channel.write(player_path(game_id, target_uid), {"role": role.value})
        logger.info(f"[{game_id}] {target_uid} role → {role.value}")

    async def kick_player(self, game_id: str, requester_uid: str, target_uid: str) -> None:
        await self._require_owner(game_id, requester_uid)
        if await self._channel.get(player_path(game_id, target_uid)) is None:
            raise GameActionError("Player not found", status_code=404)
        await self._channel.write(player_path(game_id, target_uid), {"active": False})
        logger.info(f"[{game_id}] {target_uid} kicked by {requester_uid}")

    async def transfer_ownership(self, game_id: str, requester_uid: str, new_owner_uid: str) -> None:
        await self._require_owner(game_id, requester_uid)
        if await self._channel.get(player_path(game_id, new_owner_uid)) is None:
            raise GameActionError("New owner is not a player in this game", status_code=409)
        await self._channel.write(game_path(game_id), {"ownerUid": new_owner_uid})
        logger.info(f"[{game_id}] Ownership {requester_uid} → {new_owner_uid}")

    # ── Running-start housekeeping ────────────────────────────────────────────

    async def reset_players(self, game_id: str) -> None:
        """Return every player to a clean active state (the only down-counter reset)."""
        docs = await self._channel.list(players_path(game_id))
        for uid in docs:
            await self._channel.write(player_path(game_id, uid), {
                "state": PlayerState.ACTIVE.value,
                "downs": 0,
                "lastDownAt": None,
                "lastRescuedAt": None,
                "lastRevealUntil": None,
                "cooldownUntil": None,
            })
        logger.info(f"[{game_id}] Reset {len(docs)} players")

    async def reconcile_pins(self, game_id: str, target_count: int, bounds: BoundingBox) -> int:
        """
        Bring the pin collection to exactly target_count documents.

        Missing pins take the lowest free ids pin-0, pin-1, ... and a position
        seeded from game and pin id, so two clients reconciling at once write
        the same documents. Surplus pins are removed highest id first.
        Existing pins are otherwise left alone.
        """
        docs = await self._channel.list(pins_path(game_id))
        current = len(docs)
        if current < target_count:
            for pin_id in islice(
                (f"pin-{i}" for i in count() if f"pin-{i}" not in docs),
                target_count - current,
            ):
                spot = random.Random(f"{game_id}/{pin_id}")
                await self._channel.write(pin_path(game_id, pin_id), {
                    "lat": spot.uniform(bounds.min_lat, bounds.max_lat),
                    "lng": spot.uniform(bounds.min_lng, bounds.max_lng),
                    "status": "pending",
                    "cleared": False,
                })
        elif current > target_count:
            for pin_id in sorted(docs, reverse=True)[: current - target_count]:
                await self._channel.delete(pin_path(game_id, pin_id))
        if current != target_count:
            logger.info(f"[{game_id}] Pins reconciled {current} → {target_count}")
        return target_count
