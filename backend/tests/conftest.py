import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

import pytest

# Ensure the backend root (containing agents/, services/, models/) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Settings
from models.game import GameStatus, PlayerState, Role
from services.memory_channel import MemoryChannel
from services.realtime import game_path, location_path, pin_path, player_path

# Inside the default play area
BASE_LAT = 35.70
BASE_LNG = 139.70


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, ms: float = 0) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, milliseconds=ms)
        return self.now


class LaggyChannel(MemoryChannel):
    """MemoryChannel whose writes commit one loop turn after they are issued."""

    async def write(self, path, fields):
        await asyncio.sleep(0)
        await super().write(path, fields)

    async def write_if_unset(self, path, fields, guard_field):
        await asyncio.sleep(0)
        return await super().write_if_unset(path, fields, guard_field)


def offset(meters_north: float = 0.0, meters_east: float = 0.0) -> Tuple[float, float]:
    """Point roughly meters_north / meters_east of the base point."""
    lat = BASE_LAT + meters_north / 111_195.0
    lng = BASE_LNG + meters_east / (111_195.0 * 0.8121)  # cos(35.7°)
    return lat, lng


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def channel(clock):
    return MemoryChannel(clock=clock)


@pytest.fixture()
def settings():
    return Settings(_env_file=None, channel_backend="memory")


async def seed_game(
    channel: MemoryChannel,
    clock: FakeClock,
    game_id: str = "GAME1",
    players: Optional[Dict[str, dict]] = None,
    pins: Optional[Dict[str, Tuple[float, float]]] = None,
    status: GameStatus = GameStatus.RUNNING,
    owner_uid: str = "oni",
) -> str:
    """
    Write a game straight into the channel.

    players: {uid: {"role": Role, "at": (lat, lng) | None, ...extra player fields}}
    """
    await channel.write(game_path(game_id), {
        "status": status.value,
        "ownerUid": owner_uid,
        "startAt": clock() if status in (GameStatus.RUNNING, GameStatus.ENDED) else None,
        "countdownStartAt": None,
        "countdownDurationSec": None,
    })
    for uid, spec in (players or {}).items():
        spec = dict(spec)
        point = spec.pop("at", None)
        role = spec.pop("role", Role.RUNNER)
        await channel.write(player_path(game_id, uid), {
            "nickname": uid.title(),
            "role": role.value,
            "active": True,
            "state": PlayerState.ACTIVE.value,
            "downs": 0,
            **spec,
        })
        if point is not None:
            await channel.write(location_path(game_id, uid), {
                "lat": point[0], "lng": point[1], "accuracyM": 5.0, "at": clock(),
            })
    for pin_id, point in (pins or {}).items():
        await channel.write(pin_path(game_id, pin_id), {
            "lat": point[0], "lng": point[1], "status": "pending", "cleared": False,
        })
    return game_id
