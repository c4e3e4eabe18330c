import asyncio

from agents.session import SessionRegistry
from config import Settings
from models.game import GameStatus, Role
from services.realtime import game_path

from conftest import offset, run, seed_game

PLAYERS = {
    "oni": {"role": Role.ONI, "at": offset()},
    "bob": {"role": Role.RUNNER, "at": offset(meters_north=300)},
}


def test_finished_sessions_are_evicted_after_retention(channel, clock, settings):
    registry = SessionRegistry(channel, settings, clock, autotick=False)
    run(seed_game(channel, clock, "DONE", players=PLAYERS))
    run(seed_game(channel, clock, "LIVE", players=PLAYERS))
    oni = run(registry.open("DONE", "oni"))
    bob = run(registry.open("DONE", "bob"))
    live = run(registry.open("LIVE", "bob"))

    run(oni.end_game())
    for session in (oni, bob, live):
        run(session.tick())
    assert oni.finished_at == clock()
    assert live.finished_at is None
    assert registry.evict_finished() == []

    clock.advance(seconds=settings.session_retention_sec)
    assert sorted(registry.evict_finished()) == [("DONE", "bob"), ("DONE", "oni")]
    assert registry.get("DONE", "oni") is None
    assert not oni.is_open and not bob.is_open
    assert registry.get("LIVE", "bob") is live and live.is_open


def test_missing_game_session_is_evicted(channel, clock, settings):
    registry = SessionRegistry(channel, settings, clock, autotick=False)
    run(seed_game(channel, clock, "GONE", players=PLAYERS))
    session = run(registry.open("GONE", "bob"))

    run(channel.delete(game_path("GONE")))
    run(session.tick())
    assert session.snapshot.not_found

    clock.advance(seconds=settings.session_retention_sec)
    assert registry.evict_finished() == [("GONE", "bob")]


def test_ticker_evicts_its_own_session(channel, clock):
    settings = Settings(_env_file=None, channel_backend="memory", session_retention_sec=0)
    registry = SessionRegistry(channel, settings, clock)
    run(seed_game(channel, clock, "OVER", players=PLAYERS, status=GameStatus.ENDED))

    async def scenario():
        session = await registry.open("OVER", "bob")
        for _ in range(3):
            await asyncio.sleep(0)
        return session

    session = run(scenario())
    assert registry.get("OVER", "bob") is None
    assert not session.is_open
