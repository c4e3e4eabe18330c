import asyncio

import pytest

from agents.errors import GameActionError, GameNotFoundError
from agents.lobby import Lobby
from models.game import Role
from services.realtime import game_path, location_path, pin_path, pins_path, player_path
from utils.geo import BoundingBox

from conftest import LaggyChannel, run

BOX = BoundingBox(35.65, 35.85, 139.65, 139.8)


@pytest.fixture()
def lobby(channel):
    return Lobby(channel)


def test_create_game_writes_pending_game_with_tunables(channel, lobby, clock):
    game_id = run(lobby.create_game("alice", capture_radius_m=30, pin_count=None))
    game = run(channel.get(game_path(game_id)))
    assert game["status"] == "pending"
    assert game["ownerUid"] == "alice"
    assert game["captureRadiusM"] == 30
    assert "pinCount" not in game
    assert game["createdAt"] == clock()


def test_create_game_rejects_unknown_setting(lobby):
    with pytest.raises(TypeError):
        run(lobby.create_game("alice", warp_speed=9))


def test_first_player_is_forced_oni_and_becomes_owner(channel, lobby):
    game_id = run(lobby.create_game("host"))
    first = run(lobby.join_game(game_id, "alice", "Alice", role=Role.RUNNER))
    assert first.role == Role.ONI
    assert run(channel.get(game_path(game_id)))["ownerUid"] == "alice"

    second = run(lobby.join_game(game_id, "bob", "Bob"))
    assert second.role == Role.RUNNER
    assert run(channel.get(game_path(game_id)))["ownerUid"] == "alice"


def test_rejoin_keeps_progress(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(lobby.join_game(game_id, "alice", "Alice"))
    run(lobby.join_game(game_id, "bob", "Bob"))
    run(channel.write(player_path(game_id, "bob"), {
        "state": "downed", "downs": 2, "active": False, "stats": {"capturedTimes": 2},
    }))

    again = run(lobby.join_game(game_id, "bob", "Bobby", role=Role.ONI))
    assert again.role == Role.RUNNER
    assert again.downs == 2
    assert again.stats.captured_times == 2
    doc = run(channel.get(player_path(game_id, "bob")))
    assert doc["active"] is True
    assert doc["state"] == "downed"
    assert doc["nickname"] == "Bobby"


def test_join_missing_game(lobby):
    with pytest.raises(GameNotFoundError):
        run(lobby.join_game("NOPE", "bob", "Bob"))


def test_leave_removes_player_and_location(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(lobby.join_game(game_id, "alice", "Alice"))
    run(channel.write(location_path(game_id, "alice"), {"lat": 35.7, "lng": 139.7}))
    run(lobby.leave_game(game_id, "alice"))
    assert run(channel.get(player_path(game_id, "alice"))) is None
    assert run(channel.get(location_path(game_id, "alice"))) is None


def test_owner_administration(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(lobby.join_game(game_id, "alice", "Alice"))
    run(lobby.join_game(game_id, "bob", "Bob"))

    with pytest.raises(GameActionError) as exc:
        run(lobby.set_role(game_id, "bob", "bob", Role.ONI))
    assert exc.value.status_code == 403

    run(lobby.set_role(game_id, "alice", "bob", Role.ONI))
    assert run(channel.get(player_path(game_id, "bob")))["role"] == "oni"

    with pytest.raises(GameActionError):
        run(lobby.transfer_ownership(game_id, "alice", "nobody"))
    run(lobby.transfer_ownership(game_id, "alice", "bob"))
    assert run(channel.get(game_path(game_id)))["ownerUid"] == "bob"

    run(lobby.kick_player(game_id, "bob", "alice"))
    assert run(channel.get(player_path(game_id, "alice")))["active"] is False


def test_reconcile_pins_adds_and_trims(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(channel.write(pin_path(game_id, "keep"), {"lat": 35.7, "lng": 139.7, "status": "cleared"}))

    run(lobby.reconcile_pins(game_id, 4, BOX))
    pins = run(channel.list(pins_path(game_id)))
    assert len(pins) == 4
    assert pins["keep"]["status"] == "cleared"

    run(lobby.reconcile_pins(game_id, 2, BOX))
    remaining = run(channel.list(pins_path(game_id)))
    assert len(remaining) == 2
    # surplus removed highest id first
    assert sorted(remaining) == sorted(pins)[:2]


def test_reconcile_pins_uses_lowest_free_ids(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(channel.write(pin_path(game_id, "pin-1"), {"lat": 35.7, "lng": 139.7, "status": "pending"}))

    run(lobby.reconcile_pins(game_id, 3, BOX))
    assert sorted(run(channel.list(pins_path(game_id)))) == ["pin-0", "pin-1", "pin-2"]


def test_concurrent_reconcilers_converge_on_one_pin_set(clock):
    channel = LaggyChannel(clock=clock)
    first, second = Lobby(channel), Lobby(channel)
    game_id = run(first.create_game("alice"))

    async def both():
        await asyncio.gather(
            first.reconcile_pins(game_id, 5, BOX),
            second.reconcile_pins(game_id, 5, BOX),
        )

    run(both())
    pins = run(channel.list(pins_path(game_id)))
    assert sorted(pins) == [f"pin-{i}" for i in range(5)]

    # both clients wrote every pin, and wrote it to the same spot
    for pin_id in pins:
        spots = {
            (fields["lat"], fields["lng"])
            for path, fields in channel.write_log
            if path == pin_path(game_id, pin_id)
        }
        assert len(spots) == 1


def test_kick_unknown_player_is_404(channel, lobby):
    game_id = run(lobby.create_game("alice"))
    run(lobby.join_game(game_id, "alice", "Alice"))

    with pytest.raises(GameActionError) as exc:
        run(lobby.kick_player(game_id, "alice", "ghost"))
    assert exc.value.status_code == 404
    assert run(channel.get(player_path(game_id, "ghost"))) is None
