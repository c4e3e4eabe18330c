"""Full game on one shared channel, three devices, simulated clock."""
from datetime import timedelta

from agents.lobby import Lobby
from agents.session import PlayerSession
from models.game import GameStatus, PlayerState, Role
from services.realtime import game_path, player_path

from conftest import offset, run


def test_capture_and_rescue_round(channel, clock, settings):
    lobby = Lobby(channel)

    async def setup():
        game_id = await lobby.create_game("A", countdown_duration_sec=20)
        a = await lobby.join_game(game_id, "A", "Akira")
        b = await lobby.join_game(game_id, "B", "Beni", role=Role.RUNNER)
        c = await lobby.join_game(game_id, "C", "Chika", role=Role.RUNNER)
        return game_id, a, b, c

    game_id, a, b, c = run(setup())
    assert a.role == Role.ONI
    assert b.role == Role.RUNNER and c.role == Role.RUNNER

    sa, sb, sc = (PlayerSession(channel, game_id, uid, settings, clock).open() for uid in "ABC")
    assert sa.view().is_owner and not sb.view().is_owner

    run(sa.on_gps_fix(*offset(meters_north=200)))
    run(sb.on_gps_fix(*offset()))
    run(sc.on_gps_fix(*offset(meters_north=1000)))

    # ── countdown → running ──
    run(sa.start_countdown())
    assert sb.view().status == GameStatus.COUNTDOWN
    assert sb.view().countdown_time_left == 20

    clock.advance(seconds=20)
    run(sb.tick())
    run(sc.tick())
    run(sa.tick())
    game = run(channel.get(game_path(game_id)))
    assert game["status"] == "running"
    started_at = game["startAt"]
    assert started_at == clock()
    running_writes = [
        fields for path, fields in channel.write_log
        if path == game_path(game_id) and fields.get("startAt") is not None
        and fields.get("status") == "running"
    ]
    # every later write carries the same startAt
    assert {f["startAt"] for f in running_writes} == {started_at}

    # ── A closes in on B ──
    clock.advance(seconds=5)
    run(sa.on_gps_fix(*offset()))
    view = sa.view()
    assert view.capture_target.id == "B"
    assert view.capture_target.distance_m == 0

    run(sa.capture())
    capture_time = clock()
    b_doc = run(channel.get(player_path(game_id, "B")))
    assert b_doc["downs"] == 1
    assert b_doc["state"] == "downed"
    assert b_doc["lastRevealUntil"] == capture_time + timedelta(seconds=120)
    assert run(channel.get(player_path(game_id, "A")))["stats"]["captures"] == 1
    assert sb.view().alerts[0].type == "captured"

    # B is revealed to A regardless of distance for the next 120 s
    clock.advance(seconds=4)
    run(sb.on_gps_fix(*offset(meters_north=-2000)))
    assert "B" in [p.uid for p in sa.view().players]

    # ── C comes over and rescues B ──
    run(sb.on_gps_fix(*offset()))  # throttled: B wrote a moment ago
    clock.advance(seconds=4)
    run(sb.on_gps_fix(*offset()))
    run(sc.on_gps_fix(*offset(meters_east=10)))
    assert sc.view().rescue_target.id == "B"
    run(sc.rescue())

    b_doc = run(channel.get(player_path(game_id, "B")))
    assert b_doc["state"] == "active"
    assert b_doc["downs"] == 1
    assert sb.snapshot.player("B").effective_state == PlayerState.ACTIVE

    run(sa.tick())
    assert run(channel.get(game_path(game_id)))["status"] == "running"
    summary = sa.view().summary
    assert summary.active_runners == 2 and summary.downed_runners == 0


def test_game_end_shows_personal_results(channel, clock, settings):
    lobby = Lobby(channel)

    async def setup():
        game_id = await lobby.create_game("A")
        await lobby.join_game(game_id, "A", "Akira")
        await lobby.join_game(game_id, "B", "Beni")
        return game_id

    game_id = run(setup())
    sa, sb = (PlayerSession(channel, game_id, uid, settings, clock).open() for uid in "AB")
    run(sa.start_countdown(5))
    clock.advance(seconds=5)
    run(sa.tick())
    run(sa.end_game())

    view = sb.view()
    assert view.status == GameStatus.ENDED
    assert view.result.role == Role.RUNNER
    assert view.result.metric_label == "generatorsCleared"
    assert [a.type for a in view.alerts] == ["game-end"]
    assert sa.view().result.metric_label == "captures"

    sa.close()
    sa.close()
    assert not sa.is_open
