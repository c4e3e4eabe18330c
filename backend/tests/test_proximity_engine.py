from datetime import datetime, timedelta, timezone

import pytest

from agents.game_state_store import GameStateStore
from agents.proximity_engine import ProximityTracker, evaluate
from config import Settings
from models.game import (
    Game, GameSnapshot, GameStatus, Location, ObjectivePin, Player, PlayerState, Role, Tunables,
)
from services.realtime import location_path, player_path

from conftest import offset, run, seed_game

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
TUNABLES = Tunables.resolve(None, Settings(_env_file=None))


def snapshot(players, status=GameStatus.RUNNING, pins=()):
    """players: [(Player, (lat, lng) | None)]"""
    return GameSnapshot(
        game=Game(id="G", status=status, owner_uid="oni"),
        players_by_id={p.uid: p for p, _ in players},
        locations_by_id={
            p.uid: Location(lat=at[0], lng=at[1]) for p, at in players if at is not None
        },
        pins=[ObjectivePin(id=pin_id, lat=at[0], lng=at[1], status=status_) for pin_id, at, status_ in pins],
    )


def oni(uid="oni", **kw):
    return Player(uid=uid, role=Role.ONI, **kw)


def runner(uid, **kw):
    return Player(uid=uid, role=Role.RUNNER, **kw)


# ── Visibility ────────────────────────────────────────────────────────────────

def test_oni_sees_runner_inside_detect_radius_only():
    near = snapshot([(oni(), offset()), (runner("bob"), offset(meters_north=400))])
    far = snapshot([(oni(), offset()), (runner("bob"), offset(meters_north=700))])
    assert evaluate(near, "oni", NOW, TUNABLES).visible_player_uids == ["bob"]
    assert evaluate(far, "oni", NOW, TUNABLES).visible_player_uids == []


def test_reveal_window_overrides_distance_for_oni():
    revealed = runner("bob", last_reveal_until=NOW + timedelta(seconds=60))
    snap = snapshot([(oni(), offset()), (revealed, offset(meters_north=5000))])
    assert evaluate(snap, "oni", NOW, TUNABLES).visible_player_uids == ["bob"]
    # window closes with time alone
    later = NOW + timedelta(seconds=61)
    assert evaluate(snap, "oni", later, TUNABLES).visible_player_uids == []


def test_revealed_runner_sees_every_oni():
    me = runner("bob", last_reveal_until=NOW + timedelta(seconds=60))
    snap = snapshot([
        (me, offset()),
        (oni("o1"), offset(meters_north=3000)),
        (oni("o2"), None),
    ])
    assert evaluate(snap, "bob", NOW, TUNABLES).visible_player_uids == ["o1", "o2"]


def test_runner_sees_teammates_everywhere_and_oni_nearby():
    snap = snapshot([
        (runner("bob"), offset()),
        (runner("cat"), offset(meters_north=8000)),
        (oni("o1"), offset(meters_east=450)),
        (oni("o2"), offset(meters_east=600)),
    ])
    assert evaluate(snap, "bob", NOW, TUNABLES).visible_player_uids == ["cat", "o1"]


def test_eliminated_runner_hidden_from_oni():
    snap = snapshot([
        (oni(), offset()),
        (runner("bob", state=PlayerState.ELIMINATED), offset(meters_north=10)),
    ])
    assert evaluate(snap, "oni", NOW, TUNABLES).visible_player_uids == []


def test_inactive_players_are_ignored():
    snap = snapshot([(oni(), offset()), (runner("bob", active=False), offset())])
    view = evaluate(snap, "oni", NOW, TUNABLES)
    assert view.visible_player_uids == []
    assert view.capture_target is None


def test_pins_visible_by_role_radius_while_running():
    pins = [("p1", offset(meters_east=2000), "pending"), ("p2", offset(meters_east=4000), "pending")]
    snap = snapshot([(runner("bob"), offset())], pins=pins)
    assert evaluate(snap, "bob", NOW, TUNABLES).visible_pin_ids == ["p1"]

    pending = snapshot([(runner("bob"), offset())], status=GameStatus.COUNTDOWN, pins=pins)
    assert evaluate(pending, "bob", NOW, TUNABLES).visible_pin_ids == []


# ── Eligibility ───────────────────────────────────────────────────────────────

def test_capture_picks_nearest_active_runner():
    snap = snapshot([
        (oni(), offset()),
        (runner("bob"), offset(meters_north=40)),
        (runner("cat"), offset(meters_north=20)),
        (runner("dan"), offset(meters_north=80)),
    ])
    target = evaluate(snap, "oni", NOW, TUNABLES).capture_target
    assert target.id == "cat"
    assert target.distance_m == pytest.approx(20, abs=1)


def test_capture_tie_breaks_by_uid():
    snap = snapshot([
        (oni(), offset()),
        (runner("zed"), offset(meters_north=10)),
        (runner("amy"), offset(meters_north=10)),
    ])
    assert evaluate(snap, "oni", NOW, TUNABLES).capture_target.id == "amy"


def test_capture_skips_downed_and_cooldown_runners():
    snap = snapshot([
        (oni(), offset()),
        (runner("bob", state=PlayerState.DOWNED), offset(meters_north=5)),
        (runner("cat", cooldown_until=NOW + timedelta(seconds=10)), offset(meters_north=5)),
    ])
    assert evaluate(snap, "oni", NOW, TUNABLES).capture_target is None
    later = evaluate(snap, "oni", NOW + timedelta(seconds=11), TUNABLES)
    assert later.capture_target.id == "cat"


def test_capture_requires_running_game():
    snap = snapshot([(oni(), offset()), (runner("bob"), offset())], status=GameStatus.COUNTDOWN)
    assert evaluate(snap, "oni", NOW, TUNABLES).capture_target is None


def test_rescue_needs_active_self_and_downed_target_in_radius():
    downed = runner("bob", state=PlayerState.DOWNED, downs=1)
    snap = snapshot([(runner("cat"), offset()), (downed, offset(meters_north=30))])
    assert evaluate(snap, "cat", NOW, TUNABLES).rescue_target.id == "bob"

    far = snapshot([(runner("cat"), offset()), (downed, offset(meters_north=80))])
    assert evaluate(far, "cat", NOW, TUNABLES).rescue_target is None

    me_down = snapshot([(runner("cat", state=PlayerState.DOWNED), offset()), (downed, offset())])
    assert evaluate(me_down, "cat", NOW, TUNABLES).rescue_target is None


def test_eliminated_runner_is_not_rescuable():
    snap = snapshot([
        (runner("cat"), offset()),
        (runner("bob", state=PlayerState.ELIMINATED, downs=3), offset()),
    ])
    assert evaluate(snap, "cat", NOW, TUNABLES).rescue_target is None


def test_objective_is_nearest_uncleared_pin():
    pins = [
        ("p1", offset(meters_east=10), "cleared"),
        ("p2", offset(meters_east=30), "pending"),
        ("p3", offset(meters_east=45), "clearing"),
    ]
    snap = snapshot([(runner("bob"), offset())], pins=pins)
    assert evaluate(snap, "bob", NOW, TUNABLES).objective_target.id == "p2"

    as_oni = snapshot([(oni(), offset())], pins=pins)
    assert evaluate(as_oni, "oni", NOW, TUNABLES).objective_target is None


def test_unknown_self_yields_empty_view():
    snap = snapshot([(oni(), offset())])
    view = evaluate(snap, "ghost", NOW, TUNABLES)
    assert view.visible_player_uids == [] and view.capture_target is None


# ── Tracker ───────────────────────────────────────────────────────────────────

def test_tracker_recomputes_on_store_change_and_notifies_once(channel, clock, settings):
    game_id = run(seed_game(channel, clock, players={
        "oni": {"role": Role.ONI, "at": offset()},
        "bob": {"role": Role.RUNNER, "at": offset(meters_north=200)},
    }))
    store = GameStateStore(channel)
    store.start(game_id, "oni")
    tracker = ProximityTracker(store, settings, clock)
    views = []
    tracker.add_listener(views.append)
    assert tracker.current.capture_target is None

    run(channel.write(location_path(game_id, "bob"), dict(zip(("lat", "lng"), offset(meters_north=20)))))
    assert tracker.current.capture_target.id == "bob"
    assert len(views) == 1

    # an unrelated change that leaves the view identical
    run(channel.write(player_path(game_id, "bob"), {"nickname": "Bobby"}))
    assert len(views) == 1
    tracker.close()
