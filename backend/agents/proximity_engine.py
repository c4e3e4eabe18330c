"""
Proximity Engine — pure visibility and eligibility evaluation.

evaluate() is a function of (snapshot, self uid, now, tunables) only. It is
run redundantly on every client; nothing here writes or schedules anything.
Eligibility comes back as values (nullable targets) and the caller decides
whether to act on them through CaptureRescueStateMachine.

Visibility:
  Oni     sees every other oni; runners that are not eliminated within
          killer_detect_runner_radius_m; any runner inside its reveal window.
  Runner  sees every other runner; oni within runner_see_killer_radius_m; every
          oni while the runner itself is inside a reveal window (mutual).
  Pins    only while the game is running, within the role's pin radius.

Eligibility (game running, self active with a known location):
  capture    oni → nearest active runner within capture_radius_m that is not
             in cooldown
  rescue     runner → nearest downed runner within rescue_radius_m
  objective  runner → nearest uncleared pin within capture_radius_m
Ties on distance break by uid / pin id so every client picks the same target.
"""
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel

from config import Settings, settings as default_settings
from models.game import (
    GameSnapshot, GameStatus, Location, PlayerState, Role, Tunables, utcnow,
)
from utils.geo import LatLng, distance_meters

logger = logging.getLogger(__name__)


class Target(BaseModel):
    id: str
    distance_m: float


class ProximityView(BaseModel):
    visible_player_uids: List[str] = []
    visible_pin_ids: List[str] = []
    capture_target: Optional[Target] = None
    rescue_target: Optional[Target] = None
    objective_target: Optional[Target] = None


def _distance(a: Optional[Location], b: Optional[LatLng]) -> Optional[float]:
    if a is None or b is None:
        return None
    return distance_meters(a.point, b)


def _nearest(candidates: List[Tuple[float, str]]) -> Optional[Target]:
    if not candidates:
        return None
    distance, target_id = min(candidates)
    return Target(id=target_id, distance_m=distance)


def evaluate(
    snapshot: GameSnapshot,
    uid: Optional[str],
    now: datetime,
    tunables: Tunables,
) -> ProximityView:
    me = snapshot.player(uid) if uid else None
    if me is None or not me.active:
        return ProximityView()

    game = snapshot.game
    running = game is not None and game.status == GameStatus.RUNNING
    my_loc = snapshot.location(me.uid)
    my_point = my_loc.point if my_loc is not None else None

    visible: List[str] = []
    capture: List[Tuple[float, str]] = []
    rescue: List[Tuple[float, str]] = []

    for other in snapshot.players:
        if other.uid == me.uid or not other.active:
            continue
        other_loc = snapshot.location(other.uid)
        d = _distance(other_loc, my_point)

        if me.role == Role.ONI:
            if other.role == Role.ONI:
                visible.append(other.uid)
            elif other.is_revealed(now) or (
                other.effective_state != PlayerState.ELIMINATED
                and d is not None and d <= tunables.killer_detect_runner_radius_m
            ):
                visible.append(other.uid)
        else:
            if other.role == Role.RUNNER:
                visible.append(other.uid)
            elif me.is_revealed(now) or (
                d is not None and d <= tunables.runner_see_killer_radius_m
            ):
                visible.append(other.uid)

        if not running or d is None or other.role != Role.RUNNER:
            continue
        if me.role == Role.ONI:
            if (
                other.effective_state == PlayerState.ACTIVE
                and not other.in_cooldown(now)
                and d <= tunables.capture_radius_m
            ):
                capture.append((d, other.uid))
        elif me.effective_state == PlayerState.ACTIVE:
            if other.effective_state == PlayerState.DOWNED and d <= tunables.rescue_radius_m:
                rescue.append((d, other.uid))

    visible_pins: List[str] = []
    objectives: List[Tuple[float, str]] = []
    if running and my_point is not None:
        pin_radius = (
            tunables.killer_see_generator_radius_m if me.role == Role.ONI
            else tunables.runner_see_generator_radius_m
        )
        for pin in snapshot.pins:
            d = distance_meters(my_point, pin.point)
            if d <= pin_radius:
                visible_pins.append(pin.id)
            if (
                me.role == Role.RUNNER
                and me.effective_state == PlayerState.ACTIVE
                and not pin.is_cleared
                and d <= tunables.capture_radius_m
            ):
                objectives.append((d, pin.id))

    return ProximityView(
        visible_player_uids=sorted(visible),
        visible_pin_ids=sorted(visible_pins),
        capture_target=_nearest(capture) if me.role == Role.ONI else None,
        rescue_target=_nearest(rescue),
        objective_target=_nearest(objectives),
    )


class ProximityTracker:
    """
    Derived proximity view for one store.

    Recomputes when the store emits a new snapshot, and on refresh() from the
    1-second timer (reveal windows and cooldowns expire with time alone).
    Listeners only hear about views that actually changed.
    """

    def __init__(
        self,
        store,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._settings = settings
        self._clock = clock
        self._listeners: List[Callable[[ProximityView], None]] = []
        self._view = ProximityView()
        self._remove = store.add_listener(lambda _snapshot: self.refresh())
        self.refresh()

    @property
    def current(self) -> ProximityView:
        return self._view

    def add_listener(self, listener: Callable[[ProximityView], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def refresh(self, now: Optional[datetime] = None) -> ProximityView:
        snapshot = self._store.snapshot
        tunables = Tunables.resolve(snapshot.game, self._settings)
        view = evaluate(snapshot, self._store.uid, now or self._clock(), tunables)
        if view != self._view:
            self._view = view
            for listener in list(self._listeners):
                try:
                    listener(view)
                except Exception:
                    logger.exception(f"[{self._store.game_id}] proximity listener raised")
        return self._view

    def close(self) -> None:
        self._remove()
