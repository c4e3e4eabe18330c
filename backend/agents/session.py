"""
Player Session — one player's device, composed from the core components.

  GameStateStore ──▶ ProximityTracker ──▶ view()
        │                                   ▲
        ├──▶ LifecycleController ──tick()───┘
        └──▶ CaptureRescueStateMachine
  LocationPublisher ──▶ channel

Each session owns its own store and subscriptions, so several sessions
sharing one channel behave like several phones sharing one game. The server
keeps one session per (game, uid) in SessionRegistry and drives it from the
HTTP and WebSocket routers.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agents.capture_rescue import CaptureRescueStateMachine
from agents.errors import GameNotFoundError
from agents.game_state_store import GameStateStore
from agents.lifecycle import LifecycleController, LifecycleSignals
from agents.lobby import Lobby
from agents.location_publisher import LocationPublisher
from agents.proximity_engine import ProximityTracker, Target
from agents.scoreboard import GameSummary, PersonalResult, game_summary, personal_result
from config import Settings, settings as default_settings
from models.game import (
    Alert, GameSnapshot, GameStatus, ObjectivePin, Player, PlayerState, Role, utcnow,
)
from services.realtime import RealtimeChannel, game_path, get_channel
from utils.geo import distance_meters

logger = logging.getLogger(__name__)

TICK_INTERVAL_SEC = 1.0


# ── View models (what a device renders) ───────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VisiblePlayer(_CamelModel):
    uid: str
    nickname: str
    role: Role
    state: PlayerState
    lat: Optional[float] = None
    lng: Optional[float] = None
    distance_m: Optional[float] = None


class SessionView(_CamelModel):
    game_id: str
    uid: str
    not_found: bool = False
    status: Optional[GameStatus] = None
    is_owner: bool = False
    role: Optional[Role] = None
    state: Optional[PlayerState] = None
    downs: int = 0
    out_of_bounds: bool = False
    countdown_time_left: Optional[int] = None
    game_time_remaining: Optional[int] = None
    elapsed_sec: Optional[int] = None
    players: List[VisiblePlayer] = []
    pins: List[ObjectivePin] = []
    capture_target: Optional[Target] = None
    rescue_target: Optional[Target] = None
    objective_target: Optional[Target] = None
    alerts: List[Alert] = []
    summary: GameSummary = Field(default_factory=GameSummary)
    result: Optional[PersonalResult] = None


class PlayerSession:

    def __init__(
        self,
        channel: RealtimeChannel,
        game_id: str,
        uid: str,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
        on_expired: Optional[Callable[["PlayerSession"], None]] = None,
    ):
        self.game_id = game_id
        self.uid = uid
        self._clock = clock
        self.lobby = Lobby(channel)
        self.store = GameStateStore(channel)
        self.lifecycle = LifecycleController(channel, self.store, settings, clock, lobby=self.lobby)
        self.machine = CaptureRescueStateMachine(channel, self.store, self.lifecycle, settings, clock)
        self.publisher = LocationPublisher(channel, game_id, uid, settings, clock)
        self.tracker: Optional[ProximityTracker] = None
        self._settings = settings
        self._ticker: Optional[asyncio.Task] = None
        self._on_expired = on_expired
        # first tick that saw the game ended or gone
        self.finished_at: Optional[datetime] = None

    @property
    def snapshot(self) -> GameSnapshot:
        return self.store.snapshot

    @property
    def is_open(self) -> bool:
        return self.store.is_subscribing

    def open(self) -> "PlayerSession":
        if self.is_open:
            return self
        self.store.start(self.game_id, self.uid)
        self.tracker = ProximityTracker(self.store, self._settings, self._clock)
        logger.info(f"[{self.game_id}] session opened for {self.uid}")
        return self

    def close(self) -> None:
        """Stop the ticker and every subscription. Safe to call twice."""
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self.tracker is not None:
            self.tracker.close()
            self.tracker = None
        if self.is_open:
            self.store.stop()
            logger.info(f"[{self.game_id}] session closed for {self.uid}")

    def add_listener(self, listener: Callable[[GameSnapshot], None]) -> Callable[[], None]:
        return self.store.add_listener(listener)

    # ── Device inputs ─────────────────────────────────────────────────────────

    async def on_gps_fix(self, lat: float, lng: float, accuracy_m: float = 0.0) -> bool:
        return await self.publisher.publish(lat, lng, accuracy_m)

    async def capture(self, victim_uid: Optional[str] = None) -> Player:
        return await self.machine.capture(victim_uid)

    async def rescue(self, target_uid: Optional[str] = None) -> Player:
        return await self.machine.rescue(target_uid)

    async def clear_objective(self, pin_id: Optional[str] = None) -> ObjectivePin:
        return await self.machine.clear_objective(pin_id)

    async def start_countdown(self, duration_sec: Optional[int] = None):
        return await self.lifecycle.start_countdown(self.uid, duration_sec)

    async def end_game(self) -> None:
        await self.lifecycle.end_by_owner(self.uid)

    async def leave(self) -> None:
        self.close()
        await self.lobby.leave_game(self.game_id, self.uid)

    # ── Timers ────────────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> LifecycleSignals:
        now = now or self._clock()
        signals = await self.lifecycle.tick(now)
        if self.tracker is not None:
            self.tracker.refresh(now)

        game = self.store.snapshot.game
        if self.store.snapshot.not_found or (game is not None and game.status == GameStatus.ENDED):
            if self.finished_at is None:
                self.finished_at = now
        else:
            self.finished_at = None
        return signals

    def expired(self, now: Optional[datetime] = None) -> bool:
        """True once the game has been ended or missing for the retention period."""
        if self.finished_at is None:
            return False
        elapsed = ((now or self._clock()) - self.finished_at).total_seconds()
        return elapsed >= self._settings.session_retention_sec

    async def run_ticker(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception(f"[{self.game_id}] tick failed for {self.uid}")
            if self.expired() and self._on_expired is not None:
                logger.info(f"[{self.game_id}] session for {self.uid} expired")
                self._on_expired(self)
                return
            await asyncio.sleep(TICK_INTERVAL_SEC)

    def start_ticker(self) -> None:
        if self._ticker is None or self._ticker.done():
            self._ticker = asyncio.create_task(self.run_ticker())

    # ── Rendering ─────────────────────────────────────────────────────────────

    def view(self, now: Optional[datetime] = None) -> SessionView:
        now = now or self._clock()
        snapshot = self.store.snapshot
        game = snapshot.game
        me = snapshot.player(self.uid)
        proximity = self.tracker.refresh(now) if self.tracker is not None else None
        signals = self.lifecycle.signals(now)
        my_loc = snapshot.location(self.uid)

        players: List[VisiblePlayer] = []
        visible = set(proximity.visible_player_uids) if proximity else set()
        visible.add(self.uid)
        for uid in sorted(visible):
            player = snapshot.player(uid)
            if player is None:
                continue
            loc = snapshot.location(uid)
            players.append(VisiblePlayer(
                uid=uid,
                nickname=player.nickname,
                role=player.role,
                state=player.effective_state,
                lat=loc.lat if loc else None,
                lng=loc.lng if loc else None,
                distance_m=(
                    distance_meters(my_loc.point, loc.point) if loc and my_loc else None
                ),
            ))

        pin_ids = set(proximity.visible_pin_ids) if proximity else set()
        ended = game is not None and game.status == GameStatus.ENDED
        return SessionView(
            game_id=self.game_id,
            uid=self.uid,
            not_found=snapshot.not_found,
            status=signals.status,
            is_owner=game is not None and game.owner_uid == self.uid,
            role=me.role if me else None,
            state=me.effective_state if me else None,
            downs=me.downs if me else 0,
            out_of_bounds=self.publisher.out_of_bounds,
            countdown_time_left=signals.countdown_time_left,
            game_time_remaining=signals.game_time_remaining,
            elapsed_sec=signals.elapsed_sec,
            players=players,
            pins=[pin for pin in snapshot.pins if pin.id in pin_ids],
            capture_target=proximity.capture_target if proximity else None,
            rescue_target=proximity.rescue_target if proximity else None,
            objective_target=proximity.objective_target if proximity else None,
            alerts=snapshot.alerts,
            summary=game_summary(snapshot, self.lifecycle.tunables.pin_count),
            result=personal_result(me) if ended and me else None,
        )


class SessionRegistry:
    """One open PlayerSession per (game_id, uid) in this process."""

    def __init__(
        self,
        channel: RealtimeChannel,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
        autotick: bool = True,
    ):
        self.channel = channel
        self.lobby = Lobby(channel)
        self._settings = settings
        self._clock = clock
        self._autotick = autotick
        self._sessions: Dict[Tuple[str, str], PlayerSession] = {}

    def get(self, game_id: str, uid: str) -> Optional[PlayerSession]:
        return self._sessions.get((game_id, uid))

    async def open(self, game_id: str, uid: str) -> PlayerSession:
        session = self._sessions.get((game_id, uid))
        if session is not None and session.is_open:
            return session
        if await self.channel.get(game_path(game_id)) is None:
            raise GameNotFoundError(f"Game {game_id} not found")

        session = PlayerSession(
            self.channel, game_id, uid, self._settings, self._clock, on_expired=self._evict,
        ).open()
        self._sessions[(game_id, uid)] = session
        if self._autotick:
            session.start_ticker()
        return session

    async def require(self, game_id: str, uid: str) -> PlayerSession:
        session = self.get(game_id, uid)
        if session is None or not session.is_open:
            # Sessions do not survive a restart; reopen from the stored documents.
            session = await self.open(game_id, uid)
        return session

    def close(self, game_id: str, uid: str) -> None:
        session = self._sessions.pop((game_id, uid), None)
        if session is not None:
            session.close()

    def _evict(self, session: PlayerSession) -> None:
        if self._sessions.get((session.game_id, session.uid)) is session:
            self.close(session.game_id, session.uid)
        else:
            session.close()

    def evict_finished(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Close sessions whose game stayed ended or missing past the retention period."""
        now = now or self._clock()
        expired = [key for key, session in self._sessions.items() if session.expired(now)]
        for key in expired:
            self.close(*key)
        return expired

    def close_all(self) -> None:
        for key in list(self._sessions):
            self.close(*key)


_registry: Optional[SessionRegistry] = None


def get_registry() -> SessionRegistry:
    """FastAPI dependency; tests override it with a memory-backed registry."""
    global _registry
    if _registry is None:
        _registry = SessionRegistry(get_channel())
    return _registry


def shutdown_registry() -> None:
    """Close every open session; a no-op when no registry was ever built."""
    if _registry is not None:
        _registry.close_all()
