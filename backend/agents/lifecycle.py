"""
Lifecycle Controller — game status transitions and the timers that drive them.

  pending ──owner starts──▶ countdown ──duration elapses──▶ running ──▶ ended
                                                 (owner ends | win condition | time up)

Status only moves forward; ended is terminal.

Countdown has two sources that are modelled as separate CountdownTimer
instances:
  local   started optimistically on the owner's device the moment they tap start
  shared  seeded from games/{id}.countdownStartAt once the write round-trips
While the two starts agree within the sync tolerance the local timer keeps
driving the display, so the owner sees no jump. A larger gap resyncs to the
shared start, so every client converges on the same remaining time.

Any client may perform the running transition when its countdown expires.
The startAt write is conditional on startAt being unset, so exactly one client
wins it and only that client runs the start-of-game housekeeping. Any client
may end a running game; a game this client already sees as ended is never
written again.
"""
import logging
import math
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from agents.errors import GameActionError
from agents.lobby import Lobby
from config import Settings, settings as default_settings
from models.game import (
    STATUS_ORDER, AlertType, EventType, Game, GameStatus, Role, Tunables, utcnow,
)
from services.realtime import RealtimeChannel, alerts_path, events_path, game_path
from utils.geo import BoundingBox

logger = logging.getLogger(__name__)


def can_transition(current: GameStatus, target: GameStatus) -> bool:
    return STATUS_ORDER.index(target) > STATUS_ORDER.index(current)


class CountdownTimer(BaseModel):
    started_at: datetime
    duration_sec: int

    def elapsed(self, now: datetime) -> float:
        return (now - self.started_at).total_seconds()

    def remaining(self, now: datetime) -> int:
        return math.ceil(max(0.0, self.duration_sec - self.elapsed(now)))

    def expired(self, now: datetime) -> bool:
        return self.elapsed(now) >= self.duration_sec


class LifecycleSignals(BaseModel):
    status: Optional[GameStatus] = None
    countdown_time_left: Optional[int] = None
    game_time_remaining: Optional[int] = None
    elapsed_sec: Optional[int] = None


class LifecycleController:

    def __init__(
        self,
        channel: RealtimeChannel,
        store,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
        lobby: Optional[Lobby] = None,
    ):
        self._channel = channel
        self._store = store
        self._settings = settings
        self._clock = clock
        self._lobby = lobby or Lobby(channel)
        self._local_countdown: Optional[CountdownTimer] = None
        # One transition request per game from this client; other clients race freely.
        self._running_requested = False
        self._end_requested = False

    @property
    def game(self) -> Optional[Game]:
        return self._store.snapshot.game

    @property
    def tunables(self) -> Tunables:
        return Tunables.resolve(self.game, self._settings)

    def _require_game(self) -> Game:
        game = self.game
        if game is None:
            raise GameActionError("Game not loaded", status_code=404)
        return game

    # ── Countdown ─────────────────────────────────────────────────────────────

    async def start_countdown(self, requester_uid: str, duration_sec: Optional[int] = None) -> CountdownTimer:
        game = self._require_game()
        if requester_uid != game.owner_uid:
            raise GameActionError("Only the game owner can start the game", status_code=403)
        if game.status != GameStatus.PENDING:
            raise GameActionError(f"Game is already {game.status.value}")

        duration = duration_sec or self.tunables.countdown_duration_sec
        self._local_countdown = CountdownTimer(started_at=self._clock(), duration_sec=duration)
        self._running_requested = False
        self._end_requested = False
        try:
            await self._channel.write(game_path(game.id), {
                "status": GameStatus.COUNTDOWN.value,
                "countdownStartAt": self._channel.server_timestamp(),
                "countdownDurationSec": duration,
            })
        except Exception as exc:
            self._local_countdown = None
            logger.warning(f"[{game.id}] countdown start failed: {exc}")
            raise GameActionError("Could not start the countdown", status_code=502) from exc

        logger.info(f"[{game.id}] Countdown started by {requester_uid} ({duration}s)")
        return self._local_countdown

    def active_countdown(self) -> Optional[CountdownTimer]:
        game = self.game
        if game is None or game.status in (GameStatus.RUNNING, GameStatus.ENDED):
            self._local_countdown = None
            return None

        shared = None
        if game.countdown_start_at is not None:
            shared = CountdownTimer(
                started_at=game.countdown_start_at,
                duration_sec=game.countdown_duration_sec or self.tunables.countdown_duration_sec,
            )
        local = self._local_countdown
        if shared is not None and local is not None:
            drift = abs((shared.started_at - local.started_at).total_seconds())
            if drift <= self._settings.countdown_sync_tolerance_sec:
                return local
            logger.info(f"[{game.id}] countdown resynced to shared start ({drift:.1f}s drift)")
            self._local_countdown = None
            return shared
        return local or shared

    def countdown_time_left(self, now: Optional[datetime] = None) -> Optional[int]:
        timer = self.active_countdown()
        if timer is None:
            return None
        return timer.remaining(now or self._clock())

    # ── Running ───────────────────────────────────────────────────────────────

    def elapsed_sec(self, now: Optional[datetime] = None) -> Optional[int]:
        game = self.game
        if game is None or game.status != GameStatus.RUNNING or game.start_at is None:
            return None
        return max(0, int(((now or self._clock()) - game.start_at).total_seconds()))

    def game_time_remaining(self, now: Optional[datetime] = None) -> Optional[int]:
        game = self.game
        if game is None or game.status != GameStatus.RUNNING or game.start_at is None:
            return None
        elapsed = ((now or self._clock()) - game.start_at).total_seconds()
        return math.ceil(max(0.0, self.tunables.game_duration_sec - elapsed))

    async def begin_running(self) -> bool:
        """Countdown expired: move to running. Returns False when already done."""
        game = self.game
        if game is None or game.start_at is not None or not can_transition(game.status, GameStatus.RUNNING):
            return False
        if self._running_requested:
            return False
        self._running_requested = True

        try:
            won = await self._channel.write_if_unset(game_path(game.id), {
                "status": GameStatus.RUNNING.value,
                "startAt": self._channel.server_timestamp(),
                "countdownStartAt": None,
                "countdownDurationSec": None,
            }, guard_field="startAt")
        except Exception:
            self._running_requested = False
            logger.warning(f"[{game.id}] running transition failed", exc_info=True)
            return False

        self._local_countdown = None
        if not won:
            logger.debug(f"[{game.id}] running transition already made by another client")
            return False
        logger.info(f"[{game.id}] Game running")
        await self._record_event(game.id, EventType.GAME_START)

        # The client that won the transition does the one-time reset.
        try:
            await self._lobby.reset_players(game.id)
            await self._lobby.reconcile_pins(
                game.id,
                self.tunables.pin_count,
                BoundingBox(
                    self._settings.bounds_min_lat, self._settings.bounds_max_lat,
                    self._settings.bounds_min_lng, self._settings.bounds_max_lng,
                ),
            )
        except Exception:
            logger.warning(f"[{game.id}] running-start housekeeping failed", exc_info=True)
        return True

    # ── Ending ────────────────────────────────────────────────────────────────

    async def end_game(self, winner: Optional[Role], reason: str) -> None:
        """
        Write status=ended with its result. No-op once this client has seen
        the game end, so a recorded result is never replaced. Clients racing
        on the same win condition may still both write; they write the same
        values.
        """
        game = self._require_game()
        if game.status == GameStatus.ENDED:
            return
        await self._channel.write(game_path(game.id), {
            "status": GameStatus.ENDED.value,
            "winner": winner.value if winner else None,
            "endedReason": reason,
        })
        self._local_countdown = None

        logger.info(f"[{game.id}] Game ended ({reason}, winner={winner.value if winner else None})")
        await self._record_event(game.id, EventType.GAME_END, data={
            "winner": winner.value if winner else None,
            "reason": reason,
        })
        for uid in self._store.snapshot.players_by_id:
            try:
                await self._channel.add(alerts_path(game.id), {
                    "toUid": uid,
                    "type": AlertType.GAME_END.value,
                    "at": self._channel.server_timestamp(),
                    "meta": {"winner": winner.value if winner else None, "reason": reason},
                })
            except Exception:
                logger.warning(f"[{game.id}] game-end alert to {uid} failed", exc_info=True)

    async def end_by_owner(self, requester_uid: str) -> None:
        game = self._require_game()
        if requester_uid != game.owner_uid:
            raise GameActionError("Only the game owner can end the game", status_code=403)
        if game.status == GameStatus.ENDED:
            raise GameActionError("Game has already ended")
        try:
            await self.end_game(None, "ended_by_owner")
        except Exception as exc:
            raise GameActionError("Could not end the game", status_code=502) from exc

    # ── Timer tick ────────────────────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> LifecycleSignals:
        """Called every second. Fires due transitions, returns display values."""
        now = now or self._clock()
        game = self.game

        timer = self.active_countdown()
        if timer is not None and timer.expired(now):
            await self.begin_running()

        remaining = self.game_time_remaining(now)
        if remaining == 0 and not self._end_requested and game is not None:
            self._end_requested = True
            try:
                await self.end_game(Role.RUNNER, "time_up")
            except Exception:
                self._end_requested = False
                logger.warning(f"[{game.id}] time-up end failed", exc_info=True)

        return self.signals(now)

    def signals(self, now: Optional[datetime] = None) -> LifecycleSignals:
        now = now or self._clock()
        game = self.game
        return LifecycleSignals(
            status=game.status if game else None,
            countdown_time_left=self.countdown_time_left(now),
            game_time_remaining=self.game_time_remaining(now),
            elapsed_sec=self.elapsed_sec(now),
        )

    async def _record_event(self, game_id: str, event_type: EventType, **fields) -> None:
        try:
            await self._channel.add(events_path(game_id), {
                "type": event_type.value,
                "at": self._channel.server_timestamp(),
                **fields,
            })
        except Exception:
            logger.warning(f"[{game_id}] event {event_type.value} not recorded", exc_info=True)
