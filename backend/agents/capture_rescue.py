"""
Capture / Rescue State Machine — the down-counter transitions for runners.

  active ──capture──▶ downed ──rescue──▶ active
                        │
                        └──capture (downs >= max_downs)──▶ eliminated (terminal)

Every transition is a client-authoritative partial write on the victim's
player document. There is no lock or compare-and-swap: two oni capturing the
same runner, or a capture racing a rescue, resolve by last write wins. The
down-counter is written as an absolute value computed from the local
snapshot, so concurrent captures can land on the same count.

After a capture or objective clear the machine checks the win condition on
the post-write state and, when met, asks the lifecycle controller to end the
game. Several clients may do this at once; the end write is idempotent.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from agents.errors import GameActionError
from agents.proximity_engine import ProximityView, evaluate
from config import Settings, settings as default_settings
from models.game import (
    AlertType, EventType, GameSnapshot, GameStatus, ObjectivePin, PinStatus, Player,
    PlayerState, Role, Tunables, utcnow,
)
from services.realtime import (
    RealtimeChannel, alerts_path, events_path, pin_path, player_path,
)
from utils.geo import distance_meters

logger = logging.getLogger(__name__)


# ── Pure transition helpers ───────────────────────────────────────────────────

def capture_updates(victim: Player, now: datetime, tunables: Tunables) -> Dict[str, Any]:
    """Fields a capture writes onto the victim (minus channel sentinels)."""
    downs = victim.downs + 1
    state = PlayerState.ELIMINATED if downs >= tunables.max_downs else PlayerState.DOWNED
    return {
        "downs": downs,
        "state": state.value,
        "lastRevealUntil": now + tunables.reveal_duration,
        "cooldownUntil": now + tunables.rescue_cooldown,
    }


def rescue_updates(now: datetime, tunables: Tunables) -> Dict[str, Any]:
    # downs is deliberately left alone; only a running-start reset clears it
    return {
        "state": PlayerState.ACTIVE.value,
        "lastRevealUntil": None,
        "cooldownUntil": now + tunables.rescue_cooldown,
    }


def all_runners_neutralized(snapshot: GameSnapshot) -> bool:
    runners = [p for p in snapshot.players if p.active and p.role == Role.RUNNER]
    return bool(runners) and all(p.effective_state != PlayerState.ACTIVE for p in runners)


def all_pins_cleared(snapshot: GameSnapshot) -> bool:
    return bool(snapshot.pins) and all(pin.is_cleared for pin in snapshot.pins)


class CaptureRescueStateMachine:

    def __init__(
        self,
        channel: RealtimeChannel,
        store,
        lifecycle,
        settings: Settings = default_settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._channel = channel
        self._store = store
        self._lifecycle = lifecycle
        self._settings = settings
        self._clock = clock

    @property
    def game_id(self) -> str:
        return self._store.game_id

    def _tunables(self) -> Tunables:
        return Tunables.resolve(self._store.snapshot.game, self._settings)

    def _view(self, now: datetime) -> ProximityView:
        return evaluate(self._store.snapshot, self._store.uid, now, self._tunables())

    def _require_running(self, snapshot: GameSnapshot) -> None:
        if snapshot.game is None or snapshot.game.status != GameStatus.RUNNING:
            raise GameActionError("Game is not running")

    def _distance_between(self, snapshot: GameSnapshot, a_uid: str, b_uid: str) -> Optional[float]:
        a, b = snapshot.location(a_uid), snapshot.location(b_uid)
        if a is None or b is None:
            return None
        return distance_meters(a.point, b.point)

    # ── Capture ───────────────────────────────────────────────────────────────

    async def capture(self, victim_uid: Optional[str] = None) -> Player:
        """
        Down the given runner, or the current capture target when none is named.
        Returns the victim as it now reads locally.
        """
        snapshot = self._store.snapshot
        self._require_running(snapshot)
        now = self._clock()
        tunables = self._tunables()
        attacker_uid = self._store.uid
        attacker = snapshot.player(attacker_uid)
        if attacker is None or not attacker.active or attacker.role != Role.ONI:
            raise GameActionError("Only an active oni can capture")

        if victim_uid is None:
            target = self._view(now).capture_target
            if target is None:
                raise GameActionError("No runner in capture range")
            victim_uid = target.id

        victim = snapshot.player(victim_uid)
        distance = self._distance_between(snapshot, attacker_uid, victim_uid)
        if (
            victim is None
            or not victim.active
            or victim.role != Role.RUNNER
            or victim.effective_state != PlayerState.ACTIVE
            or victim.in_cooldown(now)
            or distance is None
            or distance > tunables.capture_radius_m
        ):
            raise GameActionError(f"{victim_uid} cannot be captured right now")

        updates = capture_updates(victim, now, tunables)
        try:
            await self._channel.write(player_path(self.game_id, victim_uid), {
                **updates,
                "lastDownAt": self._channel.server_timestamp(),
                "stats": {"capturedTimes": self._channel.increment(1)},
            })
        except Exception as exc:
            logger.warning(f"[{self.game_id}] capture of {victim_uid} by {attacker_uid} failed: {exc}")
            raise GameActionError("Capture failed, try again", status_code=502) from exc

        eliminated = updates["state"] == PlayerState.ELIMINATED.value
        logger.info(
            f"[{self.game_id}] {attacker_uid} captured {victim_uid} "
            f"(downs={updates['downs']}{', eliminated' if eliminated else ''})"
        )

        # Attacker stats are a second, independent write; a failure here leaves
        # the capture itself in place.
        try:
            await self._channel.write(player_path(self.game_id, attacker_uid), {
                "stats": {"captures": self._channel.increment(1)},
            })
        except Exception:
            logger.warning(f"[{self.game_id}] stats update for {attacker_uid} failed", exc_info=True)

        await self._send_alert(victim_uid, AlertType.CAPTURED, distance_m=distance, meta={
            "byUid": attacker_uid,
            "downs": updates["downs"],
            "state": updates["state"],
        })
        await self._record_event(
            EventType.ELIMINATION if eliminated else EventType.CAPTURE,
            actorUid=attacker_uid, targetUid=victim_uid, data={"downs": updates["downs"]},
        )

        captured = victim.model_copy(update={
            "downs": updates["downs"],
            "state": PlayerState(updates["state"]),
            "last_down_at": now,
            "last_reveal_until": updates["lastRevealUntil"],
            "cooldown_until": updates["cooldownUntil"],
        })
        after = snapshot.model_copy(update={
            "players_by_id": {**snapshot.players_by_id, victim_uid: captured},
        })
        if all_runners_neutralized(after):
            await self._end(Role.ONI, "all_runners_captured")
        return captured

    # ── Rescue ────────────────────────────────────────────────────────────────

    async def rescue(self, target_uid: Optional[str] = None) -> Player:
        snapshot = self._store.snapshot
        self._require_running(snapshot)
        now = self._clock()
        tunables = self._tunables()
        rescuer_uid = self._store.uid
        rescuer = snapshot.player(rescuer_uid)
        if (
            rescuer is None
            or not rescuer.active
            or rescuer.role != Role.RUNNER
            or rescuer.effective_state != PlayerState.ACTIVE
        ):
            raise GameActionError("Only an active runner can rescue")

        if target_uid is None:
            target = self._view(now).rescue_target
            if target is None:
                raise GameActionError("No downed runner in rescue range")
            target_uid = target.id

        downed = snapshot.player(target_uid)
        distance = self._distance_between(snapshot, rescuer_uid, target_uid)
        if (
            downed is None
            or not downed.active
            or downed.role != Role.RUNNER
            or downed.effective_state != PlayerState.DOWNED
            or distance is None
            or distance > tunables.rescue_radius_m
        ):
            raise GameActionError(f"{target_uid} cannot be rescued right now")

        updates = rescue_updates(now, tunables)
        try:
            await self._channel.write(player_path(self.game_id, target_uid), {
                **updates,
                "lastRescuedAt": self._channel.server_timestamp(),
            })
        except Exception as exc:
            logger.warning(f"[{self.game_id}] rescue of {target_uid} by {rescuer_uid} failed: {exc}")
            raise GameActionError("Rescue failed, try again", status_code=502) from exc

        logger.info(f"[{self.game_id}] {rescuer_uid} rescued {target_uid} (downs={downed.downs})")
        await self._send_alert(target_uid, AlertType.RESCUED, distance_m=distance, meta={"byUid": rescuer_uid})
        await self._record_event(EventType.RESCUE, actorUid=rescuer_uid, targetUid=target_uid)

        return downed.model_copy(update={
            "state": PlayerState.ACTIVE,
            "last_rescued_at": now,
            "last_reveal_until": None,
            "cooldown_until": updates["cooldownUntil"],
        })

    # ── Objectives ────────────────────────────────────────────────────────────

    async def clear_objective(self, pin_id: Optional[str] = None) -> ObjectivePin:
        snapshot = self._store.snapshot
        self._require_running(snapshot)
        now = self._clock()
        tunables = self._tunables()
        uid = self._store.uid
        me = snapshot.player(uid)
        if me is None or not me.active or me.role != Role.RUNNER or me.effective_state != PlayerState.ACTIVE:
            raise GameActionError("Only an active runner can clear objectives")

        if pin_id is None:
            target = self._view(now).objective_target
            if target is None:
                raise GameActionError("No objective in range")
            pin_id = target.id

        pin = next((p for p in snapshot.pins if p.id == pin_id), None)
        my_loc = snapshot.location(uid)
        if (
            pin is None
            or pin.is_cleared
            or my_loc is None
            or distance_meters(my_loc.point, pin.point) > tunables.capture_radius_m
        ):
            raise GameActionError(f"Objective {pin_id} cannot be cleared right now")

        try:
            await self._channel.write(pin_path(self.game_id, pin_id), {
                "status": PinStatus.CLEARED.value,
                "cleared": True,
                "clearedBy": uid,
                "clearedAt": self._channel.server_timestamp(),
            })
        except Exception as exc:
            logger.warning(f"[{self.game_id}] clearing {pin_id} by {uid} failed: {exc}")
            raise GameActionError("Could not clear the objective, try again", status_code=502) from exc

        logger.info(f"[{self.game_id}] {uid} cleared objective {pin_id}")
        try:
            await self._channel.write(player_path(self.game_id, uid), {
                "stats": {"generatorsCleared": self._channel.increment(1)},
            })
        except Exception:
            logger.warning(f"[{self.game_id}] stats update for {uid} failed", exc_info=True)
        await self._record_event(EventType.OBJECTIVE_CLEARED, actorUid=uid, data={"pinId": pin_id})

        cleared = pin.model_copy(update={"status": PinStatus.CLEARED, "cleared_by": uid, "cleared_at": now})
        after = snapshot.model_copy(update={
            "pins": [cleared if p.id == pin_id else p for p in snapshot.pins],
        })
        if all_pins_cleared(after):
            await self._end(Role.RUNNER, "all_objectives_cleared")
        return cleared

    # ── Side effects ──────────────────────────────────────────────────────────

    async def _end(self, winner: Role, reason: str) -> None:
        try:
            await self._lifecycle.end_game(winner, reason)
        except Exception:
            logger.warning(f"[{self.game_id}] win-condition end ({reason}) failed", exc_info=True)

    async def _send_alert(
        self,
        to_uid: str,
        alert_type: AlertType,
        distance_m: Optional[float] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        try:
            await self._channel.add(alerts_path(self.game_id), {
                "toUid": to_uid,
                "type": alert_type.value,
                "distanceM": distance_m,
                "at": self._channel.server_timestamp(),
                "meta": meta or {},
            })
        except Exception:
            logger.warning(f"[{self.game_id}] {alert_type.value} alert to {to_uid} failed", exc_info=True)

    async def _record_event(self, event_type: EventType, **fields) -> None:
        try:
            await self._channel.add(events_path(self.game_id), {
                "type": event_type.value,
                "at": self._channel.server_timestamp(),
                **fields,
            })
        except Exception:
            logger.warning(f"[{self.game_id}] event {event_type.value} not recorded", exc_info=True)
