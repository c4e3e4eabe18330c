"""
Game State Store — fan-in of one game's realtime subscriptions into a single snapshot.

Subscriptions (opened by start(), closed by stop()):
  game       games/{id}                 → snapshot.game (None + not_found when missing)
  players    games/{id}/players         → snapshot.players_by_id
  locations  games/{id}/locations       → snapshot.locations_by_id
  alerts     games/{id}/alerts          → snapshot.alerts (toUid == self, newest first)
  pins       games/{id}/pins            → snapshot.pins

A push only replaces its slice when the parsed value differs from the current
one (deep equality). Unchanged pushes do not reach listeners, which keeps
proximity recomputation and view pushes from storming on redundant writes.

A push that fails to parse is logged and the slice keeps its last value.
"""
import logging
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from models.game import (
    Alert, Game, GameSnapshot, Location, ObjectivePin, Player,
)
from services.realtime import (
    RealtimeChannel, Unsubscribe,
    alerts_path, game_path, locations_path, pins_path, players_path,
)

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[GameSnapshot], None]


class GameStateStore:

    def __init__(self, channel: RealtimeChannel):
        self._channel = channel
        self.game_id: Optional[str] = None
        self.uid: Optional[str] = None
        self.is_ready = False
        self._snapshot = GameSnapshot()
        self._subs: Dict[str, Unsubscribe] = {}
        self._listeners: List[SnapshotListener] = []
        # Bumped on every start/stop; late pushes from an old generation are dropped.
        self._generation = 0

    @property
    def snapshot(self) -> GameSnapshot:
        return self._snapshot

    @property
    def is_subscribing(self) -> bool:
        return bool(self._subs)

    # ── Listeners ─────────────────────────────────────────────────────────────

    def add_listener(self, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self) -> None:
        snapshot = self._snapshot
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"[{self.game_id}] snapshot listener raised")

    # ── Identity & lifecycle ──────────────────────────────────────────────────

    def set_identity(self, game_id: str, uid: str) -> None:
        """Switch to another (game, player). Clears all cached data first."""
        if game_id == self.game_id and uid == self.uid:
            return
        self.stop()
        self.game_id = game_id
        self.uid = uid
        self.is_ready = False
        self._snapshot = GameSnapshot()
        logger.info(f"[{game_id}] store identity set to {uid}")
        self._emit()

    def start(self, game_id: Optional[str] = None, uid: Optional[str] = None) -> None:
        if game_id is not None:
            self.set_identity(game_id, uid or self.uid)
        if not self.game_id or not self.uid:
            return
        if self._subs:
            return

        self._generation += 1
        gen = self._generation
        gid = self.game_id

        # Registered before any subscribe call: channels may push synchronously.
        self._subs = {}
        self._subs["game"] = self._channel.subscribe(
            game_path(gid), partial(self._on_game, gen),
            on_error=partial(self._on_error, "game"),
        )
        self._subs["players"] = self._channel.subscribe(
            players_path(gid), partial(self._on_players, gen),
            on_error=partial(self._on_error, "players"),
        )
        self._subs["locations"] = self._channel.subscribe(
            locations_path(gid), partial(self._on_locations, gen),
            on_error=partial(self._on_error, "locations"),
        )
        self._subs["alerts"] = self._channel.subscribe(
            alerts_path(gid), partial(self._on_alerts, gen),
            where=("toUid", "==", self.uid),
            on_error=partial(self._on_error, "alerts"),
        )
        self._subs["pins"] = self._channel.subscribe(
            pins_path(gid), partial(self._on_pins, gen),
            on_error=partial(self._on_error, "pins"),
        )
        self.is_ready = True
        logger.info(f"[{gid}] store subscribed for {self.uid}")

    def stop(self) -> None:
        """Tear down every subscription. Safe to call repeatedly or before start()."""
        subs, self._subs = self._subs, {}
        if not subs:
            return
        self._generation += 1
        for name, unsubscribe in subs.items():
            try:
                unsubscribe()
            except Exception:
                logger.warning(f"[{self.game_id}] unsubscribe '{name}' failed", exc_info=True)
        logger.info(f"[{self.game_id}] store unsubscribed for {self.uid}")

    # ── Slice merging ─────────────────────────────────────────────────────────

    def _merge(self, gen: int, **updates: Any) -> None:
        if gen != self._generation:
            return
        changed = {k: v for k, v in updates.items() if getattr(self._snapshot, k) != v}
        if not changed:
            logger.debug(f"[{self.game_id}] redundant push ignored: {', '.join(updates)}")
            return
        self._snapshot = self._snapshot.model_copy(update=changed)
        self._emit()

    def _on_error(self, slice_name: str, exc: Exception) -> None:
        logger.warning(
            f"[{self.game_id}] {slice_name} push failed; keeping last value: {exc}"
        )

    def _on_game(self, gen: int, data: Optional[Dict[str, Any]]) -> None:
        if data is None:
            self._merge(gen, game=None, not_found=True)
            return
        game = Game.model_validate({**data, "id": self.game_id})
        self._merge(gen, game=game, not_found=False)

    def _on_players(self, gen: int, docs: Dict[str, Dict[str, Any]]) -> None:
        players = {
            doc_id: Player.model_validate({**data, "uid": doc_id})
            for doc_id, data in docs.items()
        }
        self._merge(gen, players_by_id=players)

    def _on_locations(self, gen: int, docs: Dict[str, Dict[str, Any]]) -> None:
        locations = {doc_id: Location.model_validate(data) for doc_id, data in docs.items()}
        self._merge(gen, locations_by_id=locations)

    def _on_alerts(self, gen: int, docs: Dict[str, Dict[str, Any]]) -> None:
        alerts = [Alert.model_validate({**data, "id": doc_id}) for doc_id, data in docs.items()]
        alerts.sort(key=lambda a: (a.at is not None, a.at.timestamp() if a.at else 0, a.id), reverse=True)
        self._merge(gen, alerts=alerts)

    def _on_pins(self, gen: int, docs: Dict[str, Dict[str, Any]]) -> None:
        pins = [ObjectivePin.model_validate({**data, "id": doc_id}) for doc_id, data in sorted(docs.items())]
        self._merge(gen, pins=pins)
