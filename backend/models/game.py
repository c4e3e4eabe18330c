from pydantic import (
    AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator,
)
from pydantic.alias_generators import to_camel
from typing import Optional, List, Dict, Any, TYPE_CHECKING
from enum import Enum
from datetime import datetime, timedelta, timezone

from utils.geo import LatLng

if TYPE_CHECKING:
    from config import Settings


def utcnow() -> datetime:
    """Timezone-aware UTC datetime (replaces deprecated datetime.utcnow)."""
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GameStatus(str, Enum):
    PENDING = "pending"
    COUNTDOWN = "countdown"
    RUNNING = "running"
    ENDED = "ended"


# Forward-only order; a status may only move to a later index.
STATUS_ORDER: List[GameStatus] = [
    GameStatus.PENDING,
    GameStatus.COUNTDOWN,
    GameStatus.RUNNING,
    GameStatus.ENDED,
]


class Role(str, Enum):
    ONI = "oni"        # chaser
    RUNNER = "runner"


class PlayerState(str, Enum):
    ACTIVE = "active"
    DOWNED = "downed"
    ELIMINATED = "eliminated"


class PinStatus(str, Enum):
    PENDING = "pending"
    CLEARING = "clearing"
    CLEARED = "cleared"


class AlertType(str, Enum):
    CAPTURED = "captured"
    RESCUED = "rescued"
    GAME_END = "game-end"


class EventType(str, Enum):
    GAME_START = "game-start"
    CAPTURE = "capture"
    ELIMINATION = "elimination"
    RESCUE = "rescue"
    OBJECTIVE_CLEARED = "objective-cleared"
    GAME_END = "game-end"


def _plain(value: Any) -> Any:
    # Stored documents carry enum values, not enum members.
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class DocumentModel(BaseModel):
    """Field names are snake_case in Python and camelCase in stored documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_document(self, **kwargs) -> Dict[str, Any]:
        kwargs.setdefault("mode", "python")
        return _plain(self.model_dump(by_alias=True, **kwargs))


# ── Documents ─────────────────────────────────────────────────────────────────

class PlayerStats(DocumentModel):
    captures: int = 0
    captured_times: int = 0
    generators_cleared: int = 0


class Player(DocumentModel):
    uid: str
    nickname: str = ""
    role: Role = Role.RUNNER
    active: bool = True              # soft-delete flag
    avatar_url: Optional[str] = None
    state: Optional[PlayerState] = None  # unset is read as active
    downs: int = 0
    last_down_at: Optional[datetime] = None
    last_rescued_at: Optional[datetime] = None
    last_reveal_until: Optional[datetime] = None
    cooldown_until: Optional[datetime] = None
    stats: PlayerStats = Field(default_factory=PlayerStats)

    @field_validator("last_down_at", "last_rescued_at", "last_reveal_until", "cooldown_until")
    @classmethod
    def ensure_utc(cls, value):
        return _as_utc(value)

    @property
    def effective_state(self) -> PlayerState:
        # Oni carry no down-counter; they are always active.
        if self.role == Role.ONI:
            return PlayerState.ACTIVE
        return self.state or PlayerState.ACTIVE

    def is_revealed(self, now: datetime) -> bool:
        return self.last_reveal_until is not None and now < self.last_reveal_until

    def in_cooldown(self, now: datetime) -> bool:
        return self.cooldown_until is not None and self.cooldown_until > now


class Location(DocumentModel):
    lat: float
    lng: float
    accuracy_m: float = Field(
        0.0,
        validation_alias=AliasChoices("accuracyM", "accM", "accuracy_m"),
        serialization_alias="accuracyM",
    )
    at: Optional[datetime] = None

    @field_validator("at")
    @classmethod
    def ensure_utc(cls, value):
        return _as_utc(value)

    @property
    def point(self):
        return LatLng(self.lat, self.lng)


class ObjectivePin(DocumentModel):
    id: str = ""
    lat: float
    lng: float
    status: PinStatus = PinStatus.PENDING
    cleared_by: Optional[str] = None
    cleared_at: Optional[datetime] = None

    @field_validator("cleared_at")
    @classmethod
    def ensure_utc(cls, value):
        return _as_utc(value)

    @model_validator(mode="before")
    @classmethod
    def resolve_legacy_cleared(cls, data: Any) -> Any:
        # Older pins carry only a boolean `cleared`; `cleared: true` always wins.
        if isinstance(data, dict) and "cleared" in data:
            data = dict(data)
            if data.pop("cleared"):
                data["status"] = PinStatus.CLEARED.value
            elif not data.get("status"):
                data["status"] = PinStatus.PENDING.value
        return data

    @property
    def is_cleared(self) -> bool:
        return self.status == PinStatus.CLEARED

    @property
    def point(self):
        return LatLng(self.lat, self.lng)


class Game(DocumentModel):
    id: str = ""
    status: GameStatus = GameStatus.PENDING
    owner_uid: str = ""
    start_at: Optional[datetime] = None
    countdown_start_at: Optional[datetime] = None
    countdown_duration_sec: Optional[int] = None
    game_duration_sec: Optional[int] = None
    capture_radius_m: Optional[float] = None
    rescue_radius_m: Optional[float] = None
    runner_see_killer_radius_m: Optional[float] = None
    killer_detect_runner_radius_m: Optional[float] = None
    runner_see_generator_radius_m: Optional[float] = None
    killer_see_generator_radius_m: Optional[float] = None
    pin_count: Optional[int] = None
    winner: Optional[Role] = None
    ended_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("start_at", "countdown_start_at", "created_at")
    @classmethod
    def ensure_utc(cls, value):
        return _as_utc(value)


class Alert(DocumentModel):
    id: str = ""
    to_uid: str
    type: str
    distance_m: Optional[float] = None
    at: Optional[datetime] = None
    meta: Dict[str, Any] = {}

    @field_validator("at")
    @classmethod
    def ensure_utc(cls, value):
        return _as_utc(value)


class GameEvent(DocumentModel):
    id: str = ""
    type: EventType
    actor_uid: Optional[str] = None
    target_uid: Optional[str] = None
    at: Optional[datetime] = None
    data: Dict[str, Any] = {}


# ── Derived values ────────────────────────────────────────────────────────────

class Tunables(BaseModel):
    """Game-level tunables with config defaults filled in."""

    capture_radius_m: float
    rescue_radius_m: float
    runner_see_killer_radius_m: float
    killer_detect_runner_radius_m: float
    runner_see_generator_radius_m: float
    killer_see_generator_radius_m: float
    max_downs: int
    reveal_duration: timedelta
    rescue_cooldown: timedelta
    countdown_duration_sec: int
    game_duration_sec: int
    pin_count: int

    @classmethod
    def resolve(cls, game: Optional[Game], settings: "Settings") -> "Tunables":
        def pick(name: str):
            value = getattr(game, name, None) if game is not None else None
            return value if value is not None else getattr(settings, name)

        return cls(
            capture_radius_m=pick("capture_radius_m"),
            rescue_radius_m=pick("rescue_radius_m"),
            runner_see_killer_radius_m=pick("runner_see_killer_radius_m"),
            killer_detect_runner_radius_m=pick("killer_detect_runner_radius_m"),
            runner_see_generator_radius_m=pick("runner_see_generator_radius_m"),
            killer_see_generator_radius_m=pick("killer_see_generator_radius_m"),
            max_downs=settings.max_downs,
            reveal_duration=timedelta(seconds=settings.reveal_duration_sec),
            rescue_cooldown=timedelta(seconds=settings.rescue_cooldown_sec),
            countdown_duration_sec=pick("countdown_duration_sec"),
            game_duration_sec=pick("game_duration_sec"),
            pin_count=pick("pin_count"),
        )


class GameSnapshot(BaseModel):
    """Read-only projection of one game as seen by one client."""

    game: Optional[Game] = None
    players_by_id: Dict[str, Player] = {}
    locations_by_id: Dict[str, Location] = {}
    alerts: List[Alert] = []
    pins: List[ObjectivePin] = []
    not_found: bool = False

    @property
    def players(self) -> List[Player]:
        return list(self.players_by_id.values())

    def player(self, uid: str) -> Optional[Player]:
        return self.players_by_id.get(uid)

    def location(self, uid: str) -> Optional[Location]:
        return self.locations_by_id.get(uid)


# ── HTTP request/response models ──────────────────────────────────────────────

class CreateGameRequest(BaseModel):
    owner_uid: str
    nickname: str = "Owner"
    avatar_url: Optional[str] = None
    capture_radius_m: Optional[float] = None
    rescue_radius_m: Optional[float] = None
    game_duration_sec: Optional[int] = None
    countdown_duration_sec: Optional[int] = None
    pin_count: Optional[int] = None


class CreateGameResponse(BaseModel):
    game_id: str
    owner_uid: str


class JoinGameRequest(BaseModel):
    uid: str
    nickname: str
    role: Role = Role.RUNNER
    avatar_url: Optional[str] = None


class JoinGameResponse(BaseModel):
    game_id: str
    uid: str
    role: Role
    is_owner: bool


class LocationFixRequest(BaseModel):
    lat: float
    lng: float
    accuracy_m: float = 0.0


class ActorRequest(BaseModel):
    uid: str


class CountdownRequest(BaseModel):
    uid: str
    duration_sec: Optional[int] = None


class OwnerTransferRequest(BaseModel):
    uid: str
    new_owner_uid: str


class RoleChangeRequest(BaseModel):
    uid: str
    target_uid: str
    role: Role
