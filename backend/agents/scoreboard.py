"""
Scoreboard — HUD counters and end-of-game results derived from a snapshot.
"""
from typing import Optional

from pydantic import BaseModel

from models.game import GameSnapshot, Player, PlayerState, Role


class PersonalResult(BaseModel):
    uid: str
    nickname: str
    role: Role
    metric_label: str
    metric_value: int
    downs: int
    state: PlayerState


class GameSummary(BaseModel):
    oni_count: int = 0
    runner_count: int = 0
    active_runners: int = 0
    downed_runners: int = 0
    eliminated_runners: int = 0
    pins_cleared: int = 0
    pins_total: int = 0
    winner: Optional[Role] = None
    ended_reason: Optional[str] = None


def personal_result(player: Player) -> PersonalResult:
    # Oni are scored on captures, runners on objectives cleared.
    if player.role == Role.ONI:
        label, value = "captures", player.stats.captures
    else:
        label, value = "generatorsCleared", player.stats.generators_cleared
    return PersonalResult(
        uid=player.uid,
        nickname=player.nickname,
        role=player.role,
        metric_label=label,
        metric_value=value,
        downs=player.downs,
        state=player.effective_state,
    )


def game_summary(snapshot: GameSnapshot, pin_target: Optional[int] = None) -> GameSummary:
    summary = GameSummary()
    for player in snapshot.players:
        if not player.active:
            continue
        if player.role == Role.ONI:
            summary.oni_count += 1
            continue
        summary.runner_count += 1
        state = player.effective_state
        if state == PlayerState.ACTIVE:
            summary.active_runners += 1
        elif state == PlayerState.DOWNED:
            summary.downed_runners += 1
        else:
            summary.eliminated_runners += 1

    summary.pins_cleared = sum(1 for pin in snapshot.pins if pin.is_cleared)
    summary.pins_total = pin_target if pin_target is not None else len(snapshot.pins)
    if snapshot.game is not None:
        summary.winner = snapshot.game.winner
        summary.ended_reason = snapshot.game.ended_reason
    return summary
