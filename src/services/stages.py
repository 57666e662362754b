from __future__ import annotations

from typing import List, Optional, Sequence, Union

from models import STAGE_ORDER, ParticipantResponse, Stage
from services.errors import InvalidInputError, PermissionDeniedError


def parse_stage(value: Union[str, Stage]) -> Stage:
    try:
        return Stage(value)
    except ValueError:
        raise InvalidInputError(f"unknown stage: {value!r}")


def stage_index(stage: Stage) -> int:
    return STAGE_ORDER.index(stage)


def next_stage(stage: Stage) -> Optional[Stage]:
    idx = stage_index(stage)
    if idx + 1 >= len(STAGE_ORDER):
        return None
    return STAGE_ORDER[idx + 1]


def has_reached(stage: Stage, target: Stage) -> bool:
    return stage_index(stage) >= stage_index(target)


def advance(response: ParticipantResponse, now: int) -> ParticipantResponse:
    """Move one step forward; a participant already at the end stays there."""
    nxt = next_stage(response.current_stage)
    if nxt is None:
        return response
    return response.model_copy(update={"current_stage": nxt, "updated_at": max(now, response.created_at)})


def jump(response: ParticipantResponse, target: Stage, actor_id: str, now: int) -> ParticipantResponse:
    """Set an explicit stage, backwards included. Only the owner may move themselves."""
    if actor_id != response.user_id:
        raise PermissionDeniedError("participants can only change their own stage")
    if response.current_stage == target:
        return response
    return response.model_copy(update={"current_stage": target, "updated_at": max(now, response.created_at)})


def waiting_on(responses: Sequence[ParticipantResponse]) -> List[str]:
    """Participants not yet at the restaurant stage."""
    return [r.user_id for r in responses if not has_reached(r.current_stage, Stage.RESTAURANTS)]


def group_ready_for_restaurants(responses: Sequence[ParticipantResponse]) -> bool:
    """Derived gate for the shared restaurant fetch: solo sessions, or everyone caught up."""
    if len(responses) <= 1:
        return True
    return not waiting_on(responses)
