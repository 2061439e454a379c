"""Challenge routes: lifecycle, participation, progress and leaderboards.

Only the creator (or an admin) may activate a challenge. Progress views
are limited to the participant, the creator and admins.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user_id, is_admin, require_admin
from app.exceptions import ForbiddenError
from app.logging_config import get_logger
from db.models import Challenge, ChallengeParticipant
from db.session import get_db_session
from services.challenges import ChallengeDraft, ChallengeService

logger = get_logger(__name__)
router = APIRouter()


class JoinRequest(BaseModel):
    course_id: Optional[str] = Field(None, description="Required for course challenges")


class ProgressRequest(BaseModel):
    progress: dict[str, int]


class ChallengeResponse(BaseModel):
    data: Any
    meta: dict[str, Any] = Field(default_factory=dict)


def challenge_payload(challenge: Challenge) -> dict[str, Any]:
    return {
        "id": challenge.id,
        "name": challenge.name,
        "description": challenge.description,
        "type": challenge.type,
        "status": challenge.status,
        "criteria": challenge.criteria,
        "rewards": challenge.rewards,
        "course_id": challenge.course_id,
        "created_by": challenge.created_by,
        "start_date": challenge.start_date.isoformat() if challenge.start_date else None,
        "end_date": challenge.end_date.isoformat() if challenge.end_date else None,
    }


def participant_payload(participant: ChallengeParticipant) -> dict[str, Any]:
    return {
        "challenge_id": participant.challenge_id,
        "user_id": participant.user_id,
        "course_id": participant.course_id,
        "status": participant.status,
        "progress": participant.progress,
        "points": participant.points,
        "rank": participant.rank,
        "completed_at": (
            participant.completed_at.isoformat() if participant.completed_at else None
        ),
    }


@router.post("/challenges", response_model=ChallengeResponse, status_code=201)
async def create_challenge(
    draft: ChallengeDraft,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    challenge = await ChallengeService(session).create_challenge(user_id, draft)
    return ChallengeResponse(data=challenge_payload(challenge))


@router.post(
    "/challenges/process",
    response_model=ChallengeResponse,
    dependencies=[Depends(require_admin)],
)
async def process_challenges(
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    """Activate due drafts and close expired challenges."""
    service = ChallengeService(session)
    activated = await service.auto_activate_challenges()
    expired = await service.expire_challenges()
    return ChallengeResponse(data={"activated": activated, "expired": expired})


@router.get("/challenges/{challenge_id}", response_model=ChallengeResponse)
async def get_challenge(
    challenge_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    challenge = await ChallengeService(session).get_challenge(challenge_id)
    return ChallengeResponse(data=challenge_payload(challenge))


@router.post("/challenges/{challenge_id}/activate", response_model=ChallengeResponse)
async def activate_challenge(
    challenge_id: str,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    service = ChallengeService(session)
    challenge = await service.get_challenge(challenge_id)
    if challenge.created_by != caller_id and not admin:
        raise ForbiddenError("Only the creator can activate a challenge")
    await service.activate_challenge(challenge_id)
    return ChallengeResponse(data=challenge_payload(challenge))


@router.post("/challenges/{challenge_id}/join", response_model=ChallengeResponse)
async def join_challenge(
    challenge_id: str,
    request: JoinRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    participant = await ChallengeService(session).join_challenge(
        challenge_id, user_id, request.course_id
    )
    return ChallengeResponse(data=participant_payload(participant))


@router.post("/challenges/{challenge_id}/leave", response_model=ChallengeResponse)
async def leave_challenge(
    challenge_id: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    await ChallengeService(session).leave_challenge(challenge_id, user_id)
    return ChallengeResponse(data={"status": "left"}, meta={"challenge_id": challenge_id})


@router.post("/challenges/{challenge_id}/progress", response_model=ChallengeResponse)
async def update_progress(
    challenge_id: str,
    request: ProgressRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    participant = await ChallengeService(session).update_challenge_progress(
        challenge_id, user_id, request.progress
    )
    return ChallengeResponse(data=participant_payload(participant))


@router.get("/challenges/{challenge_id}/progress/{user_id}", response_model=ChallengeResponse)
async def get_progress(
    challenge_id: str,
    user_id: str,
    caller_id: str = Depends(get_current_user_id),
    admin: bool = Depends(is_admin),
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    service = ChallengeService(session)
    challenge = await service.get_challenge(challenge_id)
    if caller_id not in (user_id, challenge.created_by) and not admin:
        raise ForbiddenError("Cannot view another participant's progress")
    participant = await service.get_participant(challenge_id, user_id)
    completed = await service.check_challenge_completion(challenge_id, user_id)
    return ChallengeResponse(
        data=participant_payload(participant), meta={"criteria_met": completed}
    )


@router.get("/challenges/{challenge_id}/leaderboard", response_model=ChallengeResponse)
async def challenge_leaderboard(
    challenge_id: str,
    session: AsyncSession = Depends(get_db_session),
) -> ChallengeResponse:
    standings = await ChallengeService(session).get_challenge_leaderboard(challenge_id)
    return ChallengeResponse(
        data=[s.model_dump(mode="json") for s in standings],
        meta={"challenge_id": challenge_id, "participants": len(standings)},
    )
