"""Custom exception classes for Learnboard.

All exceptions follow the Learnboard error format:
{
    "error": {
        "code": "LB_ERROR_CODE",
        "message": "Human-readable message",
        "details": {}  # optional
    }
}
"""

from __future__ import annotations

from typing import Any


class LBBaseError(Exception):
    """Base exception for Learnboard."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class UserNotFoundError(LBBaseError):
    """User missing, or missing the score record a view needs."""

    def __init__(self, message: str = "User not found") -> None:
        super().__init__(
            code="USER_NOT_FOUND",
            message=message,
            status_code=404,
        )


class ScoreNotFoundError(LBBaseError):
    """User has no global Score record."""

    def __init__(self) -> None:
        super().__init__(
            code="SCORE_NOT_FOUND",
            message="User has no score record",
            status_code=404,
        )


class GroupNotFoundError(LBBaseError):
    """Group not found or deleted."""

    def __init__(self, message: str = "Group not found") -> None:
        super().__init__(
            code="GROUP_NOT_FOUND",
            message=message,
            status_code=404,
        )


class CourseNotFoundError(LBBaseError):
    """Course not found or deleted."""

    def __init__(self) -> None:
        super().__init__(
            code="COURSE_NOT_FOUND",
            message="Course not found",
            status_code=404,
        )


class ProjectNotFoundError(LBBaseError):
    """Project not found."""

    def __init__(self) -> None:
        super().__init__(
            code="PROJECT_NOT_FOUND",
            message="Project not found",
            status_code=404,
        )


class BadgeNotFoundError(LBBaseError):
    """Badge not found."""

    def __init__(self) -> None:
        super().__init__(
            code="BADGE_NOT_FOUND",
            message="Badge not found",
            status_code=404,
        )


class NotGroupMemberError(LBBaseError):
    """User is not an active member of the group."""

    def __init__(self) -> None:
        super().__init__(
            code="NOT_GROUP_MEMBER",
            message="User is not a member of this group",
            status_code=404,
        )


class ChallengeNotFoundError(LBBaseError):
    """Challenge not found or deleted."""

    def __init__(self) -> None:
        super().__init__(
            code="CHALLENGE_NOT_FOUND",
            message="Challenge not found",
            status_code=404,
        )


class NotChallengeParticipantError(LBBaseError):
    """User has not joined the challenge, or has left it."""

    def __init__(self) -> None:
        super().__init__(
            code="NOT_CHALLENGE_PARTICIPANT",
            message="User is not a participant in this challenge",
            status_code=404,
        )


class ForbiddenError(LBBaseError):
    """Caller may not act on another user's data."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(
            code="FORBIDDEN",
            message=message,
            status_code=403,
        )


class RateLimitError(LBBaseError):
    """Application rate limit exceeded."""

    def __init__(self, limit_type: str, retry_after: int = 60) -> None:
        super().__init__(
            code="RATE_LIMIT_EXCEEDED",
            message=f"Rate limit exceeded for {limit_type}. Try again later.",
            status_code=429,
            details={"retry_after_seconds": retry_after, "limit_type": limit_type},
        )


class ValidationError(LBBaseError):
    """Input validation error."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="VALIDATION_ERROR",
            message=message,
            status_code=422,
            details=details,
        )
