"""API v1 router aggregation.

Combines all v1 route modules into a single router.
"""

from __future__ import annotations

from fastapi import APIRouter

from api.v1.routes.analytics import router as analytics_router
from api.v1.routes.badges import router as badges_router
from api.v1.routes.challenges import router as challenges_router
from api.v1.routes.courses import router as courses_router
from api.v1.routes.groups import router as groups_router
from api.v1.routes.performance import router as performance_router
from api.v1.routes.scores import router as scores_router

api_v1_router = APIRouter()

api_v1_router.include_router(scores_router, tags=["Scores"])
api_v1_router.include_router(groups_router, tags=["Groups"])
api_v1_router.include_router(courses_router, tags=["Courses"])
api_v1_router.include_router(analytics_router, tags=["Analytics"])
api_v1_router.include_router(performance_router, tags=["Performance"])
api_v1_router.include_router(badges_router, tags=["Badges"])
api_v1_router.include_router(challenges_router, tags=["Challenges"])
