"""
V1 API router aggregator: wires all endpoint modules together.
"""

from fastapi import APIRouter

from timekeeper.api.v1.endpoints import (admin, auth, corrections, health,
                                         timer_events)

api_router = APIRouter()

# Auth (admin / employee login, refresh, account management)
api_router.include_router(auth.router)

# Punch clock: append, correct, delete, memo, cancel END
api_router.include_router(timer_events.router)

# Field corrections and history
api_router.include_router(corrections.router)

# Approvals and audit view
api_router.include_router(admin.router)

api_router.include_router(health.router)
