"""Well-being routes for the signed-in user's own check-ins and settings."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from vigil.liveness.engine import WellbeingService
from vigil.liveness.models import Actor

from .auth import get_actor

logger = logging.getLogger(__name__)

wellbeing_router = APIRouter(prefix="/wellbeing", tags=["wellbeing"])


# ── Request models ───────────────────────────────────────────────────────

class RegisterBody(BaseModel):
    cadence: str | None = None
    threshold: int | None = None
    escalation_enabled: bool = True


class SettingsBody(BaseModel):
    cadence: str | None = None
    threshold: int | None = None
    escalation_enabled: bool | None = None
    expected_version: int | None = None


# ── Helper ───────────────────────────────────────────────────────────────

def _get_service(request: Request) -> WellbeingService:
    return request.app.state.service  # type: ignore[no-any-return]


# ── Endpoints ────────────────────────────────────────────────────────────

@wellbeing_router.post("/register")
def register(body: RegisterBody, request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Create the caller's liveness profile (no-op if it exists)."""
    profile = _get_service(request).register_profile(
        actor.id, body.cadence, body.threshold, body.escalation_enabled,
    )
    return profile.to_dict()


@wellbeing_router.post("/confirm")
def confirm(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Record an "I'm OK" check-in."""
    profile = _get_service(request).confirm_checkin(actor.id)
    return {"status": "confirmed", "profile": profile.to_dict()}


@wellbeing_router.get("/profile")
def get_profile(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    return _get_service(request).get_profile(actor.id)


@wellbeing_router.put("/settings")
def update_settings(
    body: SettingsBody, request: Request, actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Change cadence, threshold or escalation opt-in."""
    profile = _get_service(request).update_settings(
        actor.id,
        cadence=body.cadence,
        threshold=body.threshold,
        escalation_enabled=body.escalation_enabled,
        expected_version=body.expected_version,
    )
    return profile.to_dict()
