"""Admin routes: escalation reviews, follow-ups, audit trail.

Every endpoint requires an administrator; the role check lives in
WellbeingService so the CLI and the API share it.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from vigil.liveness.engine import WellbeingService
from vigil.liveness.models import Actor

from .auth import get_actor

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin", tags=["admin"])


# ── Request models ───────────────────────────────────────────────────────

class DecisionBody(BaseModel):
    decision: str  # approved | rejected
    notes: str | None = None


class ActiveBody(BaseModel):
    active: bool


# ── Helper ───────────────────────────────────────────────────────────────

def _get_service(request: Request) -> WellbeingService:
    return request.app.state.service  # type: ignore[no-any-return]


# ── Reviews ──────────────────────────────────────────────────────────────

@admin_router.get("/reviews")
def list_reviews(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Pending reviews, oldest first."""
    reviews = _get_service(request).list_pending_reviews(actor)
    return {"reviews": [r.to_dict() for r in reviews], "count": len(reviews)}


@admin_router.post("/reviews/{review_id}/decision")
def decide_review(
    review_id: str, body: DecisionBody, request: Request, actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    """Approve or reject. Approval queues nominee notifications in the background."""
    result = _get_service(request).decide_review(review_id, body.decision, actor, body.notes)
    return {
        "review": result.review.to_dict(),
        "dispatch_queued": result.dispatch is not None,
    }


@admin_router.get("/reviews/{review_id}/attempts")
def list_attempts(review_id: str, request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    attempts = _get_service(request).list_attempts(review_id, actor)
    return {"attempts": [a.to_dict() for a in attempts], "count": len(attempts)}


@admin_router.post("/users/{user_id}/reopen")
def reopen_review(user_id: str, request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Open a fresh review for a user still escalated after a rejection."""
    review = _get_service(request).reopen_review(user_id, actor)
    return review.to_dict()


@admin_router.put("/users/{user_id}/active")
def set_active(
    user_id: str, body: ActiveBody, request: Request, actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    profile = _get_service(request).set_active(user_id, body.active, actor)
    return profile.to_dict()


# ── Follow-up / audit / stats ────────────────────────────────────────────

@admin_router.get("/followups")
def list_followups(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Nominee deliveries that exhausted their retries."""
    items = _get_service(request).list_followups(actor)
    return {"followups": items, "count": len(items)}


@admin_router.get("/audit")
def audit_log(
    request: Request,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
    actor: Actor = Depends(get_actor),
) -> dict[str, Any]:
    entries = _get_service(request).audit_log(actor, entity_type, entity_id, min(max(limit, 1), 1000))
    return {"entries": [e.to_dict() for e in entries], "count": len(entries)}


@admin_router.get("/stats")
def stats(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    return _get_service(request).stats(actor)


@admin_router.post("/sweep")
def run_sweep(request: Request, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
    """Run one liveness sweep now."""
    report = _get_service(request).run_sweep(actor)
    logger.info("Manual sweep triggered by %s", actor.id)
    return report.to_dict()
