"""Read-only entitlement query."""

from fastapi import APIRouter, Depends, Query, Request

from captionai.core.deps import get_gate
from captionai.core.errors import ValidationError
from captionai.core.logging import get_request_id
from captionai.features.entitlements.identity import normalize_identity
from captionai.features.entitlements.service import EntitlementGate

router = APIRouter(prefix="/api", tags=["entitlements"])


@router.get("/entitlements")
async def get_entitlements(
    request: Request,
    email: str = Query(...),
    gate: EntitlementGate = Depends(get_gate),
):
    """
    Report entitlement state for an email without touching it.

    Returns:
        {"isSubscribed": bool, "isVip": bool, "remainingFreeUses": int | "unlimited"}
    """
    try:
        identity = normalize_identity(email)
    except ValueError as e:
        raise ValidationError(str(e), request_id=getattr(request.state, "request_id", None) or get_request_id())

    decision = gate.status(identity)
    return {
        "isSubscribed": decision.subscribed,
        "isVip": decision.is_vip,
        "remainingFreeUses": "unlimited" if decision.remaining is None else decision.remaining,
    }
