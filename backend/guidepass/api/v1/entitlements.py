"""Entitlement read endpoints."""

from fastapi import APIRouter, Request
from pydantic import BaseModel

from guidepass.api.v1.deps import get_billing_service
from guidepass.auth import CurrentUser
from guidepass.models.ledger import CreditSummary

router = APIRouter(tags=["entitlements"])


class EntitlementResponse(BaseModel):
    """Entitlement snapshot as returned to clients."""

    has_unlimited_access: bool
    total_limit: int
    used: int
    remaining: int
    owned_package_ids: list[str]


@router.get("/entitlements", response_model=EntitlementResponse)
async def get_entitlements(request: Request, user: CurrentUser) -> EntitlementResponse:
    """Return what the authenticated account may currently do."""
    service = get_billing_service(request)
    snapshot = await service.get_entitlement_snapshot(user.id)
    return EntitlementResponse(
        has_unlimited_access=snapshot.has_unlimited_access,
        total_limit=snapshot.total_limit,
        used=snapshot.used,
        remaining=snapshot.remaining,
        owned_package_ids=sorted(snapshot.owned_package_ids),
    )


@router.get("/credits", response_model=CreditSummary)
async def get_credits(request: Request, user: CurrentUser) -> CreditSummary:
    """Return the credit ledger summary for the authenticated account."""
    service = get_billing_service(request)
    return await service.get_credit_summary(user.id)
