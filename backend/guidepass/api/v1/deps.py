"""Shared router dependencies."""

from fastapi import HTTPException, Request

from guidepass.services.billing_service import BillingService


def get_billing_service(request: Request) -> BillingService:
    service = getattr(request.app.state, "billing_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service
