from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from ..container import Services
from ..models.account import CreditBalance
from ..models.api_models import (
    AllocateSubscriptionRequest,
    AllocateTopUpRequest,
    AllocateTrialRequest,
    CapResponse,
    CheckCreditsRequest,
    DeductCreditsRequest,
    ExpireTrialRequest,
    ExpireTrialResponse,
    MergeTrialRequest,
    RetentionBonusRequest,
    WebhookResponse,
)
from ..models.credits import (
    AllocateResult,
    CreditCheckResult,
    DeductResult,
    MergeResult,
    ReconciliationReport,
    UsageHistory,
)
from ..models.events import WebhookOutcome


router = APIRouter(prefix="/credits", tags=["credits"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_services(request: Request) -> Services:
    return request.app.state.services


@router.get("/balance/{user_id}", response_model=CreditBalance)
async def get_balance(user_id: str, services: Services = Depends(get_services)) -> CreditBalance:
    return await services.credits.get_balance(user_id)


@router.post("/check", response_model=CreditCheckResult)
async def check_credits(
    payload: CheckCreditsRequest, services: Services = Depends(get_services)
) -> CreditCheckResult:
    return await services.credits.check_credits(payload.user_id, payload.app_key, payload.operation)


@router.post("/deduct", response_model=DeductResult)
async def deduct_credits(
    payload: DeductCreditsRequest, services: Services = Depends(get_services)
) -> DeductResult:
    return await services.credits.deduct_credits(
        payload.user_id,
        payload.app_key,
        payload.operation,
        reference_id=payload.reference_id,
    )


@router.post("/allocate/subscription", response_model=AllocateResult)
async def allocate_subscription(
    payload: AllocateSubscriptionRequest, services: Services = Depends(get_services)
) -> AllocateResult:
    return await services.credits.allocate_subscription_credits(
        payload.user_id, payload.amount, payload.app_key, reference_id=payload.reference_id
    )


@router.post("/allocate/topup", response_model=AllocateResult)
async def allocate_topup(
    payload: AllocateTopUpRequest, services: Services = Depends(get_services)
) -> AllocateResult:
    return await services.credits.allocate_topup_credits(
        payload.user_id, payload.amount, payload.pack_name, reference_id=payload.reference_id
    )


@router.post("/allocate/retention-bonus", response_model=AllocateResult)
async def allocate_retention_bonus(
    payload: RetentionBonusRequest, services: Services = Depends(get_services)
) -> AllocateResult:
    return await services.credits.allocate_retention_bonus(
        payload.user_id, payload.amount, reference_id=payload.reference_id
    )


@router.post("/allocate/trial", response_model=AllocateResult)
async def allocate_trial(
    payload: AllocateTrialRequest, services: Services = Depends(get_services)
) -> AllocateResult:
    return await services.trials.allocate_trial_credits(
        payload.user_id,
        payload.amount,
        payload.app_key,
        payload.trial_ends_at,
        reference_id=payload.reference_id,
    )


@router.post("/trial/expire", response_model=ExpireTrialResponse)
async def expire_trial(
    payload: ExpireTrialRequest, services: Services = Depends(get_services)
) -> ExpireTrialResponse:
    expired = await services.trials.expire_trial_credits(
        payload.user_id, payload.app_key, reason=payload.reason
    )
    return ExpireTrialResponse(user_id=payload.user_id, expired=expired)


@router.post("/trial/merge", response_model=MergeResult)
async def merge_trial(
    payload: MergeTrialRequest, services: Services = Depends(get_services)
) -> MergeResult:
    return await services.trials.merge_trial_credits(payload.user_id, payload.app_key)


@router.post("/cap/{user_id}/recalculate", response_model=CapResponse)
async def recalculate_cap(user_id: str, services: Services = Depends(get_services)) -> CapResponse:
    cap = await services.subscriptions.recalculate_subscription_cap(user_id)
    return CapResponse(user_id=user_id, cap=cap)


@router.get("/history/{user_id}", response_model=UsageHistory)
async def get_history(
    user_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    services: Services = Depends(get_services),
) -> UsageHistory:
    return await services.credits.get_usage_history(user_id, limit=limit, offset=offset)


@router.get("/reconcile/{user_id}", response_model=ReconciliationReport)
async def reconcile(user_id: str, services: Services = Depends(get_services)) -> ReconciliationReport:
    return await services.reconciliation.check_account(user_id)


@webhook_router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
    payload = await request.body()
    signature = request.headers.get("Stripe-Signature")
    result = await services.webhooks.handle_stripe_webhook(payload, signature)
    if result.outcome == WebhookOutcome.REJECTED:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": result.message})
    return WebhookResponse(received=True, duplicate=result.outcome == WebhookOutcome.DUPLICATE)
