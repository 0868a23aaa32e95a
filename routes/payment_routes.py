"""
Payment Routes
Order creation, receipt submission and owner-scoped status polling
"""

import logging

from fastapi import APIRouter, Depends, Request

from routes.dependencies import PaymentServices, get_caller, get_services, read_json_body
from utils.auth_tokens import AuthenticatedCaller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])


@router.post("/orders")
async def create_order(
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    payload = await read_json_body(request)
    order = services.orders.create_order(
        account_id=caller.account_id,
        kind=payload.get("kind"),
        amount=payload.get("amount"),
        bid_id=payload.get("bid_id"),
        contract_id=payload.get("contract_id"),
        idempotency_token=payload.get("idempotency_token"),
        is_admin=caller.is_admin,
    )
    return order


@router.get("/orders")
async def list_pending_orders(
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return {"orders": services.orders.get_pending_orders(caller.account_id)}


@router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return services.orders.get_order(caller.account_id, order_id, is_admin=caller.is_admin)


@router.post("/submissions")
async def create_submission(
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    payload = await read_json_body(request)
    result = services.orders.create_submission(
        account_id=caller.account_id,
        order_id=payload.get("order_id"),
        screenshot_url=payload.get("screenshot_url"),
        is_admin=caller.is_admin,
    )
    try:
        await services.queue.enqueue(result["submission_id"])
    except RuntimeError as e:
        # Stays in processing; the periodic recovery sweep picks it up
        logger.warning(f"⚠️ Submission {result['submission_id']} not enqueued: {e}")
    return {"submission_id": result["submission_id"], "status": result["status"]}


@router.get("/submissions/{submission_id}")
async def get_submission(
    submission_id: str,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return services.orders.get_submission(caller.account_id, submission_id, is_admin=caller.is_admin)
