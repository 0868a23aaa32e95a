"""
Admin Routes
Manual review overrides, review queue, statistics, audit history, account holds and
platform settings
"""

import logging

from fastapi import APIRouter, Depends, Request

from routes.dependencies import PaymentServices, get_caller, get_services, read_json_body
from utils.auth_tokens import AuthenticatedCaller

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.post("/submissions/{submission_id}/approve")
async def approve_submission(
    submission_id: str,
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    payload = await read_json_body(request, required=False)
    return services.admin.approve_submission(
        submission_id, caller.account_id, notes=payload.get("notes"), is_admin=caller.is_admin,
    )


@router.post("/submissions/{submission_id}/reject")
async def reject_submission(
    submission_id: str,
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    payload = await read_json_body(request, required=False)
    return services.admin.reject_submission(
        submission_id,
        caller.account_id,
        reason=payload.get("reason"),
        notes=payload.get("notes"),
        is_admin=caller.is_admin,
    )


@router.get("/submissions/pending")
async def pending_submissions(
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return {"submissions": services.admin.get_pending_reviews(caller.account_id, is_admin=caller.is_admin)}


@router.get("/submissions/{submission_id}/audit")
async def submission_audit(
    submission_id: str,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return services.admin.get_submission_audit(submission_id, caller.account_id, is_admin=caller.is_admin)


@router.get("/stats")
async def payment_statistics(
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return services.admin.get_statistics(caller.account_id, is_admin=caller.is_admin)


@router.post("/accounts/{account_id}/suspend")
async def suspend_account(
    account_id: str,
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    services.admin.ensure_admin(caller.account_id, is_admin=caller.is_admin)
    payload = await read_json_body(request, required=False)
    reason = payload.get("reason") or "manual_hold"
    changed = services.ledger.suspend_account(account_id, str(reason), admin_id=caller.account_id)
    return {"account_id": account_id, "status": "suspended", "changed": changed}


@router.post("/accounts/{account_id}/unsuspend")
async def unsuspend_account(
    account_id: str,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    services.admin.ensure_admin(caller.account_id, is_admin=caller.is_admin)
    changed = services.ledger.unsuspend_account(account_id, admin_id=caller.account_id)
    return {"account_id": account_id, "status": "active", "changed": changed}


@router.get("/outstanding-fees")
async def outstanding_fees(
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    services.admin.ensure_admin(caller.account_id, is_admin=caller.is_admin)
    return services.ledger.list_outstanding_fees()


@router.get("/settings")
async def get_settings(
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    services.admin.ensure_admin(caller.account_id, is_admin=caller.is_admin)
    return services.settings.get_settings().to_document()


@router.put("/settings")
async def update_settings(
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    services.admin.ensure_admin(caller.account_id, is_admin=caller.is_admin)
    payload = await read_json_body(request)
    return services.settings.update_settings(payload, caller.account_id).to_document()
