"""
Contract Routes
Marketplace hooks that bill or release platform fees as contracts are signed or cancelled
"""

import logging

from fastapi import APIRouter, Depends, Request

from routes.dependencies import PaymentServices, get_caller, get_services, read_json_body
from utils.auth_tokens import AuthenticatedCaller
from utils.payment_errors import PermissionDeniedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/contracts", tags=["contracts"])


@router.post("/{contract_id}/fee")
async def apply_contract_fee(
    contract_id: str,
    request: Request,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    payload = await read_json_body(request)
    payer_id = payload.get("payer_id") or caller.account_id
    if payer_id != caller.account_id and not caller.is_admin:
        raise PermissionDeniedError("Only admins can bill a fee to another account")
    return services.ledger.apply_contract_fee(
        account_id=payer_id,
        contract_id=contract_id,
        contract_price=payload.get("contract_price"),
        bid_id=payload.get("bid_id"),
        platform_fee=payload.get("platform_fee") if caller.is_admin else None,
    )


@router.post("/{contract_id}/cancel")
async def cancel_contract(
    contract_id: str,
    caller: AuthenticatedCaller = Depends(get_caller),
    services: PaymentServices = Depends(get_services),
):
    return services.ledger.cancel_contract(contract_id, caller.account_id, is_admin=caller.is_admin)
