"""
Shared FastAPI dependencies: the service container and bearer-token authentication
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Header, Request
from sqlalchemy.orm import sessionmaker

from database import SessionLocal
from services.admin_payment_service import AdminPaymentService
from services.order_manager import OrderManager
from services.outstanding_fee_ledger import OutstandingFeeLedger
from services.platform_settings import PlatformSettingsService
from services.submission_pipeline import SubmissionPipeline
from services.submission_queue import SubmissionQueue
from utils.auth_tokens import AuthenticatedCaller, AuthTokenSecurity, InvalidTokenError
from utils.payment_errors import InvalidArgumentError, UnauthenticatedError

logger = logging.getLogger(__name__)


@dataclass
class PaymentServices:
    session_factory: sessionmaker
    settings: PlatformSettingsService
    orders: OrderManager
    ledger: OutstandingFeeLedger
    admin: AdminPaymentService
    pipeline: SubmissionPipeline
    queue: SubmissionQueue


def build_services(
    session_factory: Optional[sessionmaker] = None,
    pipeline: Optional[SubmissionPipeline] = None,
) -> PaymentServices:
    """Wire every service against one session factory and one settings cache"""
    factory = session_factory or SessionLocal
    settings = PlatformSettingsService(factory)
    pipeline = pipeline or SubmissionPipeline(factory, settings_service=settings)
    return PaymentServices(
        session_factory=factory,
        settings=settings,
        orders=OrderManager(factory, settings_service=settings),
        ledger=OutstandingFeeLedger(factory, settings_service=settings),
        admin=AdminPaymentService(factory),
        pipeline=pipeline,
        queue=SubmissionQueue(pipeline, session_factory=factory),
    )


def get_services(request: Request) -> PaymentServices:
    return request.app.state.services


def get_caller(authorization: Optional[str] = Header(None)) -> AuthenticatedCaller:
    if not authorization or not authorization.startswith("Bearer "):
        raise UnauthenticatedError("Missing bearer token")
    try:
        return AuthTokenSecurity.verify_token(authorization[len("Bearer "):])
    except InvalidTokenError as e:
        raise UnauthenticatedError(str(e))


async def read_json_body(request: Request, required: bool = True) -> Dict[str, Any]:
    raw = await request.body()
    if not raw:
        if required:
            raise InvalidArgumentError("Request body is required")
        return {}
    try:
        payload = await request.json()
    except ValueError:
        raise InvalidArgumentError("Request body must be valid JSON")
    if not isinstance(payload, dict):
        raise InvalidArgumentError("Request body must be a JSON object")
    return payload
