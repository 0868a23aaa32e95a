"""
Shared Test Fixtures for the Payment Verification Service
Provides an isolated in-memory database per test, service instances wired to it,
account/contract factories and realistic receipt material (text and screenshots).

Key Components:
1. SQLite in-memory engine (StaticPool) with the full schema created per test
2. Settings, order, ledger and pipeline services bound to the test session factory
3. Receipt text and PNG screenshot builders for pipeline scenarios
4. Mocked fetcher / text recognizer so no network call is ever made
5. File-backed database and a racing session factory for concurrent-writer scenarios
"""

import os

# Must be set before config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("AUTH_TOKEN_SECRET", "pytest_auth_token_secret_do_not_use_in_prod")
os.environ.setdefault("ENVIRONMENT", "development")

import io
import logging
import warnings
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional
from unittest.mock import AsyncMock

import pytest
from PIL import Image, ImageDraw
from sqlalchemy.orm import sessionmaker

from caching.simple_cache import SimpleCache
from config import Config
from database import build_engine
from models import Account, Base
from services.duplicate_ledger import DuplicateLedger
from services.order_manager import OrderManager
from services.outstanding_fee_ledger import OutstandingFeeLedger
from services.platform_settings import PlatformSettingsService
from services.submission_pipeline import SubmissionPipeline
from services.text_recognition_service import RecognitionResult
from utils.datetime_helpers import get_naive_utc_now

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

warnings.filterwarnings("ignore", message=".*coroutine.*was never awaited.*")

RECEIVER_NAME = "JUAN DELA CRUZ"
RECEIVER_NUMBER = "09171234567"
DEFAULT_REFERENCE = "1234 567 890123"


# ============================================================================
# DATABASE
# ============================================================================

@pytest.fixture
def engine():
    test_engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    """Plain session for arranging and inspecting rows; close it or let teardown do it"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_session_factory(tmp_path):
    """File-backed database so racing sessions hold separate connections"""
    file_engine = build_engine(f"sqlite:///{tmp_path / 'race.db'}")
    Base.metadata.create_all(bind=file_engine)
    yield sessionmaker(bind=file_engine, autocommit=False, autoflush=False, expire_on_commit=False)
    file_engine.dispose()


class LosingRaceSessions:
    """
    Session factory whose first session loses a race.

    Right after that session first loads ``model`` with ``session.get``, ``competitor``
    runs and commits through its own session, so the first attempt works from a read
    the competitor has already invalidated. Later sessions are untouched.
    """

    def __init__(self, session_factory, model, competitor: Callable[[], Any]):
        self.session_factory = session_factory
        self.model = model
        self.competitor = competitor
        self.opened = 0
        self.fired = False
        self.competitor_result = None

    def __call__(self):
        session = self.session_factory()
        self.opened += 1
        if self.opened == 1:
            real_get = session.get

            def get_then_lose(entity, ident, *args, **kwargs):
                found = real_get(entity, ident, *args, **kwargs)
                if entity is self.model and not self.fired:
                    self.fired = True
                    self.competitor_result = self.competitor()
                return found

            session.get = get_then_lose
        return session


# ============================================================================
# SERVICES
# ============================================================================

@pytest.fixture
def settings_service(session_factory):
    service = PlatformSettingsService(session_factory, ttl=30, cache=SimpleCache(default_ttl=30))
    service.update_settings(
        {"receiving_account": {"account_name": RECEIVER_NAME, "account_number": RECEIVER_NUMBER}},
        admin_id="test-setup",
    )
    return service


@pytest.fixture
def order_manager(session_factory, settings_service):
    return OrderManager(session_factory, settings_service=settings_service)


@pytest.fixture
def fee_ledger(session_factory, settings_service):
    return OutstandingFeeLedger(session_factory, settings_service=settings_service)


@pytest.fixture
def duplicate_ledger(session_factory):
    return DuplicateLedger(session_factory)


@pytest.fixture
def fetcher():
    mock = AsyncMock()
    mock.fetch.return_value = make_receipt_png(0)
    return mock


@pytest.fixture
def recognizer():
    mock = AsyncMock()
    mock.recognize.return_value = RecognitionResult(text=build_receipt_text(), confidence=0.95)
    return mock


@pytest.fixture
def pipeline(session_factory, settings_service, fetcher, recognizer, duplicate_ledger):
    return SubmissionPipeline(
        session_factory,
        settings_service=settings_service,
        fetcher=fetcher,
        recognizer=recognizer,
        duplicate_ledger=duplicate_ledger,
        timeout_seconds=10,
    )


# ============================================================================
# FACTORIES
# ============================================================================

@pytest.fixture
def make_account(session_factory):
    def _make(
        account_id: str = "user-1",
        age_days: float = 60,
        is_verified: bool = True,
        is_admin: bool = False,
        **fields,
    ) -> Account:
        session = session_factory()
        try:
            account = Account(
                id=account_id,
                is_verified=is_verified,
                is_admin=is_admin,
                created_at=get_naive_utc_now() - timedelta(days=age_days),
                **fields,
            )
            session.add(account)
            session.commit()
            return account
        finally:
            session.close()

    return _make


def screenshot_url(account_id: str, name: str = "receipt.png") -> str:
    return (
        "https://firebasestorage.googleapis.com/v0/b/marketplace.appspot.com/o/"
        f"payments%2F{account_id}%2F{name}?alt=media"
    )


def receipt_local_time(when: Optional[datetime] = None) -> datetime:
    """Wall-clock time a Philippine wallet would print for a UTC instant"""
    return (when or get_naive_utc_now()) + timedelta(hours=Config.RECEIPT_UTC_OFFSET_HOURS)


def build_receipt_text(
    amount: str = "1,500.00",
    reference: str = DEFAULT_REFERENCE,
    receiver: str = RECEIVER_NAME,
    sent_at: Optional[datetime] = None,
) -> str:
    local = receipt_local_time(sent_at)
    stamp = f"{local.month:02d}/{local.day:02d}/{local.year} {local.strftime('%I:%M %p')}"
    return "\n".join([
        "GCash",
        "Send Money",
        f"To: {receiver}",
        "From: MARIA SANTOS",
        f"Amount: ₱{amount}",
        f"Ref No. {reference}",
        stamp,
        "Transfer successful",
    ])


def make_receipt_png(variant: int = 0, size=(1080, 1920)) -> bytes:
    """Screen-sized PNG; each variant darkens a different region so hashes differ"""
    width, height = size
    image = Image.new("RGB", size, "white")
    draw = ImageDraw.Draw(image)
    regions = [
        (0, 0, width // 2, height),
        (0, 0, width, height // 2),
        (width // 2, 0, width, height),
        (0, height // 2, width, height),
    ]
    draw.rectangle(regions[variant % len(regions)], fill="black")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def money(value) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"))
