"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- Catalog files and private download directories
- A real SQLite transaction ledger per test
- A scripted payment provider standing in for PayPal
- Purchase engine, download gate and session contexts
- API test client wired to the same components
"""

import json
import os
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

# Set required environment variables BEFORE importing storefront modules
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-signing-cookies")
os.environ.setdefault("PAYPAL_CLIENT_ID", "test-paypal-client-id")
os.environ.setdefault("PAYPAL_CLIENT_SECRET", "test-paypal-client-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./data/test-transactions.db")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from storefront.api.dependencies import Storefront
from storefront.config import Settings
from storefront.db.session import create_engine
from storefront.exceptions import CaptureError
from storefront.models.domain import CaptureResult, Payer
from storefront.services.catalog import CatalogStore
from storefront.services.download import DownloadGate
from storefront.services.ledger import TransactionLedger
from storefront.services.notifications import ReceiptNotifier
from storefront.services.purchase import PurchaseAuthorizationEngine
from storefront.services.sessions import InMemoryGrantStore, SessionContext

# ============================================================================
# Catalog Fixtures
# ============================================================================

PRODUCT_A = {
    "id": "A",
    "name": "Brutal UI Kit",
    "price": "49.00",
    "filename": "brutal-ui-kit.zip",
    "text": "Buy now",
    "image": "/img/a.png",
    "description": "A UI kit.",
}

PRODUCT_B = {
    "id": "B",
    "name": "Icon Pack",
    "price": "19.99",
    "filename": "icon-pack.zip",
}

FREE_PRODUCT = {
    "id": "freebie",
    "name": "Wallpaper",
    "price": "0.00",
    "filename": "wallpaper.zip",
}


def write_catalog(path: Path, products: list[dict[str, Any]]) -> None:
    """Write products.json and make sure its modification time moves forward."""
    previous = path.stat().st_mtime_ns if path.exists() else 0
    path.write_text(json.dumps(products), encoding="utf-8")
    stat = path.stat()
    if stat.st_mtime_ns <= previous:
        os.utime(path, ns=(stat.st_atime_ns, previous + 1_000_000))


@pytest.fixture
def products() -> list[dict[str, Any]]:
    return [dict(PRODUCT_A), dict(PRODUCT_B), dict(FREE_PRODUCT)]


@pytest.fixture
def catalog_path(tmp_path: Path, products: list[dict[str, Any]]) -> Path:
    path = tmp_path / "products.json"
    write_catalog(path, products)
    return path


@pytest.fixture
def downloads_dir(tmp_path: Path, products: list[dict[str, Any]]) -> Path:
    """Private downloads directory holding a file for every product."""
    directory = tmp_path / "private_downloads"
    directory.mkdir()
    for product in products:
        (directory / product["filename"]).write_bytes(f"contents of {product['id']}".encode())
    return directory


@pytest.fixture
def catalog(catalog_path: Path) -> CatalogStore:
    store = CatalogStore(catalog_path)
    store.load()
    return store


# ============================================================================
# Ledger Fixtures
# ============================================================================


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'data' / 'transactions.db'}"


@pytest.fixture
async def ledger(database_url: str) -> AsyncGenerator[TransactionLedger, None]:
    """Initialized ledger on a fresh SQLite file."""
    transaction_ledger = TransactionLedger(create_engine(database_url), database_url)
    await transaction_ledger.initialize()
    yield transaction_ledger
    await transaction_ledger.close()


# ============================================================================
# Payment Provider Fixtures
# ============================================================================


def make_capture(
    order_id: str = "ORDER-1",
    capture_id: str = "CAPTURE-1",
    amount: str = "49.00",
    currency: str = "USD",
    email: str = "buyer@example.com",
) -> CaptureResult:
    """Build a COMPLETED capture result."""
    return CaptureResult(
        order_id=order_id,
        status="COMPLETED",
        capture_id=capture_id,
        amount_value=amount,
        currency_code=currency,
        payer=Payer(email=email, first_name="Ada", last_name="Lovelace"),
    )


class FakePaymentProvider:
    """
    Scripted stand-in for PayPal.

    Returns `result` (or raises `error`) from capture_order and records
    every order id it was asked to capture.
    """

    def __init__(self, result: CaptureResult | None = None, error: Exception | None = None):
        self.result = result or make_capture()
        self.error = error
        self.captured: list[str] = []
        self.closed = False

    async def get_access_token(self) -> str:
        return "fake-token"

    async def capture_order(self, order_id: str) -> CaptureResult:
        self.captured.append(order_id)
        if self.error is not None:
            raise self.error
        return self.result

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def provider() -> FakePaymentProvider:
    return FakePaymentProvider()


@pytest.fixture
def failing_provider() -> FakePaymentProvider:
    return FakePaymentProvider(error=CaptureError("Transaction not completed.", "ORDER-1"))


# ============================================================================
# Engine, Gate and Session Fixtures
# ============================================================================


@pytest.fixture
def notifier() -> ReceiptNotifier:
    """Receipt notifier with delivery disabled."""
    return ReceiptNotifier(mode="shop", sender="", subject="Receipt", enabled=False)


@pytest.fixture
def engine(
    catalog: CatalogStore,
    provider: FakePaymentProvider,
    ledger: TransactionLedger,
    notifier: ReceiptNotifier,
) -> PurchaseAuthorizationEngine:
    return PurchaseAuthorizationEngine(
        catalog=catalog,
        provider=provider,
        ledger=ledger,
        notifier=notifier,
        mode="shop",
    )


@pytest.fixture
def gate(
    catalog: CatalogStore, ledger: TransactionLedger, downloads_dir: Path
) -> DownloadGate:
    return DownloadGate(catalog=catalog, ledger=ledger, downloads_dir=downloads_dir, mode="shop")


@pytest.fixture
def grant_store() -> InMemoryGrantStore:
    return InMemoryGrantStore(ttl_seconds=3600)


@pytest.fixture
def session(grant_store: InMemoryGrantStore) -> SessionContext:
    """Grant view over an empty cookie session."""
    return SessionContext(grant_store, {})


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================


@pytest.fixture
def make_settings(catalog_path: Path, downloads_dir: Path, database_url: str):
    """Factory for settings pointing at the per-test catalog, files and ledger."""

    def _make(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "app_mode": "shop",
            "products_path": catalog_path,
            "downloads_dir": downloads_dir,
            "database_url": database_url,
            "session_secret": "test-session-secret-for-signing-cookies",
            "paypal_client_id": "test-paypal-client-id",
            "paypal_client_secret": "test-paypal-client-secret",
            "email_enabled": False,
            "items_per_page": 2,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


def build_test_storefront(settings: Settings, provider: FakePaymentProvider) -> Storefront:
    """Wire real components around a fake payment provider."""
    catalog = CatalogStore(settings.products_path)
    ledger = TransactionLedger(create_engine(settings.database_url), settings.database_url)
    grant_store = InMemoryGrantStore(ttl_seconds=settings.session_max_age)
    notifier = ReceiptNotifier(
        mode=settings.app_mode, sender="", subject="Receipt", enabled=False
    )
    return Storefront(
        settings=settings,
        catalog=catalog,
        ledger=ledger,
        provider=provider,
        grant_store=grant_store,
        notifier=notifier,
        engine=PurchaseAuthorizationEngine(
            catalog=catalog,
            provider=provider,
            ledger=ledger,
            notifier=notifier,
            mode=settings.app_mode,
            single_product_id=settings.single_product_id,
            store_currency=settings.store_currency,
        ),
        gate=DownloadGate(
            catalog=catalog,
            ledger=ledger,
            downloads_dir=settings.downloads_dir,
            mode=settings.app_mode,
            single_product_id=settings.single_product_id,
        ),
    )


@pytest.fixture
async def storefront(make_settings, provider: FakePaymentProvider) -> AsyncGenerator[Storefront, None]:
    """Started shop-mode storefront."""
    components = build_test_storefront(make_settings(), provider)
    await components.startup()
    yield components
    await components.shutdown()


@pytest.fixture
def app(storefront: Storefront) -> FastAPI:
    """Create FastAPI app for testing."""
    from storefront.main import create_app

    return create_app(storefront.settings, storefront)


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async test client for async tests. Cookies persist across requests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
