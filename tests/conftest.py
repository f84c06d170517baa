"""Shared fixtures: settings, a SQLite ledger, a fake upstream and the app."""

from typing import List

import httpx
import pytest
import pytest_asyncio

from lightning_gateway.app import create_app
from lightning_gateway.config import Settings
from lightning_gateway.ledger import Ledger
from lightning_gateway.rails import SimulatedRail

SECRET = "test-secret-for-gateway-vouchers"


class FakeUpstream:
    """Records what the gateway forwarded and answers with canned JSON."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.fail = False
        self.timeout = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if self.timeout:
            raise httpx.ReadTimeout("read timed out", request=request)
        return httpx.Response(
            self.status_code,
            json={"ok": True, "path": request.url.path},
            headers={"X-Upstream": "yes"},
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        GATEWAY_SECRET=SECRET,
        DATABASE_URL=f"sqlite:///{tmp_path / 'gateway.db'}",
        PLATFORM_FEE_PERCENT="2",
        ALBY_API_KEY=None,
        NWC_URL=None,
    )


@pytest.fixture
def ledger(settings):
    ledger = Ledger.from_url(settings.DATABASE_URL)
    yield ledger
    ledger.dispose()


@pytest.fixture
def rail():
    return SimulatedRail(seed="tests")


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def upstream_client(upstream):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler))
    yield client
    await client.aclose()


@pytest.fixture
def app(settings, rail, upstream_client, ledger):
    return create_app(settings, rail=rail, http_client=upstream_client, ledger=ledger)


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway.test") as client:
        yield client


async def make_gateway(ledger, price=10, rules=None, is_active=True, lightning_address=None):
    """Create an earner and a gateway pointing at the fake upstream."""
    developer = await ledger.create_developer(lightning_address=lightning_address)
    gateway = await ledger.create_gateway(
        developer.id,
        "https://upstream.test/api/",
        price_per_request_sats=price,
        name="Weather API",
        rules=rules,
        description="Forecasts",
        is_active=is_active,
    )
    return developer, gateway
