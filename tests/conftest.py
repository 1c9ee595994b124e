from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
API_DIR = ROOT / "API"
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

# Test-mode runtime guards:
# - no advisor network traffic
# - in-memory persistence
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ADVISOR_PROVIDER", "none")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("CATALOG_PATH", "")

from pathgate.content.catalog import ContentCatalog  # noqa: E402
from pathgate.core.advisor import RecommendationAdvisor, ResilientAdvisor  # noqa: E402
from pathgate.core.errors import AdvisorServiceError  # noqa: E402
from pathgate.core.resilience import CircuitBreaker  # noqa: E402
from pathgate.core.settings import Settings  # noqa: E402
from pathgate.data.sample_catalog import SAMPLE_CATALOG  # noqa: E402
from pathgate.main import create_app  # noqa: E402
from pathgate.schemas.roadmap import AdvisorResponse  # noqa: E402
from pathgate.services.container import build_container  # noqa: E402


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedAdvisor(RecommendationAdvisor):
    """Replays a script of responses/exceptions; the last entry repeats."""

    provider_name = "scripted"

    def __init__(self, *script):
        self.script = list(script)
        self.calls = 0
        self.requests = []

    async def recommend(self, request):
        self.requests.append(request)
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, BaseException):
            raise step
        if step == "hang":
            await asyncio.sleep(3600)
        return AdvisorResponse.model_validate(step)


async def _no_sleep(_delay: float) -> None:
    return None


def make_resilient(advisor, *, threshold: int = 5, timeout: float = 0.05, max_retries: int = 2, clock=None):
    breaker = CircuitBreaker(
        name="advisor:test",
        failure_threshold=threshold,
        recovery_timeout_seconds=60.0,
        clock=clock or ManualClock(),
    )
    return ResilientAdvisor(
        advisor,
        breaker,
        timeout_seconds=timeout,
        max_retries=max_retries,
        base_delay_seconds=0.01,
        sleep=_no_sleep,
    )


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def scripted_advisor():
    return ScriptedAdvisor


@pytest.fixture
def resilient_factory():
    return make_resilient


@pytest.fixture
def unavailable_error():
    return AdvisorServiceError("advisor down")


@pytest.fixture
def catalog() -> ContentCatalog:
    return ContentCatalog(SAMPLE_CATALOG)


@pytest.fixture
def build_services(catalog):
    def _build(advisor=None, **overrides):
        config = Settings(**overrides)
        resilient = make_resilient(advisor) if advisor is not None else None
        return build_container(config, catalog=catalog, advisor=resilient, sleep=_no_sleep)

    return _build


@pytest.fixture
def services(build_services):
    return build_services()


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(create_app()) as tc:
        yield tc
