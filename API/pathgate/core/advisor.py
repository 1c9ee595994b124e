import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

import httpx
from pydantic import ValidationError as PydanticValidationError

from pathgate.core.errors import AdvisorServiceError
from pathgate.core.logging import DOMAIN_RESILIENCE, get_domain_logger
from pathgate.core.resilience import CircuitBreaker, retry_with_backoff
from pathgate.core.result import (
    ERR_CIRCUIT_OPEN,
    ERR_NON_RETRYABLE,
    ERR_TIMEOUT,
    ERR_UNAVAILABLE,
    Err,
    Ok,
    Result,
)
from pathgate.core.settings import Settings
from pathgate.schemas.roadmap import AdvisorRequest, AdvisorResponse

logger = get_domain_logger(__name__, DOMAIN_RESILIENCE)


class RecommendationAdvisor(ABC):
    provider_name: str

    @abstractmethod
    async def recommend(self, request: AdvisorRequest) -> AdvisorResponse:
        raise NotImplementedError


class HttpRecommendationAdvisor(RecommendationAdvisor):
    provider_name = "http"

    def __init__(self, url: str, api_key: str = "", transport: httpx.AsyncBaseTransport | None = None):
        self.url = url
        self.api_key = api_key
        self._transport = transport

    async def recommend(self, request: AdvisorRequest) -> AdvisorResponse:
        if not self.url:
            raise AdvisorServiceError("Advisor URL is not configured", retryable=False)
        headers = {"x-advisor-key": self.api_key} if self.api_key else {}
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(self.url, json=request.model_dump(mode="json"), headers=headers)
        except httpx.TimeoutException as exc:
            raise AdvisorServiceError(f"Advisor request timed out: {exc}", kind=ERR_TIMEOUT) from exc
        except httpx.TransportError as exc:
            raise AdvisorServiceError(f"Advisor unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise AdvisorServiceError(f"Advisor returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise AdvisorServiceError(
                f"Advisor rejected request with HTTP {response.status_code}",
                retryable=False,
                kind=ERR_NON_RETRYABLE,
            )
        try:
            return AdvisorResponse.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise AdvisorServiceError("Advisor returned a malformed payload", retryable=False, kind=ERR_NON_RETRYABLE) from exc


class NullRecommendationAdvisor(RecommendationAdvisor):
    provider_name = "none"

    async def recommend(self, request: AdvisorRequest) -> AdvisorResponse:
        raise AdvisorServiceError("No recommendation advisor configured", retryable=False)


class ResilientAdvisor:
    """Advisor calls under a per-call timeout, circuit breaker and retry-with-backoff.

    Each individual call passes through the breaker, so an opening breaker also
    stops the remaining retries. Failures come back as ``Err(kind)``.
    """

    def __init__(
        self,
        advisor: RecommendationAdvisor,
        breaker: CircuitBreaker,
        *,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        base_delay_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.advisor = advisor
        self.breaker = breaker
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self._sleep = sleep

    async def _call_once(self, request: AdvisorRequest) -> AdvisorResponse:
        async def _bounded():
            try:
                return await asyncio.wait_for(self.advisor.recommend(request), timeout=self.timeout_seconds)
            except asyncio.TimeoutError as exc:
                raise AdvisorServiceError(
                    f"Advisor call exceeded {self.timeout_seconds}s", kind=ERR_TIMEOUT
                ) from exc

        return await self.breaker.call(_bounded)

    async def recommend(self, request: AdvisorRequest) -> Result[AdvisorResponse]:
        try:
            response = await retry_with_backoff(
                lambda: self._call_once(request),
                max_retries=self.max_retries,
                base_delay_seconds=self.base_delay_seconds,
                sleep=self._sleep,
            )
        except AdvisorServiceError as exc:
            kind = exc.kind if exc.kind in {ERR_TIMEOUT, ERR_CIRCUIT_OPEN, ERR_UNAVAILABLE} else ERR_NON_RETRYABLE
            logger.warning("Advisor call failed | provider=%s | kind=%s | %s", self.advisor.provider_name, kind, exc.message)
            return Err(kind, exc.message)
        except Exception as exc:
            logger.warning("Advisor call failed | provider=%s | kind=%s | %s", self.advisor.provider_name, ERR_UNAVAILABLE, exc)
            return Err(ERR_UNAVAILABLE, str(exc))
        return Ok(response)


def build_advisor(config: Settings, *, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> ResilientAdvisor:
    provider = (config.advisor_provider or "none").strip().lower()
    if provider == "http":
        advisor: RecommendationAdvisor = HttpRecommendationAdvisor(config.advisor_url, config.advisor_api_key)
    else:
        advisor = NullRecommendationAdvisor()
    breaker = CircuitBreaker(
        name=f"advisor:{advisor.provider_name}",
        failure_threshold=config.breaker_failure_threshold,
        recovery_timeout_seconds=config.breaker_recovery_timeout_seconds,
    )
    return ResilientAdvisor(
        advisor,
        breaker,
        timeout_seconds=config.advisor_timeout_seconds,
        max_retries=config.advisor_max_retries,
        base_delay_seconds=config.advisor_base_delay_seconds,
        sleep=sleep,
    )
