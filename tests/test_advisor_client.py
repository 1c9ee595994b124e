from __future__ import annotations

import httpx
import pytest

from pathgate.core.advisor import HttpRecommendationAdvisor, NullRecommendationAdvisor, build_advisor
from pathgate.core.errors import AdvisorServiceError
from pathgate.core.settings import Settings
from pathgate.schemas.roadmap import AdvisorRequest, LearnerProfilePayload


def _request() -> AdvisorRequest:
    return AdvisorRequest(
        learner_profile=LearnerProfilePayload(learner_id="ada", learning_preferences={"pace": "slow"}),
        knowledge_gaps=["loops"],
        enrolled_content=["py-101"],
    )


def _advisor(handler, api_key: str = "secret-key") -> HttpRecommendationAdvisor:
    return HttpRecommendationAdvisor("http://advisor.test/recommend", api_key, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_http_advisor_posts_request_and_parses_path():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["key"] = request.headers.get("x-advisor-key")
        seen["body"] = request.content
        return httpx.Response(200, json={"learning_path": [{"content_id": "py-101-l1"}], "reasoning": "ok"})

    response = await _advisor(handler).recommend(_request())
    assert [entry.content_id for entry in response.learning_path] == ["py-101-l1"]
    assert seen["key"] == "secret-key"
    assert b'"knowledge_gaps":["loops"]' in seen["body"].replace(b" ", b"")


@pytest.mark.asyncio
@pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (400, False), (429, False)])
async def test_http_advisor_classifies_status_codes(status, retryable):
    advisor = _advisor(lambda request: httpx.Response(status, json={"error": "nope"}))
    with pytest.raises(AdvisorServiceError) as exc_info:
        await advisor.recommend(_request())
    assert exc_info.value.retryable is retryable


@pytest.mark.asyncio
async def test_http_advisor_treats_network_errors_as_retryable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AdvisorServiceError) as exc_info:
        await _advisor(handler).recommend(_request())
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_malformed_payload_is_not_retried():
    advisor = _advisor(lambda request: httpx.Response(200, json={"unexpected": True}))
    with pytest.raises(AdvisorServiceError) as exc_info:
        await advisor.recommend(_request())
    assert exc_info.value.retryable is False


def test_build_advisor_selects_provider_from_settings():
    assert isinstance(build_advisor(Settings(advisor_provider="none")).advisor, NullRecommendationAdvisor)
    resilient = build_advisor(
        Settings(advisor_provider="http", breaker_failure_threshold=2, advisor_timeout_seconds=3.0)
    )
    assert isinstance(resilient.advisor, HttpRecommendationAdvisor)
    assert resilient.breaker.failure_threshold == 2
    assert resilient.timeout_seconds == 3.0
