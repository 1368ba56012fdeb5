"""Tests for the Apollo HTTP client: request shapes, validation and error mapping."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from leadscout.client import ApolloClient, build_search_body
from leadscout.config import Settings
from leadscout.errors import ApolloAPIError, ApolloValidationError
from leadscout.rate_limiter import RateLimiter
from leadscout.schemas import SearchParams


@pytest.fixture()
def settings():
    return Settings(
        apollo_api_key="test-key",
        apollo_base_url="https://apollo.test/api/v1",
        delay_ms=0,
        timeout_seconds=5,
    )


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, status: int = 200, payload=None, text: str | None = None, exc: Exception | None = None):
        self.status = status
        self.payload = payload if payload is not None else {}
        self.text = text
        self.exc = exc
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        if self.text is not None:
            return httpx.Response(self.status, text=self.text)
        return httpx.Response(self.status, json=self.payload)

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _client(settings, recorder, rate_limiter=None) -> ApolloClient:
    return ApolloClient(
        settings=settings,
        rate_limiter=rate_limiter or RateLimiter(delay_ms=0),
        transport=httpx.MockTransport(recorder),
    )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


class TestBuildSearchBody:
    def test_maps_criteria_to_provider_fields(self):
        params = SearchParams(
            person_titles=["CTO"], person_locations=["Germany"], company_locations=["France"],
            employee_ranges=["11,50", "51,200"], page=2, per_page=50,
        )
        body = build_search_body(params)
        assert body == {
            "page": 2,
            "per_page": 50,
            "person_titles": ["CTO"],
            "person_locations": ["Germany"],
            "organization_locations": ["France"],
            "organization_num_employees_ranges": ["11,50", "51,200"],
        }

    def test_empty_lists_are_omitted(self):
        body = build_search_body(SearchParams(person_titles=["CEO"]))
        assert body == {"page": 1, "per_page": 25, "person_titles": ["CEO"]}

    def test_email_statuses_normalized_and_filtered(self):
        params = SearchParams(
            person_titles=["CEO"], contact_email_status=["Verified", "likely to engage", "bogus"],
        )
        assert build_search_body(params)["contact_email_status"] == ["verified", "likely to engage"]

    def test_only_unknown_statuses_drops_the_field(self):
        params = SearchParams(person_titles=["CEO"], contact_email_status=["bogus"])
        assert "contact_email_status" not in build_search_body(params)


class TestSearchPeople:
    @pytest.mark.asyncio
    async def test_posts_to_search_endpoint(self, settings):
        recorder = Recorder(payload={
            "people": [{"id": "p1", "first_name": "Ada"}],
            "pagination": {"page": 1, "per_page": 25, "total_entries": 1, "total_pages": 1},
        })
        resp = await _client(settings, recorder).search_people(SearchParams(person_titles=["CTO"]))

        request = recorder.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://apollo.test/api/v1/mixed_people/api_search"
        assert request.headers["X-Api-Key"] == "test-key"
        assert request.headers["Cache-Control"] == "no-cache"
        assert recorder.body["person_titles"] == ["CTO"]
        assert resp.people == [{"id": "p1", "first_name": "Ada"}]
        assert resp.pagination.total_pages == 1

    @pytest.mark.asyncio
    async def test_missing_people_and_pagination(self, settings):
        recorder = Recorder(payload={"people": None})
        resp = await _client(settings, recorder).search_people(SearchParams(person_titles=["CTO"]))
        assert resp.people == []
        assert resp.pagination is None

    @pytest.mark.asyncio
    async def test_goes_through_rate_limiter(self, settings):
        limiter = AsyncMock()
        recorder = Recorder(payload={"people": []})
        await _client(settings, recorder, rate_limiter=limiter).search_people(SearchParams(person_titles=["CTO"]))
        limiter.wait.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_2xx_raises_api_error(self, settings):
        recorder = Recorder(status=429, text="slow down")
        with pytest.raises(ApolloAPIError) as exc_info:
            await _client(settings, recorder).search_people(SearchParams(person_titles=["CTO"]))
        err = exc_info.value
        assert err.status_code == 429
        assert err.response_body == "slow down"
        assert err.is_rate_limit
        assert err.context["operation"] == "search"
        assert "rate limit" in err.user_message()

    @pytest.mark.asyncio
    async def test_hard_failure_resets_limiter(self, settings):
        limiter = RateLimiter(delay_ms=0)
        recorder = Recorder(status=401, text="bad key")
        with pytest.raises(ApolloAPIError):
            await _client(settings, recorder, rate_limiter=limiter).search_people(SearchParams(person_titles=["CTO"]))
        assert limiter.calls_in_window == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 503])
    async def test_retryable_failure_keeps_limiter_history(self, settings, status):
        limiter = RateLimiter(delay_ms=0)
        recorder = Recorder(status=status, text="later")
        with pytest.raises(ApolloAPIError):
            await _client(settings, recorder, rate_limiter=limiter).search_people(SearchParams(person_titles=["CTO"]))
        assert limiter.calls_in_window == 1

    @pytest.mark.asyncio
    async def test_timeout_maps_to_status_zero(self, settings):
        recorder = Recorder(exc=httpx.ReadTimeout("timed out"))
        with pytest.raises(ApolloAPIError) as exc_info:
            await _client(settings, recorder).search_people(SearchParams(person_titles=["CTO"]))
        assert exc_info.value.status_code == 0
        assert exc_info.value.retryable
        assert exc_info.value.context["timeout"] is True

    @pytest.mark.asyncio
    async def test_invalid_json_raises_api_error(self, settings):
        recorder = Recorder(status=200, text="<html>oops</html>")
        with pytest.raises(ApolloAPIError):
            await _client(settings, recorder).search_people(SearchParams(person_titles=["CTO"]))


# ---------------------------------------------------------------------------
# Bulk match
# ---------------------------------------------------------------------------


class TestBulkMatch:
    @pytest.mark.asyncio
    async def test_query_flags_and_body(self, settings):
        recorder = Recorder(payload={"matches": [{"id": "p1", "email": "ada@acme.test"}], "breadcrumb_id": "b1"})
        resp = await _client(settings, recorder).bulk_match([{"id": "p1"}])

        request = recorder.requests[0]
        assert request.url.path == "/api/v1/people/bulk_match"
        assert request.url.params["reveal_personal_emails"] == "true"
        assert request.url.params["reveal_phone_number"] == "false"
        assert "webhook_url" not in request.url.params
        assert recorder.body == {"details": [{"id": "p1"}]}
        assert resp.matches[0]["email"] == "ada@acme.test"
        assert resp.breadcrumb_id == "b1"

    @pytest.mark.asyncio
    async def test_phones_with_webhook(self, settings):
        recorder = Recorder(payload={"matches": []})
        await _client(settings, recorder).bulk_match(
            [{"id": "p1"}], reveal_emails=False, reveal_phones=True, webhook_url="https://hooks.test/apollo",
        )
        params = recorder.requests[0].url.params
        assert params["reveal_personal_emails"] == "false"
        assert params["reveal_phone_number"] == "true"
        assert params["webhook_url"] == "https://hooks.test/apollo"

    @pytest.mark.asyncio
    async def test_gaps_become_none(self, settings):
        recorder = Recorder(payload={"matches": [{"id": "p1"}, None, {}]})
        resp = await _client(settings, recorder).bulk_match([{"id": "p1"}, {"id": "p2"}, {"id": "p3"}])
        assert resp.matches == [{"id": "p1"}, None, None]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("details, kwargs, field", [
        ([], {}, "details"),
        ([{"id": str(i)} for i in range(11)], {}, "details"),
        ([{"id": "p1"}], {"reveal_phones": True}, "webhook_url"),
    ])
    async def test_validation_happens_before_any_call(self, settings, details, kwargs, field):
        recorder = Recorder(payload={"matches": []})
        limiter = AsyncMock()
        with pytest.raises(ApolloValidationError) as exc_info:
            await _client(settings, recorder, rate_limiter=limiter).bulk_match(details, **kwargs)
        assert exc_info.value.field == field
        assert recorder.requests == []
        limiter.wait.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error(self, settings):
        recorder = Recorder(status=503, text="unavailable")
        with pytest.raises(ApolloAPIError) as exc_info:
            await _client(settings, recorder).bulk_match([{"id": "p1"}])
        assert exc_info.value.is_server_error
        assert exc_info.value.context["batch_size"] == 1


# ---------------------------------------------------------------------------
# Configuration and errors
# ---------------------------------------------------------------------------


class TestClientConfig:
    def test_missing_api_key_is_rejected(self):
        with pytest.raises(ApolloValidationError) as exc_info:
            ApolloClient(settings=Settings(apollo_api_key=""))
        assert exc_info.value.field == "apollo_api_key"

    def test_explicit_key_wins(self):
        client = ApolloClient("explicit", settings=Settings(apollo_api_key=""))
        assert client._headers()["X-Api-Key"] == "explicit"


class TestApolloAPIError:
    @pytest.mark.parametrize("status, fragment", [
        (401, "authentication failed"),
        (403, "forbidden"),
        (400, "request failed"),
        (500, "server error"),
    ])
    def test_user_message_by_status(self, status, fragment):
        assert fragment in ApolloAPIError("boom", status).user_message()

    def test_classification(self):
        assert ApolloAPIError("x", 502).retryable
        assert ApolloAPIError("x", 0).retryable
        assert not ApolloAPIError("x", 404).retryable
        assert ApolloAPIError("x", 404).is_client_error
        assert "status_code=404" in repr(ApolloAPIError("x", 404))
