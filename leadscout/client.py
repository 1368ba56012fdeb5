"""Thin async wrapper around the two Apollo endpoints the pipeline uses.

Both calls go through the client's rate limiter. Any non-2xx answer, and any
transport failure (including the explicit timeout), is raised as
:class:`~leadscout.errors.ApolloAPIError`; transport failures carry status 0.
"""
from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from leadscout.config import Settings, get_settings
from leadscout.errors import ApolloAPIError, ApolloValidationError
from leadscout.rate_limiter import RateLimiter
from leadscout.schemas import APOLLO_EMAIL_STATUSES, BulkMatchResponse, SearchParams, SearchResponse

log = logging.getLogger(__name__)

SEARCH_PATH = "/mixed_people/api_search"
BULK_MATCH_PATH = "/people/bulk_match"
MAX_BULK_DETAILS = 10


def build_search_body(params: SearchParams) -> dict[str, Any]:
    """Provider body for a search; empty filters are omitted."""
    body: dict[str, Any] = {
        "page": params.page or 1,
        "per_page": params.per_page or 25,
    }
    if params.person_titles:
        body["person_titles"] = list(params.person_titles)
    if params.person_locations:
        body["person_locations"] = list(params.person_locations)
    if params.company_locations:
        body["organization_locations"] = list(params.company_locations)
    if params.employee_ranges:
        body["organization_num_employees_ranges"] = list(params.employee_ranges)
    statuses = [s.lower() for s in params.contact_email_status if s.lower() in APOLLO_EMAIL_STATUSES]
    if statuses:
        body["contact_email_status"] = statuses
    return body


class ApolloClient:
    """Async Apollo client.

    ``transport`` lets tests substitute an ``httpx.MockTransport``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        settings: Settings | None = None,
        rate_limiter: Any | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or get_settings()
        self._api_key = api_key or self.settings.require_api_key()
        self.base_url = self.settings.apollo_base_url
        self.rate_limiter = rate_limiter or RateLimiter(
            delay_ms=self.settings.delay_ms,
            requests_per_minute=self.settings.requests_per_minute,
        )
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Cache-Control": "no-cache",
            "X-Api-Key": self._api_key,
        }

    async def _post(
        self, path: str, body: dict[str, Any], *,
        query: dict[str, str] | None = None, context: dict[str, Any],
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        await self.rate_limiter.wait()
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.timeout_seconds),
                headers=self._headers(),
                transport=self._transport,
            ) as client:
                resp = await client.post(url, params=query, json=body)
        except httpx.TimeoutException as exc:
            raise ApolloAPIError(
                f"Apollo API request timed out after {self.settings.timeout_seconds:.0f}s",
                0, None, {**context, "url": url, "timeout": True},
            ) from exc
        except httpx.HTTPError as exc:
            raise ApolloAPIError(
                f"Apollo API transport error: {exc}", 0, None, {**context, "url": url},
            ) from exc

        if resp.status_code < 200 or resp.status_code >= 300:
            error = ApolloAPIError(
                "Apollo API request failed", resp.status_code, resp.text, {**context, "url": url},
            )
            if not error.retryable and not error.is_rate_limit:
                # Hard failure; later calls should not inherit the window
                self.rate_limiter.reset()
            raise error
        try:
            data = resp.json()
        except json.JSONDecodeError as exc:
            raise ApolloAPIError(
                "Apollo API returned invalid JSON", resp.status_code, resp.text, {**context, "url": url},
            ) from exc
        if not isinstance(data, dict):
            raise ApolloAPIError(
                "Apollo API returned an unexpected payload", resp.status_code, resp.text,
                {**context, "url": url},
            )
        return data

    async def search_people(self, params: SearchParams) -> SearchResponse:
        body = build_search_body(params)
        log.info("Apollo search request page=%s per_page=%s", body["page"], body["per_page"])
        try:
            data = await self._post(SEARCH_PATH, body, context={"operation": "search", "page": body["page"]})
        except ApolloAPIError as exc:
            log.error("Apollo search failed page=%s status=%s: %s", body["page"], exc.status_code, exc)
            raise
        response = SearchResponse.model_validate(data)
        log.info("Apollo search ok page=%s people=%d", body["page"], len(response.people))
        return response

    async def bulk_match(
        self,
        details: list[dict[str, Any]],
        reveal_emails: bool = True,
        reveal_phones: bool = False,
        webhook_url: str | None = None,
    ) -> BulkMatchResponse:
        if not details:
            raise ApolloValidationError("At least one enrichment detail is required", field="details")
        if len(details) > MAX_BULK_DETAILS:
            raise ApolloValidationError(
                f"Bulk enrichment accepts at most {MAX_BULK_DETAILS} details, got {len(details)}",
                field="details", value=len(details),
            )
        if reveal_phones and not webhook_url:
            raise ApolloValidationError(
                "Webhook URL is required when revealing phone numbers", field="webhook_url",
            )

        query = {
            "reveal_personal_emails": str(reveal_emails).lower(),
            "reveal_phone_number": str(reveal_phones).lower(),
        }
        if reveal_phones and webhook_url:
            query["webhook_url"] = webhook_url

        log.info(
            "Apollo bulk match request size=%d reveal_emails=%s reveal_phones=%s",
            len(details), reveal_emails, reveal_phones,
        )
        context = {"operation": "bulk_match", "batch_size": len(details)}
        try:
            data = await self._post(BULK_MATCH_PATH, {"details": details}, query=query, context=context)
        except ApolloAPIError as exc:
            log.error("Apollo bulk match failed size=%d status=%s: %s", len(details), exc.status_code, exc)
            raise
        response = BulkMatchResponse.model_validate(data)
        log.info("Apollo bulk match ok size=%d matches=%d", len(details), len(response.matches))
        return response
