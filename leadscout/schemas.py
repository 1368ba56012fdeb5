"""Pydantic request/response schemas for the Apollo pipeline and its API."""
from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Email statuses Apollo accepts on search; anything else is dropped before the call
APOLLO_EMAIL_STATUSES = ("verified", "unverified", "likely to engage", "unavailable")

_EMPLOYEE_RANGE_RE = re.compile(r"^\d+,\d*$")


# ---------------------------------------------------------------------------
# Inbound: search / acquisition
# ---------------------------------------------------------------------------


class SearchCriteria(BaseModel):
    person_titles: list[str] = []
    person_locations: list[str] = []
    company_locations: list[str] = []
    employee_ranges: list[str] = []  # "min,max", e.g. "11,50"
    contact_email_status: list[str] = []
    per_page: int = Field(25, ge=1, le=100)

    @field_validator("person_titles", "person_locations", "company_locations", "contact_email_status")
    @classmethod
    def _strip_blank(cls, values: list[str]) -> list[str]:
        return [v.strip() for v in values if v and v.strip()]

    @field_validator("employee_ranges")
    @classmethod
    def _check_ranges(cls, values: list[str]) -> list[str]:
        cleaned = [v.replace(" ", "") for v in values if v and v.strip()]
        for v in cleaned:
            if not _EMPLOYEE_RANGE_RE.match(v):
                raise ValueError(f"Employee range must look like 'min,max', got {v!r}")
        return cleaned

    @model_validator(mode="after")
    def _require_criteria(self):
        if not (self.person_titles or self.person_locations
                or self.company_locations or self.employee_ranges):
            raise ValueError("At least one search criteria is required")
        return self


class SearchParams(SearchCriteria):
    page: int | None = Field(None, ge=1)

    def criteria(self) -> dict[str, Any]:
        """The stored, replayable form of these params (without the page)."""
        return self.model_dump(exclude={"page"})


class EnrichmentOptions(BaseModel):
    reveal_personal_emails: bool = True
    reveal_phone_numbers: bool = False
    webhook_url: str | None = None

    @field_validator("webhook_url")
    @classmethod
    def _check_url(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value

    @model_validator(mode="after")
    def _webhook_for_phones(self):
        if self.reveal_phone_numbers and not self.webhook_url:
            raise ValueError("Webhook URL is required when revealing phone numbers")
        return self


class ScriptRequest(SearchCriteria):
    max_pages: int = Field(1, ge=1, le=100)
    auto_enrich: bool = False
    enrichment_settings: EnrichmentOptions | None = None

    def search_params(self) -> SearchParams:
        return SearchParams(**self.model_dump(exclude={"max_pages", "auto_enrich", "enrichment_settings"}))


class EnrichmentRequest(EnrichmentOptions):
    limit: int = Field(100, ge=1, le=500)

    def options(self) -> EnrichmentOptions:
        return EnrichmentOptions(**self.model_dump(exclude={"limit"}))


class BulkUpdateRequest(BaseModel):
    ids: list[int] = Field(..., min_length=1)
    processed: bool


# ---------------------------------------------------------------------------
# Provider responses
# ---------------------------------------------------------------------------


class Pagination(BaseModel):
    page: int = 1
    per_page: int = 0
    total_entries: int = 0
    total_pages: int = 0


class SearchResponse(BaseModel):
    people: list[dict[str, Any]] = []
    pagination: Pagination | None = None

    @field_validator("people", mode="before")
    @classmethod
    def _null_people(cls, value: Any) -> Any:
        return [] if value is None else value


class BulkMatchResponse(BaseModel):
    # Positionally aligned with the request's details; gaps are None
    matches: list[dict[str, Any] | None] = []
    breadcrumb_id: str | None = None

    @field_validator("matches", mode="before")
    @classmethod
    def _null_matches(cls, value: Any) -> Any:
        if value is None:
            return []
        # Anything that is not an object at a position counts as a gap
        return [m if isinstance(m, dict) and m else None for m in value]


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


class RunResult(BaseModel):
    total_companies: int = 0
    total_contacts: int = 0
    total_raw_results: int = 0
    pages_processed: int = 0
    cancelled: bool = False


class ErrorEntry(BaseModel):
    result_id: int
    error: str


class EnrichmentResult(BaseModel):
    total_processed: int = 0
    companies_created: int = 0
    contacts_created: int = 0
    errors: list[ErrorEntry] = []
    cancelled: bool = False


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class RawResultOut(BaseModel):
    id: int
    person_id: str
    first_name: str | None = None
    last_name_obfuscated: str | None = None
    title: str | None = None
    organization_name: str | None = None
    has_email: bool | None = None
    has_city: bool | None = None
    has_state: bool | None = None
    has_country: bool | None = None
    has_direct_phone: bool | None = None
    page_number: int | None = None
    processed: bool
    company_id: int | None = None
    contact_id: int | None = None
    search_params: dict[str, Any] = {}
    created_at: str | None = None


class RawResultPage(BaseModel):
    items: list[RawResultOut]
    page: int
    limit: int
    total: int
    total_pages: int


class ExecutionOut(BaseModel):
    id: int
    script_type: str
    status: str
    started_at: str | None = None
    completed_at: str | None = None
    current_page: int
    total_pages: int
    progress_status: str | None = None
    parameters: dict[str, Any] = {}
    results: dict[str, Any] | None = None
    error_message: str | None = None
    user_id: str | None = None


class ScriptRunResponse(BaseModel):
    success: bool
    execution_id: int
    data: RunResult
    enrichment: EnrichmentResult | None = None
    message: str


class EnrichmentRunResponse(BaseModel):
    success: bool
    execution_id: int
    data: EnrichmentResult
    message: str
