"""Enrichment engine: resolve unprocessed raw results into companies and contacts.

The backlog is the set of raw results with ``processed = false``. A row only
becomes processed after its contact was reconciled with a real email; every
other outcome (no match, placeholder email, row error, batch error) leaves it
in the backlog so a later run can retry it.  Re-running is always safe.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadscout import services
from leadscout.client import MAX_BULK_DETAILS, ApolloClient
from leadscout.errors import ApolloDatabaseError
from leadscout.models import RawResult
from leadscout.schemas import BulkMatchResponse, EnrichmentOptions, EnrichmentResult, ErrorEntry
from leadscout.utils import chunked, json_parse, log_progress

log = logging.getLogger(__name__)

NO_MATCH = "No match found"
NO_EMAIL = "No email found in enriched data"
PLACEHOLDER_EMAIL = "Placeholder Apollo email (ignored)"


@dataclass
class _RowOutcome:
    company_created: bool = False
    contact_created: bool = False
    error: str | None = None


def build_details(row: RawResult) -> dict[str, Any]:
    """Match hints for one row; the Apollo person id is preferred when known."""
    raw = json_parse(row.raw_response_json)
    org = json_parse(row.organization_data_json)
    details = {
        "id": row.person_id,
        "first_name": row.first_name,
        "last_name": raw.get("last_name"),
        "name": raw.get("name"),
        "email": raw.get("email"),
        "organization_name": row.organization_name,
        "domain": org.get("primary_domain"),
    }
    return {k: v for k, v in details.items() if v}


class EnrichmentEngine:
    batch_size = MAX_BULK_DETAILS

    def __init__(
        self,
        client: ApolloClient,
        session_factory: Callable[[], Session],
        *,
        batch_pause_seconds: float | None = None,
        claim_ttl_seconds: int | None = None,
    ):
        self.client = client
        self._session_factory = session_factory
        settings = client.settings
        self.batch_pause_seconds = (
            settings.page_pause_seconds if batch_pause_seconds is None else batch_pause_seconds
        )
        self.claim_ttl_seconds = settings.claim_ttl_seconds if claim_ttl_seconds is None else claim_ttl_seconds

    async def enrich_batch(
        self,
        details: list[dict[str, Any]],
        reveal_emails: bool = True,
        reveal_phones: bool = False,
        webhook_url: str | None = None,
    ) -> BulkMatchResponse:
        return await self.client.bulk_match(details, reveal_emails, reveal_phones, webhook_url)

    # ------------------------------------------------------------------
    # Row reconciliation
    # ------------------------------------------------------------------

    def _reconcile_row(
        self, session: Session, row: RawResult, person: dict[str, Any], actor_id: str | None,
    ) -> _RowOutcome:
        outcome = _RowOutcome()

        org = person.get("organization") or {}
        org_name = org.get("name")
        if org_name:
            employees = org.get("estimated_num_employees")
            company, outcome.company_created = services.upsert_company(
                session, org_name,
                city=org.get("city"), country=org.get("country"),
                size=services.company_size_range(employees) if employees else None,
                created_by=actor_id,
            )
            company_id = company.id
        else:
            company_id = row.company_id

        email = (person.get("email") or "").strip()
        if not email:
            outcome.error = NO_EMAIL
            return outcome
        if services.is_placeholder_email(email):
            outcome.error = PLACEHOLDER_EMAIL
            return outcome

        contact, outcome.contact_created = services.upsert_contact(
            session, person, company_id, created_by=actor_id,
        )
        if not services.mark_processed(session, row.id, company_id, contact.id):
            log.warning("Result %s was already processed by another run", row.id)
        return outcome

    def _process_row(self, row: RawResult, person: dict[str, Any], actor_id: str | None) -> _RowOutcome:
        # Company, contact and processed flag commit together
        return services.run_unit(
            self._session_factory,
            lambda session: self._reconcile_row(session, row, person, actor_id),
            label=f"result {row.id}",
        )

    # ------------------------------------------------------------------
    # Backlog consumer
    # ------------------------------------------------------------------

    async def process_unprocessed_results(
        self,
        limit: int = 100,
        actor_id: str | None = None,
        options: EnrichmentOptions | None = None,
        *,
        progress: services.ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> EnrichmentResult:
        options = options or EnrichmentOptions()
        owner = uuid.uuid4().hex
        result = EnrichmentResult()

        log.info(
            "Fetching unprocessed results limit=%d reveal_emails=%s reveal_phones=%s webhook=%s",
            limit, options.reveal_personal_emails, options.reveal_phone_numbers,
            "configured" if options.webhook_url else "none",
        )
        try:
            with self._session_factory() as session:
                rows = services.claim_unprocessed(session, limit, owner, self.claim_ttl_seconds)
        except SQLAlchemyError as exc:
            raise ApolloDatabaseError(
                "Failed to fetch unprocessed results", "claim_unprocessed", {"limit": limit},
            ) from exc

        if not rows:
            log.info("No unprocessed results found")
            return result

        result.total_processed = len(rows)
        batches = list(chunked(rows, self.batch_size))
        log.info("Found %d unprocessed results in %d batches", len(rows), len(batches))

        for batch_no, batch in enumerate(batches, start=1):
            if cancel_event is not None and cancel_event.is_set():
                log.info("Enrichment cancelled before batch %d/%d", batch_no, len(batches))
                result.cancelled = True
                remaining = [r.id for b in batches[batch_no - 1:] for r in b]
                with self._session_factory() as session:
                    services.release_claims(session, remaining, owner)
                break

            log_progress(log, batch_no, len(batches), "Enriching batches")
            if progress:
                progress(batch_no, len(batches), f"Enriching batch {batch_no}/{len(batches)}...")
            try:
                await self._process_batch(batch, actor_id, options, result)
            finally:
                with self._session_factory() as session:
                    services.release_claims(session, [r.id for r in batch], owner)

            if batch_no < len(batches) and self.batch_pause_seconds > 0:
                await asyncio.sleep(self.batch_pause_seconds)

        log.info(
            "Enrichment finished considered=%d companies_created=%d contacts_created=%d errors=%d",
            result.total_processed, result.companies_created, result.contacts_created, len(result.errors),
        )
        return result

    async def _process_batch(
        self,
        batch: list[RawResult],
        actor_id: str | None,
        options: EnrichmentOptions,
        result: EnrichmentResult,
    ) -> None:
        details = [build_details(row) for row in batch]
        try:
            response = await self.enrich_batch(
                details, options.reveal_personal_emails, options.reveal_phone_numbers, options.webhook_url,
            )
        except Exception as exc:
            log.error("Batch enrichment failed size=%d: %s", len(batch), exc)
            result.errors.extend(ErrorEntry(result_id=row.id, error=str(exc)) for row in batch)
            return

        matches = response.matches
        if len(matches) != len(batch):
            log.error(
                "Bulk match returned %d matches for %d details; pairing by position",
                len(matches), len(batch),
            )

        for idx, row in enumerate(batch):
            person = matches[idx] if idx < len(matches) else None
            if not person:
                log.warning("No match found for result %s person=%s", row.id, row.person_id)
                result.errors.append(ErrorEntry(result_id=row.id, error=NO_MATCH))
                continue
            try:
                outcome = self._process_row(row, person, actor_id)
            except Exception as exc:
                log.exception("Error processing result %s", row.id)
                result.errors.append(ErrorEntry(result_id=row.id, error=str(exc) or type(exc).__name__))
                continue

            result.companies_created += int(outcome.company_created)
            result.contacts_created += int(outcome.contact_created)
            if outcome.error:
                log.warning(
                    "No usable email for result %s (%s %s): %s",
                    row.id, person.get("first_name"), person.get("last_name"), outcome.error,
                )
                result.errors.append(ErrorEntry(result_id=row.id, error=outcome.error))
