"""Acquisition engine: paginate Apollo people search into the raw results store.

Search results never carry real email addresses, so this engine creates
company shells only. Contacts come exclusively from enrichment.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadscout import services
from leadscout.client import ApolloClient
from leadscout.models import RawResult
from leadscout.schemas import RunResult, SearchParams, SearchResponse
from leadscout.utils import json_dump, log_progress

log = logging.getLogger(__name__)


def raw_result_from_person(
    person: dict[str, Any], search_params: dict[str, Any], page_number: int,
    created_by: str | None = None,
) -> RawResult:
    org = person.get("organization") or {}
    return RawResult(
        search_params_json=json_dump(search_params),
        person_id=str(person["id"]),
        first_name=person.get("first_name"),
        last_name_obfuscated=person.get("last_name_obfuscated") or None,
        title=person.get("title"),
        organization_name=org.get("name"),
        organization_data_json=json_dump(org),
        has_email=person.get("has_email"),
        has_city=person.get("has_city"),
        has_state=person.get("has_state"),
        has_country=person.get("has_country"),
        # Apollo sends a string hint here rather than a boolean
        has_direct_phone=True if person.get("has_direct_phone") else None,
        raw_response_json=json_dump(person),
        last_refreshed_at=person.get("last_refreshed_at"),
        page_number=page_number,
        processed=False,
        created_by=created_by,
    )


class AcquisitionEngine:
    def __init__(
        self,
        client: ApolloClient,
        session_factory: Callable[[], Session],
        *,
        actor_id: str | None = None,
        page_pause_seconds: float | None = None,
    ):
        self.client = client
        self._session_factory = session_factory
        self.actor_id = actor_id
        self.page_pause_seconds = (
            client.settings.page_pause_seconds if page_pause_seconds is None else page_pause_seconds
        )

    async def search(self, params: SearchParams) -> SearchResponse:
        return await self.client.search_people(params)

    def persist_raw(
        self, people: list[dict[str, Any]], search_params: dict[str, Any], page_number: int,
    ) -> int:
        """Insert unseen people as unprocessed raw results. Returns the number inserted."""
        saved = 0
        errors: list[tuple[str, str]] = []
        for person in people:
            person_id = str(person.get("id") or "")
            if not person_id:
                errors.append(("?", "person has no id"))
                continue
            try:
                with self._session_factory() as session:
                    if services.raw_result_exists(session, person_id):
                        continue
                    session.add(raw_result_from_person(person, search_params, page_number, self.actor_id))
                    try:
                        session.commit()
                    except IntegrityError:
                        # Another run inserted the same person first
                        session.rollback()
                        log.debug("Raw result %s inserted concurrently, skipping", person_id)
                        continue
                    saved += 1
            except (SQLAlchemyError, KeyError, TypeError, ValueError) as exc:
                errors.append((person_id, str(exc)))
                log.error("Error saving raw result person=%s page=%d: %s", person_id, page_number, exc)

        if errors:
            log.warning("Failed to save %d raw results on page %d", len(errors), page_number)
        log.info(
            "Saved %d raw results page=%d skipped=%d",
            saved, page_number, len(people) - saved - len(errors),
        )
        return saved

    def reconcile_companies(self, people: list[dict[str, Any]]) -> int:
        """Find-or-create a company shell per person. Returns the number created."""
        created = 0
        errors: list[tuple[str, str]] = []
        for person in people:
            person_id = str(person.get("id") or "?")
            name = (person.get("organization") or {}).get("name")
            if not name:
                log.debug("Person %s has no organization name, skipping company", person_id)
                continue
            try:
                # One transaction per person
                _, was_created = services.run_unit(
                    self._session_factory,
                    lambda session: services.upsert_company(session, name, created_by=self.actor_id),
                    label=f"company {name!r}",
                )
            except SQLAlchemyError as exc:
                errors.append((person_id, str(exc)))
                log.error("Error saving company %r for person %s: %s", name, person_id, exc)
                continue
            created += int(was_created)

        if errors:
            log.warning("Failed to save companies for %d people", len(errors))
        log.info("Company reconciliation done created=%d errors=%d", created, len(errors))
        return created

    async def run(
        self,
        params: SearchParams,
        max_pages: int = 1,
        *,
        progress: services.ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> RunResult:
        started = time.monotonic()
        result = RunResult()
        start_page = params.page or 1
        current_page = start_page
        criteria = params.criteria()

        log.info("Starting Apollo acquisition start_page=%d max_pages=%d", start_page, max_pages)
        try:
            for i in range(max_pages):
                if cancel_event is not None and cancel_event.is_set():
                    log.info("Acquisition cancelled before page %d", current_page)
                    result.cancelled = True
                    break

                log_progress(log, i + 1, max_pages, f"Processing page {current_page}")
                if progress:
                    progress(i + 1, max_pages, f"Processing page {current_page}...")

                data = await self.search(params.model_copy(update={"page": current_page}))
                if not data.people:
                    log.info("No more results at page %d, stopping", current_page)
                    break

                saved = self.persist_raw(data.people, criteria, current_page)
                companies = self.reconcile_companies(data.people)
                result.total_raw_results += saved
                result.total_companies += companies
                result.pages_processed += 1
                log.info(
                    "Page %d completed raw_saved=%d companies_created=%d",
                    current_page, saved, companies,
                )

                if data.pagination and current_page >= data.pagination.total_pages:
                    log.info("Reached last page %d of %d", current_page, data.pagination.total_pages)
                    break
                if data.pagination is None:
                    log.warning("No pagination info on page %d, continuing with requested pages", current_page)

                current_page += 1
                if i < max_pages - 1 and self.page_pause_seconds > 0:
                    await asyncio.sleep(self.page_pause_seconds)
        except Exception:
            log.exception("Apollo acquisition failed after %d pages", result.pages_processed)
            raise

        log.info(
            "Apollo acquisition finished companies=%d raw=%d pages=%d in %.1fs",
            result.total_companies, result.total_raw_results, result.pages_processed,
            time.monotonic() - started,
        )
        return result
