"""Shared business logic for the pipeline engines, the API and the CLI.

Helpers here only flush; committing (and retrying a unit of work that lost a
uniqueness race) is the caller's job.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, TypeVar

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from leadscout.errors import ApolloDatabaseError
from leadscout.models import Company, Contact, RawResult, ScriptExecution
from leadscout.utils import json_dump, json_parse

log = logging.getLogger(__name__)

T = TypeVar("T")

APOLLO_SOURCE = "Apollo"
PLACEHOLDER_EMAIL_DOMAIN = "@placeholder.local"

# (current, total, human readable status)
ProgressCallback = Callable[[int, int, str], None]

_SIZE_BUCKETS = (
    (10, "1-10"),
    (50, "11-50"),
    (200, "51-200"),
    (500, "201-500"),
    (1000, "501-1000"),
    (5000, "1001-5000"),
    (10000, "5001-10000"),
)


def _now() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Small domain rules
# ---------------------------------------------------------------------------


def company_size_range(employee_count: int) -> str:
    for upper, label in _SIZE_BUCKETS:
        if employee_count <= upper:
            return label
    return "10000+"


def is_placeholder_email(email: str | None) -> bool:
    return bool(email) and email.strip().lower().endswith(PLACEHOLDER_EMAIL_DOMAIN)


def first_phone(person: dict[str, Any]) -> str | None:
    phones = person.get("phone_numbers") or []
    if phones and isinstance(phones[0], dict):
        return phones[0].get("sanitized_number") or None
    return None


# ---------------------------------------------------------------------------
# Companies and contacts
# ---------------------------------------------------------------------------


def find_company(session: Session, name: str) -> Company | None:
    return session.execute(select(Company).where(Company.name == name)).scalars().first()


def upsert_company(
    session: Session,
    name: str,
    *,
    source: str = APOLLO_SOURCE,
    city: str | None = None,
    country: str | None = None,
    size: str | None = None,
    created_by: str | None = None,
) -> tuple[Company, bool]:
    """Find a company by exact name or create it. Returns ``(company, created)``.

    An existing company gets the source tag and ``updated_at`` bumped; location
    and size are only filled in where still empty.
    """
    company = find_company(session, name)
    if company is None:
        company = Company(
            name=name, source=source, city=city or None, country=country or None,
            size=size, created_by=created_by,
        )
        session.add(company)
        session.flush()
        return company, True

    company.source = source
    company.updated_at = _now()
    if city and not company.city:
        company.city = city
    if country and not company.country:
        company.country = country
    if size and not company.size:
        company.size = size
    session.flush()
    return company, False


def find_contact(session: Session, email: str) -> Contact | None:
    return session.execute(select(Contact).where(Contact.email == email)).scalars().first()


def upsert_contact(
    session: Session,
    person: dict[str, Any],
    company_id: int | None,
    created_by: str | None = None,
) -> tuple[Contact, bool]:
    """Insert or update the contact keyed by the enriched person's email."""
    email = (person.get("email") or "").strip()
    if not email:
        raise ValueError("Enriched person has no email")

    values = {
        "first_name": person.get("first_name") or "",
        "last_name": person.get("last_name") or "",
        "position": person.get("title") or None,
        "company_id": company_id,
        "linkedin_url": person.get("linkedin_url") or None,
        "phone": first_phone(person),
        "is_email_verified": person.get("email_status") == "verified",
    }
    contact = find_contact(session, email)
    if contact is None:
        contact = Contact(email=email, created_by=created_by, **values)
        session.add(contact)
        session.flush()
        return contact, True

    for key, val in values.items():
        # Don't blank out data the provider omitted this time
        if val is None and key in ("position", "linkedin_url", "phone"):
            continue
        setattr(contact, key, val)
    contact.updated_at = _now()
    session.flush()
    return contact, False


# ---------------------------------------------------------------------------
# Raw results queue
# ---------------------------------------------------------------------------


def raw_result_exists(session: Session, person_id: str) -> bool:
    return session.execute(
        select(RawResult.id).where(RawResult.person_id == person_id).limit(1)
    ).first() is not None


def _claimable(now: datetime):
    return (RawResult.processed.is_(False)) & or_(
        RawResult.claimed_until.is_(None), RawResult.claimed_until < now,
    )


def claim_unprocessed(
    session: Session, limit: int, owner: str, ttl_seconds: int,
) -> list[RawResult]:
    """Lease up to *limit* unprocessed rows to *owner*, oldest first.

    The lease is taken with a conditional UPDATE, so two runs selecting the
    same rows at the same moment cannot both win a row.
    """
    now = _now()
    candidate_ids = session.execute(
        select(RawResult.id).where(_claimable(now)).order_by(RawResult.id).limit(limit)
    ).scalars().all()
    if not candidate_ids:
        return []
    session.execute(
        update(RawResult)
        .where(RawResult.id.in_(candidate_ids), _claimable(now))
        .values(claimed_by=owner, claimed_until=now + timedelta(seconds=ttl_seconds))
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return list(session.execute(
        select(RawResult)
        .where(RawResult.id.in_(candidate_ids), RawResult.claimed_by == owner)
        .order_by(RawResult.id)
    ).scalars().all())


def release_claims(session: Session, ids: list[int], owner: str) -> None:
    if not ids:
        return
    session.execute(
        update(RawResult)
        .where(RawResult.id.in_(ids), RawResult.claimed_by == owner)
        .values(claimed_by=None, claimed_until=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()


def mark_processed(session: Session, result_id: int, company_id: int | None, contact_id: int) -> bool:
    """Flip ``processed`` false -> true with back-references. Returns False if already processed."""
    res = session.execute(
        update(RawResult)
        .where(RawResult.id == result_id, RawResult.processed.is_(False))
        .values(processed=True, company_id=company_id, contact_id=contact_id,
                claimed_by=None, claimed_until=None)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def set_processed(session: Session, ids: list[int], processed: bool) -> int:
    """Administrative override of the processed flag (caller must commit)."""
    res = session.execute(
        update(RawResult).where(RawResult.id.in_(ids)).values(processed=processed)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


def raw_result_summary(row: RawResult) -> dict:
    return {
        "id": row.id, "person_id": row.person_id, "first_name": row.first_name,
        "last_name_obfuscated": row.last_name_obfuscated, "title": row.title,
        "organization_name": row.organization_name,
        "has_email": row.has_email, "has_city": row.has_city, "has_state": row.has_state,
        "has_country": row.has_country, "has_direct_phone": row.has_direct_phone,
        "page_number": row.page_number, "processed": row.processed,
        "company_id": row.company_id, "contact_id": row.contact_id,
        "search_params": json_parse(row.search_params_json),
        "created_at": _iso(row.created_at),
    }


def query_raw_results(
    session: Session, *, processed: bool | None = None, search: str | None = None,
    page: int = 1, limit: int = 50,
) -> tuple[list[dict], int]:
    query = select(RawResult)
    if processed is not None:
        query = query.where(RawResult.processed.is_(processed))
    if search:
        pattern = f"%{search.strip()}%"
        query = query.where(or_(
            RawResult.first_name.ilike(pattern),
            RawResult.organization_name.ilike(pattern),
            RawResult.title.ilike(pattern),
        ))
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    rows = session.execute(
        query.order_by(RawResult.id.desc()).offset((page - 1) * limit).limit(limit)
    ).scalars().all()
    return [raw_result_summary(r) for r in rows], total


# ---------------------------------------------------------------------------
# Execution tracking
# ---------------------------------------------------------------------------


def execution_summary(ex: ScriptExecution) -> dict:
    return {
        "id": ex.id, "script_type": ex.script_type, "status": ex.status,
        "started_at": _iso(ex.started_at), "completed_at": _iso(ex.completed_at),
        "current_page": ex.current_page, "total_pages": ex.total_pages,
        "progress_status": ex.progress_status,
        "parameters": json_parse(ex.parameters_json),
        "results": json_parse(ex.results_json, None),
        "error_message": ex.error_message, "user_id": ex.user_id,
    }


class ExecutionTracker:
    """Persists run progress into ``script_executions``.

    Engines only see :meth:`callback`; the tracker owns the record.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def start(
        self, script_type: str, parameters: dict[str, Any], *,
        user_id: str | None = None, total: int = 0,
    ) -> int:
        try:
            with self._session_factory() as session:
                ex = ScriptExecution(
                    script_type=script_type, status="running", total_pages=total, current_page=0,
                    progress_status="Starting...", parameters_json=json_dump(parameters), user_id=user_id,
                )
                session.add(ex)
                session.commit()
                return ex.id
        except SQLAlchemyError as exc:
            raise ApolloDatabaseError(
                "Failed to create execution record", "create_execution", {"script_type": script_type},
            ) from exc

    def _update(self, execution_id: int, **values: Any) -> None:
        with self._session_factory() as session:
            ex = session.get(ScriptExecution, execution_id)
            if ex is None:
                log.warning("Execution %s vanished while updating", execution_id)
                return
            for key, val in values.items():
                setattr(ex, key, val)
            ex.updated_at = _now()
            session.commit()

    def progress(self, execution_id: int, current: int, total: int, status: str) -> None:
        self._update(execution_id, current_page=current, total_pages=total, progress_status=status[:255])

    def callback(self, execution_id: int) -> ProgressCallback:
        def _report(current: int, total: int, status: str) -> None:
            self.progress(execution_id, current, total, status)
        return _report

    def complete(self, execution_id: int, results: dict[str, Any], *, cancelled: bool = False) -> None:
        self._update(
            execution_id, status="cancelled" if cancelled else "completed",
            completed_at=_now(), results_json=json_dump(results),
            progress_status="Cancelled" if cancelled else "Completed",
        )

    def fail(self, execution_id: int, error: str) -> None:
        self._update(
            execution_id, status="failed", completed_at=_now(),
            error_message=error[:1000], progress_status="Failed",
        )


# ---------------------------------------------------------------------------
# Units of work
# ---------------------------------------------------------------------------


def _run_unit(session_factory: Callable[[], Session], unit: Callable[[Session], T]) -> T:
    with session_factory() as session:
        try:
            value = unit(session)
            session.commit()
            return value
        except Exception:
            session.rollback()
            raise


def run_unit(session_factory: Callable[[], Session], unit: Callable[[Session], T], *, label: str) -> T:
    """Run *unit* in its own transaction.

    If it loses a uniqueness race (a concurrent run inserted the same company,
    contact or raw result first), it is run once more, and its find-or-create
    steps then see the winner's row and update it.
    """
    try:
        return _run_unit(session_factory, unit)
    except IntegrityError:
        log.info("Conflict on %s, retrying", label)
        return _run_unit(session_factory, unit)
