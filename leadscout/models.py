from __future__ import annotations

from datetime import datetime, UTC

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Exact, case-sensitive match is the natural key
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    industry: Mapped[str | None] = mapped_column(String(100), nullable=True)
    size: Mapped[str | None] = mapped_column(String(50), nullable=True)  # "1-10", "11-50", ...
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    website: Mapped[str | None] = mapped_column(String(500), nullable=True)
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)  # "manual" | "Apollo"
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    contacts: Mapped[list[Contact]] = relationship("Contact", back_populates="company")


class Contact(Base):
    __tablename__ = "contacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    position: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("companies.id", ondelete="SET NULL"), nullable=True,
    )
    linkedin_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    is_email_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(50), default="active")  # active | unsubscribed | bounced
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    company: Mapped[Company | None] = relationship("Company", back_populates="contacts")


class RawResult(Base):
    """One row per Apollo person ever seen by a search run."""

    __tablename__ = "apollo_search_results"
    __table_args__ = (Index("ix_apollo_search_results_processed", "processed"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    search_params_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    person_id: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name_obfuscated: Mapped[str | None] = mapped_column(String(100), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    organization_data_json: Mapped[str] = mapped_column(Text, default="{}")
    has_email: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_city: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_state: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_country: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    has_direct_phone: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    raw_response_json: Mapped[str] = mapped_column(Text, nullable=False)
    last_refreshed_at: Mapped[str | None] = mapped_column(String(100), nullable=True)
    page_number: Mapped[int | None] = mapped_column(Integer, nullable=True)

    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    company_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("companies.id"), nullable=True)
    contact_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("contacts.id"), nullable=True)

    # Enrichment lease; a row is claimable when processed is false and the lease is absent or expired
    claimed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)


class ScriptExecution(Base):
    __tablename__ = "script_executions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    script_type: Mapped[str] = mapped_column(String(50), nullable=False)  # apollo_search | apollo_enrich
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")  # running | completed | failed | cancelled
    started_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    current_page: Mapped[int] = mapped_column(Integer, default=0)
    total_pages: Mapped[int] = mapped_column(Integer, default=0)
    progress_status: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parameters_json: Mapped[str] = mapped_column(Text, default="{}")
    results_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_now, server_default=func.now())


class RateLimitCall(Base):
    """Call timestamps for rate limiters shared through the database."""

    __tablename__ = "rate_limit_calls"
    __table_args__ = (Index("ix_rate_limit_calls_key_called_at", "limiter_key", "called_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    limiter_key: Mapped[str] = mapped_column(String(100), nullable=False)
    called_at: Mapped[float] = mapped_column(Float, nullable=False)  # unix epoch seconds
