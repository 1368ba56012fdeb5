from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import Callable, Generator

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from leadscout import services
from leadscout.acquisition import AcquisitionEngine
from leadscout.client import ApolloClient
from leadscout.config import get_settings
from leadscout.db import get_session_factory, init_db, session_generator
from leadscout.enrichment import EnrichmentEngine
from leadscout.errors import ApolloAPIError, ApolloDatabaseError, ApolloValidationError
from leadscout.models import ScriptExecution
from leadscout.rate_limiter import build_rate_limiter
from leadscout.schemas import (
    BulkUpdateRequest,
    EnrichmentRequest,
    EnrichmentResult,
    EnrichmentRunResponse,
    ExecutionOut,
    RawResultPage,
    ScriptRequest,
    ScriptRunResponse,
)

log = logging.getLogger(__name__)

# Running executions that can be cancelled, keyed by execution id
_cancel_events: dict[int, asyncio.Event] = {}

COMMON_TITLES = [
    "CEO", "CTO", "CFO", "COO", "Founder", "Co-Founder", "VP of Sales", "VP of Marketing",
    "Head of Growth", "Director of Marketing", "Director of Sales", "Marketing Manager",
    "Sales Manager",
]

COMMON_LOCATIONS = [
    "United States", "United Kingdom", "Canada", "Australia", "Germany", "France",
    "Netherlands", "Spain", "Italy", "Switzerland", "Sweden", "Norway", "Denmark",
    "Finland", "Belgium", "Austria", "Ireland", "Portugal", "Poland", "India",
    "Singapore", "Japan", "United Arab Emirates", "Israel", "Brazil", "Mexico",
    "New Zealand", "South Africa",
]

HEADCOUNT_RANGES = [
    {"label": "1-10", "min": 1, "max": 10},
    {"label": "11-50", "min": 11, "max": 50},
    {"label": "51-200", "min": 51, "max": 200},
    {"label": "201-500", "min": 201, "max": 500},
    {"label": "501-1000", "min": 501, "max": 1000},
    {"label": "1001-5000", "min": 1001, "max": 5000},
    {"label": "5001+", "min": 5001, "max": 100000},
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="leadscout",
    version="0.1.0",
    description=(
        "Apollo acquisition and enrichment pipeline. Search runs collect obfuscated "
        "leads into a raw results backlog; enrichment runs resolve the backlog into "
        "companies and contacts. No authentication; run behind your own gateway."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scripts", "description": "Run Apollo search (acquisition) scripts."},
        {"name": "Results", "description": "Browse and enrich the raw results backlog."},
        {"name": "Executions", "description": "Execution history, progress, and cancellation."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def session_factory() -> Callable[[], Session]:
    return get_session_factory()


def db_session(factory: Callable[[], Session] = Depends(session_factory)) -> Generator[Session, None, None]:
    yield from session_generator(factory)


def apollo_client(factory: Callable[[], Session] = Depends(session_factory)) -> ApolloClient:
    settings = get_settings()
    if not settings.apollo_api_key:
        raise HTTPException(500, "Apollo API key not configured")
    return ApolloClient(settings=settings, rate_limiter=build_rate_limiter(settings, factory))


@app.exception_handler(ApolloAPIError)
async def apollo_api_error_handler(request: Request, exc: ApolloAPIError):
    status = exc.status_code if exc.is_client_error else 500
    return JSONResponse(
        status_code=status,
        content={"error": "Apollo API error", "message": exc.user_message(), "status_code": exc.status_code},
    )


@app.exception_handler(ApolloValidationError)
async def apollo_validation_error_handler(request: Request, exc: ApolloValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Validation failed", "message": str(exc), "field": exc.field},
    )


@app.exception_handler(ApolloDatabaseError)
async def apollo_database_error_handler(request: Request, exc: ApolloDatabaseError):
    log.error("Database operation %s failed: %s", exc.operation, exc)
    return JSONResponse(status_code=500, content={"error": "Database error", "message": str(exc)})


# ---------------------------------------------------------------------------
# Routes: Scripts
# ---------------------------------------------------------------------------


@app.get("/api/scripts/apollo", tags=["Scripts"], summary="Apollo configuration and common search options")
async def apollo_config():
    return {
        "configured": bool(get_settings().apollo_api_key),
        "options": {
            "common_titles": COMMON_TITLES,
            "common_locations": COMMON_LOCATIONS,
            "headcount_ranges": HEADCOUNT_RANGES,
        },
    }


@app.post("/api/scripts/apollo", response_model=ScriptRunResponse, tags=["Scripts"],
          summary="Run an Apollo search and store raw results (optionally enrich them)")
async def run_apollo_script(
    body: ScriptRequest,
    factory: Callable[[], Session] = Depends(session_factory),
    client: ApolloClient = Depends(apollo_client),
):
    tracker = services.ExecutionTracker(factory)
    execution_id = tracker.start("apollo_search", body.model_dump(), total=body.max_pages)
    cancel_event = _cancel_events[execution_id] = asyncio.Event()
    engine = AcquisitionEngine(client, factory)
    try:
        result = await engine.run(
            body.search_params(), body.max_pages,
            progress=tracker.callback(execution_id), cancel_event=cancel_event,
        )
    except Exception as exc:
        message = exc.user_message() if isinstance(exc, ApolloAPIError) else str(exc)
        tracker.fail(execution_id, message)
        raise
    finally:
        _cancel_events.pop(execution_id, None)

    enrichment: EnrichmentResult | None = None
    if body.auto_enrich and result.total_raw_results > 0 and not result.cancelled:
        try:
            enrichment = await EnrichmentEngine(client, factory).process_unprocessed_results(
                result.total_raw_results, options=body.enrichment_settings,
            )
        except Exception as exc:
            # Search results are already stored
            log.warning("Auto-enrichment failed: %s", exc)

    payload = result.model_dump()
    if enrichment is not None:
        payload["enrichment"] = enrichment.model_dump()
    tracker.complete(execution_id, payload, cancelled=result.cancelled)

    if enrichment is not None:
        message = (
            f"Saved {result.total_raw_results} raw results and enriched "
            f"{enrichment.contacts_created} contacts from {enrichment.companies_created} companies"
        )
    else:
        message = (
            f"Saved {result.total_raw_results} raw results, created "
            f"{result.total_companies} companies over {result.pages_processed} pages"
        )
    return {"success": True, "execution_id": execution_id, "data": result,
            "enrichment": enrichment, "message": message}


# ---------------------------------------------------------------------------
# Routes: Results
# ---------------------------------------------------------------------------


@app.post("/api/apollo-results/enrich", response_model=EnrichmentRunResponse, tags=["Results"],
          summary="Enrich unprocessed raw results into companies and contacts")
async def enrich_results(
    body: EnrichmentRequest,
    factory: Callable[[], Session] = Depends(session_factory),
    client: ApolloClient = Depends(apollo_client),
):
    tracker = services.ExecutionTracker(factory)
    execution_id = tracker.start("apollo_enrich", body.model_dump())
    cancel_event = _cancel_events[execution_id] = asyncio.Event()
    try:
        result = await EnrichmentEngine(client, factory).process_unprocessed_results(
            body.limit, options=body.options(),
            progress=tracker.callback(execution_id), cancel_event=cancel_event,
        )
    except Exception as exc:
        tracker.fail(execution_id, str(exc))
        raise
    finally:
        _cancel_events.pop(execution_id, None)

    tracker.complete(execution_id, result.model_dump(), cancelled=result.cancelled)
    return {
        "success": True,
        "execution_id": execution_id,
        "data": result,
        "message": (
            f"Processed {result.total_processed} results. Created {result.companies_created} "
            f"companies and {result.contacts_created} contacts."
        ),
    }


@app.get("/api/apollo-results", response_model=RawResultPage, tags=["Results"],
         summary="List raw results with processed filter, search, and pagination")
async def list_results(
    processed: bool | None = Query(None, description="Filter by processed flag"),
    search: str | None = Query(None, description="Match first name, organization, or title"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    items, total = services.query_raw_results(
        session, processed=processed, search=search, page=page, limit=limit,
    )
    return {"items": items, "page": page, "limit": limit, "total": total,
            "total_pages": math.ceil(total / limit) if total else 0}


@app.patch("/api/apollo-results/bulk-update", tags=["Results"],
           summary="Administratively mark raw results processed or unprocessed")
async def bulk_update_results(body: BulkUpdateRequest, session: Session = Depends(db_session)):
    updated = services.set_processed(session, body.ids, body.processed)
    session.commit()
    return {"success": True, "updated": updated}


# ---------------------------------------------------------------------------
# Routes: Executions
# ---------------------------------------------------------------------------


@app.get("/api/script-executions", response_model=list[ExecutionOut], tags=["Executions"],
         summary="Recent script executions, newest first")
async def list_executions(
    status: str | None = Query(None, description="running, completed, failed, or cancelled"),
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    query = select(ScriptExecution)
    if status:
        query = query.where(ScriptExecution.status == status)
    rows = session.execute(
        query.order_by(ScriptExecution.started_at.desc(), ScriptExecution.id.desc()).limit(limit)
    ).scalars().all()
    return [services.execution_summary(ex) for ex in rows]


@app.get("/api/script-executions/{execution_id}", response_model=ExecutionOut, tags=["Executions"],
         summary="Get one execution with its progress and results")
async def get_execution(execution_id: int, session: Session = Depends(db_session)):
    ex = session.get(ScriptExecution, execution_id)
    if ex is None:
        raise HTTPException(404, "Execution not found")
    return services.execution_summary(ex)


@app.post("/api/script-executions/{execution_id}/cancel", tags=["Executions"],
          summary="Request cancellation of a running execution")
async def cancel_execution(execution_id: int):
    event = _cancel_events.get(execution_id)
    if event is None:
        raise HTTPException(409, "Execution is not running in this process")
    event.set()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("leadscout.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
