"""
FastAPI Application Entry Point

TableCall - restaurant call lifecycle and semaphore board.
Runs on the in-memory call store (development) or PostgreSQL (production).

Endpoints:
    - POST /api/establishments: Register an establishment
    - GET /api/establishments/{id}/snapshot: Raw snapshot (terminal sync)
    - GET /api/establishments/{id}/board: Semaphore board for staff
    - POST /api/establishments/{id}/calls: Customer raises a call
    - POST /api/establishments/{id}/tables/{table}/...: Staff actions
    - GET /api/establishments/{id}/statistics: Occupancy and history
    - /api/customers/{id}/favorites: Customer favorites
    - GET /health: System health check

Terminals keep their boards current by polling ``/snapshot`` (see
``tablecall.client.TableCallClient`` and ``tablecall.engine.SyncLoop``).
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tablecall.core.config import get_settings, setup_logging
from tablecall.domain import (
    CallType,
    EstablishmentSnapshot,
    InvalidSettingsError,
    normalize_table_number,
    sanitize_phone,
)
from tablecall.engine import (
    Clock,
    LifecycleController,
    describe_establishment,
)
from tablecall.engine.statistics import (
    StatisticsPeriod,
    current_statistics,
    historical_statistics,
    period_start,
)
from tablecall.engine.status import establishment_is_open
from tablecall.schemas import (
    BoardResponse,
    CallCreate,
    CallResponse,
    ErrorResponse,
    EstablishmentCreate,
    EstablishmentCreateResponse,
    EstablishmentSearchResponse,
    ExportResponse,
    FavoriteCreate,
    FavoritesResponse,
    HealthResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    LifecycleResponse,
    PendingResponse,
    SettingsUpdate,
    SnapshotResponse,
    StatisticsResponse,
    TableBoardResponse,
)
from tablecall.services.store import (
    BaseCallStore,
    EstablishmentNotFoundError,
    StoreError,
    get_call_store,
)
from tablecall.tasks import export_call_history

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

_clock = Clock()


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    store = get_call_store()

    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Call store: {store.provider_name}")
    logger.info("=" * 60)

    if store.provider_name == "sqlalchemy":
        from tablecall.database import init_db
        await init_db()
        logger.info("✅ Database initialized")

    logger.info("✅ Application ready!")

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    if store.provider_name == "sqlalchemy":
        from tablecall.database import engine
        await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Restaurant table calls (waiter, menu, bill) with a traffic-light "
        "board for staff. Terminals sync by polling establishment snapshots."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_store() -> BaseCallStore:
    return get_call_store()


def get_clock() -> Clock:
    return _clock


def get_controller(
    store: BaseCallStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> LifecycleController:
    """Controller for one request. Clients refresh by polling, so no hook."""
    return LifecycleController(store, clock=clock)


def parse_table_number(table: str) -> str:
    try:
        return normalize_table_number(table)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🛎️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(store: BaseCallStore = Depends(get_store)) -> HealthResponse:
    """Verify the call store and Redis are reachable."""

    store_status = "healthy"
    try:
        if not await store.health_check():
            store_status = "unhealthy"
    except Exception as e:
        store_status = f"unhealthy: {str(e)}"
        logger.error(f"Store health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    overall = "operational" if all(
        s == "healthy" for s in [store_status, redis_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        store=store_status,
        redis=redis_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# ESTABLISHMENT ENDPOINTS
# =============================================================================

@app.post(
    "/api/establishments",
    response_model=EstablishmentCreateResponse,
    responses={422: {"model": ErrorResponse}},
    tags=["Establishments"],
    summary="Register Establishment",
)
async def create_establishment(
    data: EstablishmentCreate,
    store: BaseCallStore = Depends(get_store),
) -> EstablishmentCreateResponse:
    establishment_id = await store.create_establishment(
        name=data.name,
        phone=data.phone,
        owner_id=data.owner_id,
    )
    logger.info(f"Establishment {establishment_id} registered: {data.name}")
    return EstablishmentCreateResponse(establishment_id=establishment_id)


@app.get(
    "/api/establishments/search",
    response_model=EstablishmentSearchResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Establishments"],
)
async def search_establishment(
    phone: str = Query(..., min_length=1),
    store: BaseCallStore = Depends(get_store),
) -> EstablishmentSearchResponse:
    """Customers find an establishment by its phone number."""
    cleaned = sanitize_phone(phone)
    establishment_id = await store.find_establishment_by_phone(cleaned) if cleaned else None
    if establishment_id is None:
        raise HTTPException(status_code=404, detail=f"No establishment with phone {phone}")

    snapshot = await store.get_establishment_snapshot(establishment_id)
    return EstablishmentSearchResponse(establishment_id=establishment_id, name=snapshot.name)


@app.get(
    "/api/establishments/{establishment_id}/snapshot",
    response_model=SnapshotResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Establishments"],
    summary="Establishment Snapshot",
)
async def get_snapshot(
    establishment_id: str,
    store: BaseCallStore = Depends(get_store),
) -> SnapshotResponse:
    """Settings, open flag, heartbeat and every active call, as terminals sync them."""
    snapshot = await store.get_establishment_snapshot(establishment_id)
    return SnapshotResponse(**snapshot.to_dict())


def _board_response(snapshot: EstablishmentSnapshot, now: float) -> BoardResponse:
    tables = []
    for board in describe_establishment(snapshot, now):
        table = snapshot.tables[board.number]
        tables.append(TableBoardResponse(
            number=board.number,
            status=board.status,
            type_statuses=dict(board.type_statuses),
            active_counts=dict(board.active_counts),
            oldest_call_at=board.oldest_call_at,
            calls=[CallResponse.from_call(c) for c in table.active_calls],
        ))

    return BoardResponse(
        establishment_id=snapshot.id,
        name=snapshot.name,
        is_open=establishment_is_open(snapshot, now, settings.heartbeat_threshold_seconds),
        settings=snapshot.settings.to_dict(),
        generated_at=now,
        tables=tables,
    )


@app.get(
    "/api/establishments/{establishment_id}/board",
    response_model=BoardResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Establishments"],
    summary="Semaphore Board",
)
async def get_board(
    establishment_id: str,
    store: BaseCallStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> BoardResponse:
    """Every table with its semaphore status, evaluated now."""
    snapshot = await store.get_establishment_snapshot(establishment_id)
    return _board_response(snapshot, clock.now())


@app.put(
    "/api/establishments/{establishment_id}/settings",
    response_model=Dict[str, int],
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
    tags=["Establishments"],
)
async def update_settings(
    establishment_id: str,
    data: SettingsUpdate,
    controller: LifecycleController = Depends(get_controller),
) -> Dict[str, int]:
    stored = await controller.update_settings(establishment_id, data.to_settings())
    return stored.to_dict()


@app.post(
    "/api/establishments/{establishment_id}/heartbeat",
    response_model=HeartbeatResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Establishments"],
)
async def heartbeat(
    establishment_id: str,
    data: HeartbeatRequest,
    controller: LifecycleController = Depends(get_controller),
) -> HeartbeatResponse:
    """The owner's terminal reports it is still open (or that it closed)."""
    await controller.set_open(establishment_id, data.is_open)
    return HeartbeatResponse(is_open=data.is_open)


@app.get(
    "/api/establishments/{establishment_id}/pending",
    response_model=PendingResponse,
    tags=["Establishments"],
)
async def pending_calls(
    establishment_id: str,
    controller: LifecycleController = Depends(get_controller),
) -> PendingResponse:
    """Checked when the owner logs in, to offer resuming the last shift."""
    return PendingResponse(has_pending_calls=await controller.has_pending_calls(establishment_id))


@app.post(
    "/api/establishments/{establishment_id}/close-workday",
    response_model=LifecycleResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Establishments"],
)
async def close_workday(
    establishment_id: str,
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    changed = await controller.close_establishment_workday(establishment_id)
    return LifecycleResponse(changed=changed)


# =============================================================================
# CALL ENDPOINTS
# =============================================================================

@app.get(
    "/api/establishments/{establishment_id}/calls",
    response_model=List[CallResponse],
    tags=["Calls"],
    summary="List Active Calls",
)
async def list_active_calls(
    establishment_id: str,
    table: Optional[str] = Query(None),
    type: Optional[CallType] = Query(None),
    store: BaseCallStore = Depends(get_store),
) -> List[CallResponse]:
    table_number = parse_table_number(table) if table is not None else None
    calls = await store.list_active_calls(
        establishment_id,
        table_number=table_number,
        call_type=type,
    )
    return [CallResponse.from_call(c) for c in calls]


@app.post(
    "/api/establishments/{establishment_id}/calls",
    response_model=LifecycleResponse,
    responses={
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
    },
    tags=["Calls"],
    summary="Raise Call",
)
async def add_call(
    establishment_id: str,
    data: CallCreate,
    store: BaseCallStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    """A customer asks for the waiter, the menu or the bill."""
    presence = await store.get_presence(establishment_id)
    if not establishment_is_open(presence, clock.now(), settings.heartbeat_threshold_seconds):
        raise HTTPException(
            status_code=409,
            detail=f"{presence.name or establishment_id} is not accepting calls right now",
        )

    call = await controller.add_call(establishment_id, data.table_number, data.type)
    return LifecycleResponse(changed=1, call=CallResponse.from_call(call))


def _resolution_response(call) -> LifecycleResponse:
    if call is None:
        return LifecycleResponse(changed=0)
    return LifecycleResponse(changed=1, call=CallResponse.from_call(call))


@app.post(
    "/api/establishments/{establishment_id}/tables/{table}/calls/{call_type}/attend",
    response_model=LifecycleResponse,
    tags=["Calls"],
    summary="Attend Oldest Call",
)
async def attend_call(
    establishment_id: str,
    table: str,
    call_type: CallType,
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    """Attend the oldest active call of this type. ``changed`` is 0 if none was pending."""
    call = await controller.attend_oldest_call_by_type(
        establishment_id, parse_table_number(table), call_type
    )
    return _resolution_response(call)


@app.post(
    "/api/establishments/{establishment_id}/tables/{table}/calls/{call_type}/cancel",
    response_model=LifecycleResponse,
    tags=["Calls"],
    summary="Cancel Oldest Call",
)
async def cancel_call(
    establishment_id: str,
    table: str,
    call_type: CallType,
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    call = await controller.cancel_oldest_call_by_type(
        establishment_id, parse_table_number(table), call_type
    )
    return _resolution_response(call)


@app.post(
    "/api/establishments/{establishment_id}/tables/{table}/view",
    response_model=LifecycleResponse,
    tags=["Calls"],
)
async def view_table(
    establishment_id: str,
    table: str,
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    changed = await controller.view_all_calls_for_table(establishment_id, parse_table_number(table))
    return LifecycleResponse(changed=changed)


@app.post(
    "/api/establishments/{establishment_id}/tables/{table}/close",
    response_model=LifecycleResponse,
    tags=["Calls"],
)
async def close_table(
    establishment_id: str,
    table: str,
    controller: LifecycleController = Depends(get_controller),
) -> LifecycleResponse:
    changed = await controller.close_table(establishment_id, parse_table_number(table))
    return LifecycleResponse(changed=changed)


# =============================================================================
# STATISTICS & EXPORT
# =============================================================================

@app.get(
    "/api/establishments/{establishment_id}/statistics",
    response_model=StatisticsResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Statistics"],
)
async def get_statistics(
    establishment_id: str,
    period: StatisticsPeriod = Query(StatisticsPeriod.DAY),
    store: BaseCallStore = Depends(get_store),
    clock: Clock = Depends(get_clock),
) -> StatisticsResponse:
    """Current occupancy plus closed tables, attended and canceled calls in the period."""
    now = clock.now()
    snapshot = await store.get_establishment_snapshot(establishment_id)
    events = await store.list_events(
        establishment_id,
        since=period_start(period, now).timestamp(),
    )

    current = current_statistics(snapshot)
    history = historical_statistics(events, period, now)

    return StatisticsResponse(
        period=history.period,
        since=history.since,
        occupied_tables=current.occupied_tables,
        total_tables=current.total_tables,
        occupation_percentage=current.occupation_percentage,
        active_calls_by_type=current.active_calls_by_type,
        customers_served=history.customers_served,
        attended_by_type=history.attended_by_type,
        cancellations=history.cancellations,
        average_customers_per_day=history.average_customers_per_day,
        average_calls_per_day=history.average_calls_per_day,
    )


@app.post(
    "/api/establishments/{establishment_id}/export",
    response_model=ExportResponse,
    responses={404: {"model": ErrorResponse}},
    tags=["Statistics"],
    summary="Queue Call History Export",
)
async def export_calls(
    establishment_id: str,
    store: BaseCallStore = Depends(get_store),
) -> ExportResponse:
    """Queue an Excel export of every call (active and resolved)."""
    rows = [c.to_dict() for c in await store.list_calls(establishment_id)]
    task = export_call_history.delay(establishment_id, rows)
    logger.info(f"Export of {len(rows)} call(s) queued for {establishment_id}: task {task.id}")
    return ExportResponse(success=True, task_id=task.id, rows=len(rows))


# =============================================================================
# CUSTOMER ENDPOINTS
# =============================================================================

async def _favorites_response(store: BaseCallStore, customer_id: str) -> FavoritesResponse:
    profile = await store.get_customer_profile(customer_id)
    return FavoritesResponse(
        customer_id=profile.customer_id,
        favorite_establishment_ids=list(profile.favorite_establishment_ids),
    )


@app.get(
    "/api/customers/{customer_id}/favorites",
    response_model=FavoritesResponse,
    tags=["Customers"],
)
async def list_favorites(
    customer_id: str,
    store: BaseCallStore = Depends(get_store),
) -> FavoritesResponse:
    return await _favorites_response(store, customer_id)


@app.post(
    "/api/customers/{customer_id}/favorites",
    response_model=FavoritesResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Customers"],
)
async def add_favorite(
    customer_id: str,
    data: FavoriteCreate,
    store: BaseCallStore = Depends(get_store),
) -> FavoritesResponse:
    """Add an establishment to the customer's favorites (at most MAX_FAVORITES)."""
    profile = await store.get_customer_profile(customer_id)
    favorites = profile.favorite_establishment_ids

    if data.establishment_id not in favorites:
        if len(favorites) >= settings.max_favorites:
            raise HTTPException(
                status_code=409,
                detail=f"A customer can have at most {settings.max_favorites} favorites",
            )
        await store.add_favorite(customer_id, data.establishment_id)

    return await _favorites_response(store, customer_id)


@app.delete(
    "/api/customers/{customer_id}/favorites/{establishment_id}",
    response_model=FavoritesResponse,
    tags=["Customers"],
)
async def remove_favorite(
    customer_id: str,
    establishment_id: str,
    store: BaseCallStore = Depends(get_store),
) -> FavoritesResponse:
    await store.remove_favorite(customer_id, establishment_id)
    return await _favorites_response(store, customer_id)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def _error(status_code: int, error: str, detail: Any = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "detail": detail},
    )


@app.exception_handler(EstablishmentNotFoundError)
async def not_found_handler(request: Request, exc: EstablishmentNotFoundError) -> JSONResponse:
    return _error(404, "Not Found", str(exc))


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Store I/O failed; the caller keeps its last snapshot and retries next cycle."""
    logger.warning(f"Store failure on {request.url.path}: {exc}")
    return _error(503, "Sync issue", str(exc))


@app.exception_handler(InvalidSettingsError)
async def invalid_settings_handler(request: Request, exc: InvalidSettingsError) -> JSONResponse:
    return _error(422, "Invalid settings", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return _error(
        500,
        "Internal Server Error",
        str(exc) if settings.debug else "An unexpected error occurred",
    )


def run() -> None:
    """Serve the API on the configured host and port."""
    uvicorn.run(
        "tablecall.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
    )


if __name__ == "__main__":
    run()
