"""
FastAPI Application Entry Point

Weekly food ordering service.
Supports both in-process services (development) and Redis/SendGrid (production).

Endpoints:
    - GET  /api/users: Staff list for the user selector
    - GET  /api/menu, POST /api/menu, POST /api/menu/upload: Weekly menu
    - POST /api/orders/*: Counters and comments
    - GET  /api/orders/me: A user's own orders
    - GET  /api/summary, POST /api/summary/generate: Weekly aggregate
    - GET  /api/summary/share, GET /api/summary/export: Share text and workbook
    - POST /api/admin/send-summary: Summary e-mail
    - GET  /api/admin/diagnostics: Operational state
    - WS   /ws/summary: Live summary updates
    - GET  /health: System health check
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from weekly_orders.core.config import get_settings, setup_logging
from weekly_orders.core.errors import StorageError, WeeklyOrdersError
from weekly_orders.database import async_session_maker, engine, init_db
from weekly_orders.dependencies import (
    get_menu_service,
    get_order_service,
    get_reconcilers,
    get_resolver,
    get_summary_mailer,
)
from weekly_orders.schemas import (
    ClearCommentsResponse,
    CommentCreate,
    CommentDelete,
    CommentsResponse,
    CounterChange,
    CounterResponse,
    DiagnosticsResponse,
    ErrorResponse,
    HealthResponse,
    MenuResponse,
    MenuUpload,
    SendSummaryResponse,
    ShareResponse,
    SummaryResponse,
    UsersResponse,
)
from weekly_orders.services.aggregator import AggregateSummary
from weekly_orders.services.cache import get_snapshot_cache
from weekly_orders.services.excel_manager import ExcelManager
from weekly_orders.services.feed import get_change_feed
from weekly_orders.services.menu_service import MenuService
from weekly_orders.services.notifications import get_notification_service
from weekly_orders.services.orders import OrderService
from weekly_orders.services.reconciler import ReconcilerRegistry, SummaryReconciler
from weekly_orders.services.repository import OrderRepository
from weekly_orders.services.summary_format import format_share_text, whatsapp_link
from weekly_orders.services.weekly_summary import WeeklySummaryMailer

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

WEEK_PATTERN = r"^\d{4}-\d{2}-\d{2}$"
XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

async def _refresh_loop(registry: ReconcilerRegistry, interval: float) -> None:
    """Periodic STALE check of every reconciler."""
    while True:
        await asyncio.sleep(interval)
        try:
            refreshed = await registry.tick_all()
            if refreshed:
                logger.info(f"Periodic refresh recomputed {refreshed} summaries")
        except Exception as e:
            logger.exception(f"Periodic refresh failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    # Startup
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    # Initialize database
    await init_db()
    logger.info("✅ Database initialized")

    # Change feed and reconcilers
    feed = get_change_feed()
    await feed.start()
    registry = get_reconcilers()
    logger.info(f"✅ Change Feed: {feed.provider_name}")
    logger.info(f"✅ Snapshot Cache: {get_snapshot_cache().provider_name}")
    logger.info(f"✅ Notification Service: {get_notification_service().provider_name}")
    logger.info(f"✅ Week key policy: {get_resolver().policy}")

    refresher = asyncio.create_task(
        _refresh_loop(registry, settings.summary_refresh_interval_seconds)
    )

    # Validate production config
    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"⚠️ Missing production config: {missing}")

    logger.info("=" * 60)
    logger.info("✅ Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    refresher.cancel()
    with suppress(asyncio.CancelledError):
        await refresher
    registry.detach()
    await feed.stop()
    await engine.dispose()
    logger.info("✅ Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Weekly food ordering: per-day menu counters per user, "
        "a live weekly summary and a Friday summary e-mail."
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
# HELPER FUNCTIONS
# =============================================================================

def summary_response(
    summary: AggregateSummary,
    reconciler: Optional[SummaryReconciler] = None,
) -> SummaryResponse:
    """Convert an aggregate into its response model."""
    data = summary.to_dict()
    return SummaryResponse(
        week_start=data["week_start"],
        user=data["user"],
        orders=data["orders"],
        total=summary.total,
        updated_at=summary.updated_at,
        updated_by=summary.updated_by,
        state=reconciler.state.value if reconciler else None,
        degraded=reconciler.degraded if reconciler else False,
    )


def week_reconciler(week_start: Optional[str]) -> SummaryReconciler:
    return get_reconcilers().get(week_start or get_resolver().resolve())


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"🍽️ Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "week_start": get_resolver().resolve(),
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check() -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        async with async_session_maker() as session:
            await session.execute(select(1))
    except SQLAlchemyError as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    cache_status = "healthy" if await get_snapshot_cache().health_check() else "unhealthy"
    feed_status = "healthy" if await get_change_feed().health_check() else "unhealthy"
    notification_status = (
        "healthy" if await get_notification_service().health_check() else "unhealthy"
    )

    overall = "operational" if all(
        s == "healthy" for s in [db_status, cache_status, feed_status, notification_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        cache=cache_status,
        change_feed=feed_status,
        notification_service=notification_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# USERS & MENU ENDPOINTS
# =============================================================================

@app.get("/api/users", response_model=UsersResponse, tags=["Users"])
async def list_users() -> UsersResponse:
    """Names offered by the user selector."""
    return UsersResponse(users=settings.employees_list)


@app.get(
    "/api/menu",
    response_model=MenuResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Menu"],
    summary="Current Menu",
)
async def get_menu(menus: MenuService = Depends(get_menu_service)) -> MenuResponse:
    """
    Latest menu, or the default menu when none was uploaded.

    A storage failure serves the last cached menu with ``degraded=true``.
    """
    state = await menus.load()
    return MenuResponse(**state.to_dict())


@app.post(
    "/api/menu",
    response_model=MenuResponse,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Menu"],
    summary="Publish Menu (JSON)",
)
async def publish_menu(
    payload: MenuUpload,
    menus: MenuService = Depends(get_menu_service),
) -> MenuResponse:
    state = await menus.publish(payload.menu)
    logger.info(f"Menu #{state.menu_id} published ({len(state.menu)} days)")
    return MenuResponse(**state.to_dict())


@app.post(
    "/api/menu/upload",
    response_model=MenuResponse,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Menu"],
    summary="Upload Menu Workbook",
)
async def upload_menu(
    file: UploadFile = File(...),
    menus: MenuService = Depends(get_menu_service),
) -> MenuResponse:
    """Parse an .xlsx menu (days on rows 3-7, options from column B) and publish it."""
    content = await file.read()
    raw = await asyncio.to_thread(ExcelManager.parse_menu, content)
    state = await menus.publish(raw)
    logger.info(f"Menu workbook {file.filename} published as menu #{state.menu_id}")
    return MenuResponse(**state.to_dict())


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

def _counter_response(record) -> CounterResponse:
    if record is None:
        return CounterResponse(success=True, record=None, message="Nothing to decrement")
    return CounterResponse(record=record.to_dict())


@app.post(
    "/api/orders/increment",
    response_model=CounterResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def increment_order(
    change: CounterChange,
    orders: OrderService = Depends(get_order_service),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> CounterResponse:
    record = await orders.increment(change.user_name, change.day, change.option, change.amount, week_start)
    return _counter_response(record)


@app.post(
    "/api/orders/decrement",
    response_model=CounterResponse,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def decrement_order(
    change: CounterChange,
    orders: OrderService = Depends(get_order_service),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> CounterResponse:
    record = await orders.decrement(change.user_name, change.day, change.option, change.amount, week_start)
    return _counter_response(record)


@app.post(
    "/api/orders/comments",
    response_model=CommentsResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def add_comment(
    payload: CommentCreate,
    orders: OrderService = Depends(get_order_service),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> CommentsResponse:
    comments = await orders.add_comment(payload.user_name, payload.day, payload.comment, week_start)
    return CommentsResponse(day=payload.day, comments=comments)


@app.post(
    "/api/orders/comments/remove",
    response_model=CommentsResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    tags=["Orders"],
)
async def remove_comment(
    payload: CommentDelete,
    orders: OrderService = Depends(get_order_service),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> CommentsResponse:
    comments = await orders.remove_comment(payload.user_name, payload.day, payload.index, week_start)
    return CommentsResponse(day=payload.day, comments=comments)


@app.post(
    "/api/orders/comments/clear",
    response_model=ClearCommentsResponse,
    tags=["Orders"],
    summary="Clear All Comments of the Week",
)
async def clear_comments(
    orders: OrderService = Depends(get_order_service),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> ClearCommentsResponse:
    week_start = week_start or get_resolver().resolve()
    cleared = await orders.clear_comments(week_start)
    return ClearCommentsResponse(week_start=week_start, cleared=cleared)


@app.get(
    "/api/orders/me",
    response_model=SummaryResponse,
    tags=["Orders"],
    summary="My Orders",
)
async def my_orders(
    user_name: str = Query(..., min_length=1),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
    orders: OrderService = Depends(get_order_service),
) -> SummaryResponse:
    summary = await orders.my_orders(user_name, week_start)
    return summary_response(summary)


# =============================================================================
# SUMMARY ENDPOINTS
# =============================================================================

@app.get(
    "/api/summary",
    response_model=SummaryResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Summary"],
)
async def get_summary(
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> SummaryResponse:
    """Cached weekly aggregate, kept current by the change feed."""
    reconciler = week_reconciler(week_start)
    summary = await reconciler.get()
    return summary_response(summary, reconciler)


@app.post(
    "/api/summary/generate",
    response_model=SummaryResponse,
    responses={503: {"model": ErrorResponse}},
    tags=["Summary"],
    summary="Recompute and Persist the General Summary",
)
async def generate_summary(
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
    user_name: Optional[str] = Query(None),
    export: bool = Query(False, description="Also queue the workbook export"),
) -> SummaryResponse:
    reconciler = week_reconciler(week_start)
    summary = await reconciler.recompute(persist=True, updated_by=user_name, reason="requested")

    if export:
        from weekly_orders.tasks import export_summary_to_excel
        export_summary_to_excel.delay(reconciler.week_start)

    return summary_response(summary, reconciler)


@app.get("/api/summary/share", response_model=ShareResponse, tags=["Summary"])
async def share_summary(
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> ShareResponse:
    """Formatted text and WhatsApp link."""
    reconciler = week_reconciler(week_start)
    summary = await reconciler.get()
    text = format_share_text(summary)
    return ShareResponse(week_start=summary.week_start, text=text, whatsapp_url=whatsapp_link(text))


@app.get("/api/summary/export", tags=["Summary"], summary="Download Summary Workbook")
async def export_summary(
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
) -> Response:
    reconciler = week_reconciler(week_start)
    summary = await reconciler.get()
    content = await asyncio.to_thread(ExcelManager.summary_workbook, summary)
    filename = f"resumen-{summary.week_start}.xlsx"
    return Response(
        content=content,
        media_type=XLSX_MEDIA_TYPE,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# =============================================================================
# ADMIN ENDPOINTS
# =============================================================================

@app.post(
    "/api/admin/send-summary",
    response_model=SendSummaryResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    tags=["Admin"],
)
async def send_summary(
    force: bool = Query(False),
    week_start: Optional[str] = Query(None, pattern=WEEK_PATTERN),
    mailer: WeeklySummaryMailer = Depends(get_summary_mailer),
) -> SendSummaryResponse:
    """E-mail the weekly summary (outside Friday afternoon only with force)."""
    result = await mailer.send(force=force, week_start=week_start)
    return SendSummaryResponse(**result.to_dict())


@app.get("/api/admin/diagnostics", response_model=DiagnosticsResponse, tags=["Admin"])
async def diagnostics() -> DiagnosticsResponse:
    resolver = get_resolver()
    week_start = resolver.resolve()
    async with async_session_maker() as session:
        repository = OrderRepository(session)
        records = await repository.count_orders(week_start)
        weeks = await repository.list_weeks()

    return DiagnosticsResponse(
        week_start=week_start,
        week_policy=resolver.policy,
        records=records,
        weeks=weeks,
        reconcilers=get_reconcilers().statuses(),
        cache=get_snapshot_cache().provider_name,
        feed=get_change_feed().provider_name,
        notifications=get_notification_service().provider_name,
    )


# =============================================================================
# LIVE UPDATES
# =============================================================================

@app.websocket("/ws/summary")
async def summary_socket(websocket: WebSocket, week_start: Optional[str] = None) -> None:
    """
    Push the weekly summary on every applied update.

    Messages are ``{"type": "summary", "summary": {...}}`` and
    ``{"type": "menu_reset", "notice": "..."}``. Sending ``"refresh"``
    returns the current summary.
    """
    await websocket.accept()
    reconciler = week_reconciler(week_start)
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)

    async def enqueue(message: dict[str, Any]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(message)

    async def pump() -> None:
        while True:
            await websocket.send_json(await queue.get())

    try:
        summary = await reconciler.get()
    except StorageError as e:
        await websocket.send_json({"type": "error", "error": e.message})
        await websocket.close(code=1011)
        return

    unsubscribe = reconciler.subscribe(enqueue)
    sender = asyncio.create_task(pump())
    try:
        await websocket.send_json({"type": "summary", "summary": summary.to_dict()})
        while True:
            text = await websocket.receive_text()
            if text == "refresh":
                await enqueue({"type": "summary", "summary": (await reconciler.get()).to_dict()})
    except WebSocketDisconnect:
        logger.debug(f"Summary socket closed ({reconciler.week_start})")
    finally:
        unsubscribe()
        sender.cancel()
        with suppress(asyncio.CancelledError):
            await sender


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(WeeklyOrdersError)
async def domain_exception_handler(request: Request, exc: WeeklyOrdersError) -> JSONResponse:
    """Map domain errors to their HTTP status."""
    if isinstance(exc, StorageError):
        logger.error(f"Storage failure on {request.url.path}: {exc.message}")
        error = f"{exc.message}. Inténtalo de nuevo."
    else:
        logger.info(f"Rejected {request.method} {request.url.path}: {exc.message}")
        error = exc.message

    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=error,
            detail=exc.detail if (settings.debug or not isinstance(exc, StorageError)) else None,
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


# =============================================================================
# DEVELOPMENT SERVER
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "weekly_orders.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
