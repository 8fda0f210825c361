# api/server.py
# ============================================================================
# PRINTDESK v1.0 - FASTAPI SERVER
# ============================================================================
# HTTP surface for the order lifecycle: submission, payment verification,
# gateway webhooks, counter lookup and document download.
# ============================================================================

import asyncio
import json
import shutil
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ValidationError

from config import config, configure_logging
from database import close_database, init_database
from orders.audit import InMemoryAuditLog
from orders.errors import (
    DuplicateIdentifier,
    ExhaustedIdentifierSpace,
    GatewayError,
    GatewayTimeout,
    InvalidSignature,
    InvalidWebhookPayload,
    OrderNotFound,
    PaymentNotCompleted,
    PrintDeskError,
    StorageFailure,
    StorageTimeout,
)
from orders.lifecycle import LifecycleSettings, OrderLifecycleController
from orders.models import CustomerDetails, IncomingFile, OrderStatus, PayMethod, PrintOptions
from payments.cashfree_client import CashfreeClient, CashfreeConfig
from storage import FilePlacementManager, InMemoryOrderStore

configure_logging()
logger = structlog.get_logger().bind(component="server")


# ============================================================================
# ERROR MAPPING
# ============================================================================

# Most specific class first; lookups walk the exception's MRO
ERROR_RESPONSES: Dict[type, tuple] = {
    OrderNotFound: (404, "ORDER_NOT_FOUND"),
    PaymentNotCompleted: (400, "PAYMENT_NOT_COMPLETED"),
    InvalidSignature: (401, "INVALID_SIGNATURE"),
    InvalidWebhookPayload: (400, "INVALID_WEBHOOK_PAYLOAD"),
    GatewayTimeout: (504, "GATEWAY_TIMEOUT"),
    GatewayError: (502, "GATEWAY_ERROR"),
    StorageTimeout: (503, "STORAGE_TIMEOUT"),
    StorageFailure: (500, "STORAGE_ERROR"),
    ExhaustedIdentifierSpace: (503, "IDENTIFIER_SPACE_EXHAUSTED"),
    DuplicateIdentifier: (409, "DUPLICATE_IDENTIFIER"),
    PrintDeskError: (500, "INTERNAL_ERROR"),
}


def error_response_for(exc: PrintDeskError) -> tuple:
    for cls in type(exc).__mro__:
        if cls in ERROR_RESPONSES:
            return ERROR_RESPONSES[cls]
    return 500, "INTERNAL_ERROR"


async def handle_domain_error(request: Request, exc: PrintDeskError):
    status_code, code = error_response_for(exc)
    body: Dict[str, Any] = {"error": str(exc), "code": code}
    if isinstance(exc, PaymentNotCompleted):
        body["remoteStatus"] = exc.remote_status

    log = logger.warning if status_code < 500 else logger.error
    log("request_failed",
        path=request.url.path,
        status_code=status_code,
        code=code,
        error_type=type(exc).__name__)
    return JSONResponse(status_code=status_code, content=body)


# ============================================================================
# UPLOAD STAGING
# ============================================================================

def dedupe_filenames(names: List[str]) -> List[str]:
    """Base names, made unique within one order: a.pdf, a (1).pdf, ..."""
    seen = set()
    result = []
    for raw in names:
        name = Path(raw or "").name or "document"
        candidate = name
        counter = 1
        while candidate in seen:
            stem, suffix = Path(name).stem, Path(name).suffix
            candidate = f"{stem} ({counter}){suffix}"
            counter += 1
        seen.add(candidate)
        result.append(candidate)
    return result


def _write_upload(upload: UploadFile, destination: Path) -> None:
    destination.parent.mkdir(parents=True, exist_ok=True)
    with open(destination, "wb") as out:
        shutil.copyfileobj(upload.file, out)


async def stage_uploads(uploads: List[UploadFile], staging_dir: Path) -> List[IncomingFile]:
    names = dedupe_filenames([u.filename for u in uploads])
    loop = asyncio.get_event_loop()
    staged = []
    for upload, name in zip(uploads, names):
        path = staging_dir / f"{uuid.uuid4().hex}{Path(name).suffix}"
        await loop.run_in_executor(None, _write_upload, upload, path)
        staged.append(IncomingFile(path=path, filename=name))
    return staged


def cleanup_staged(staged: List[IncomingFile]) -> None:
    """Remove whatever the placement step did not move away."""
    for item in staged:
        try:
            item.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("staged_cleanup_failed", path=str(item.path), error=str(e))


# ============================================================================
# LIFESPAN MANAGEMENT
# ============================================================================

START_TIME = datetime.utcnow()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("server_starting", env=config.ENV, store_backend=config.STORE_BACKEND)

    # Controllers injected by create_app (tests) are left alone
    owned = getattr(app.state, "controller", None) is None
    gateway = None
    if owned:
        if config.STORE_BACKEND == "postgres":
            from storage.postgres_store import PostgresAuditLog, PostgresOrderStore
            await init_database()
            store, audit_log = PostgresOrderStore(), PostgresAuditLog()
        else:
            store, audit_log = InMemoryOrderStore(), InMemoryAuditLog()

        gateway_config = CashfreeConfig.from_env()
        if not gateway_config.configured:
            logger.warning("gateway_not_configured", effect="prepaid submissions will degrade")
        gateway = CashfreeClient(gateway_config)

        app.state.files = FilePlacementManager(config.UPLOAD_ROOT)
        app.state.controller = OrderLifecycleController(
            store=store,
            files=app.state.files,
            gateway=gateway,
            audit_log=audit_log,
            settings=LifecycleSettings.from_env(),
        )
        app.state.gateway_configured = gateway_config.configured

    logger.info("server_ready")
    yield

    logger.info("server_stopping")
    if owned:
        await gateway.close()
        if config.STORE_BACKEND == "postgres":
            await close_database()


# ============================================================================
# FASTAPI APP
# ============================================================================

def create_app(
    controller: Optional[OrderLifecycleController] = None,
    files: Optional[FilePlacementManager] = None,
    staging_dir: Optional[Path] = None,
) -> FastAPI:
    app = FastAPI(
        title="PrintDesk",
        description="Print shop order intake, payment and counter pickup",
        version=config.VERSION,
        lifespan=lifespan,
    )

    if controller is not None:
        app.state.controller = controller
        app.state.files = files or controller.files
        app.state.gateway_configured = True
    app.state.staging_dir = Path(staging_dir or config.UPLOAD_STAGING_DIR)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(PrintDeskError, handle_domain_error)
    app.middleware("http")(add_timing_header)

    register_routes(app)
    return app


# ============================================================================
# MIDDLEWARE
# ============================================================================

async def add_timing_header(request: Request, call_next):
    """Add response timing and request ID headers"""
    request_id = str(uuid.uuid4())[:8]
    start = time.perf_counter()

    response = await call_next(request)

    duration = (time.perf_counter() - start) * 1000
    response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
    response.headers["X-Request-ID"] = request_id
    return response


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    store_backend: str
    gateway_configured: bool


def submission_body(result) -> Dict[str, Any]:
    if result.code:
        return {"code": result.code}
    if result.degraded:
        return {"trackingId": result.tracking_id, "degraded": True}
    return {"trackingId": result.tracking_id, "sessionHandle": result.session_handle}


def _parse_json_field(raw: Optional[str], field: str, default):
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"{field} must be valid JSON")


# ============================================================================
# ENDPOINTS
# ============================================================================

def register_routes(app: FastAPI) -> None:

    def controller_of(request: Request) -> OrderLifecycleController:
        return request.app.state.controller

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint"""
        uptime = (datetime.utcnow() - START_TIME).total_seconds()
        return HealthResponse(
            status="healthy",
            version=config.VERSION,
            uptime_seconds=uptime,
            store_backend=config.STORE_BACKEND,
            gateway_configured=getattr(request.app.state, "gateway_configured", False),
        )

    @app.post("/process")
    async def process_order(
        request: Request,
        documents: List[UploadFile] = File(...),
        pay_method: str = Form(..., alias="payMethod"),
        options: Optional[str] = Form(None),
        price: float = Form(...),
        page_counts: Optional[str] = Form(None, alias="pageCounts"),
        customer_name: Optional[str] = Form(None, alias="customerName"),
        customer_email: Optional[str] = Form(None, alias="customerEmail"),
        customer_phone: Optional[str] = Form(None, alias="customerPhone"),
    ):
        """
        Accept uploaded documents and print options.

        Returns {code} for pay-at-counter orders, {trackingId, sessionHandle}
        for prepaid ones, or {trackingId, degraded: true} when the payment
        gateway could not be reached.
        """
        try:
            method = PayMethod.parse(pay_method)
        except ValueError:
            raise HTTPException(status_code=422, detail=f"Unknown payMethod: {pay_method}")

        if price < 0:
            raise HTTPException(status_code=422, detail="price must not be negative")
        if len(documents) > config.MAX_FILES_PER_ORDER:
            raise HTTPException(status_code=422, detail="Too many documents")

        try:
            print_options = PrintOptions.model_validate(_parse_json_field(options, "options", {}))
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False))

        counts = _parse_json_field(page_counts, "pageCounts", None)
        if counts is not None and not (
            isinstance(counts, list) and all(isinstance(n, int) and n >= 0 for n in counts)
        ):
            raise HTTPException(status_code=422, detail="pageCounts must be a list of page counts")

        customer = CustomerDetails(**{
            key: value for key, value in (
                ("name", customer_name),
                ("email", customer_email),
                ("phone", customer_phone),
            ) if value
        })

        staged = await stage_uploads(documents, request.app.state.staging_dir)
        try:
            result = await controller_of(request).submit(
                files=staged,
                options=print_options,
                price=price,
                pay_method=method,
                customer=customer,
                page_counts=counts,
            )
        finally:
            cleanup_staged(staged)

        return submission_body(result)

    @app.get("/verify-payment/{tracking_id}")
    async def verify_payment(tracking_id: str, request: Request):
        """Poll the gateway and swap the tracking id for a pickup code once paid"""
        result = await controller_of(request).verify_and_redeem(tracking_id)
        return {
            "code": result.code,
            "trackingId": result.tracking_id,
            "alreadyPaid": result.already_paid,
        }

    @app.post("/webhook")
    async def payment_webhook(request: Request):
        """
        Cashfree webhook. The raw body is verified before it is parsed.
        """
        raw_body = await request.body()
        result = await controller_of(request).handle_webhook(
            raw_body,
            request.headers.get("x-webhook-timestamp", ""),
            request.headers.get("x-webhook-signature", ""),
        )
        return {"received": True, **result.model_dump(exclude_none=True)}

    @app.get("/orders")
    async def list_orders(
        request: Request,
        status: Optional[OrderStatus] = None,
        limit: int = Query(50, ge=1, le=500),
    ):
        """Recent orders for the admin view"""
        orders = await controller_of(request).recent_orders(status=status, limit=limit)
        return {
            "count": len(orders),
            "orders": [o.model_dump(mode="json") for o in orders],
        }

    @app.get("/orders/{code}")
    async def lookup_order(code: str, request: Request):
        """Counter lookup by redemption code (or a pending order's tracking id)"""
        order = await controller_of(request).lookup(code)
        if order is None:
            raise OrderNotFound(code)
        return order.model_dump(mode="json")

    @app.get("/download/{filename}")
    async def download(filename: str, request: Request, otp: str = Query(...)):
        """Serve one stored document of the order presented at the counter"""
        order = await controller_of(request).lookup(otp)
        if order is None:
            raise OrderNotFound(otp)

        path = request.app.state.files.resolve(order.key, filename)
        if path is None:
            raise HTTPException(status_code=404, detail="File not found")

        logger.info("document_downloaded", identifier=order.key, filename=path.name)
        return FileResponse(path, filename=path.name)


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
