# api/server.py
# ============================================================================
# APPRAISAL FULFILLMENT - FASTAPI SERVER
# ============================================================================
# Stripe webhook, customer submission intake, bulk intake, session lookup
# and health endpoints.
# ============================================================================

import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import stripe
import structlog
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, File, Form, Header, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from api.dependencies import ServiceContainer, build_services, get_services
from config import Settings
from errors import (
    AuthenticationError,
    BulkSessionError,
    ConfigurationError,
    ContentCreationError,
    FulfillmentError,
    InvalidPayloadError,
    SubmissionValidationError,
)
from logging_config import configure_logging, level_from_name
from schemas.fulfillment import AssetKey, PaymentMode, Severity, Submission, UploadedFile
from storage.ledger_store import SALES_KEY_COLUMN


VERSION = "2.0.0"
START_TIME = datetime.now(timezone.utc)

logger = structlog.get_logger().bind(component="api")


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    background_tasks: int


class EmailUpdateRequest(BaseModel):
    email: str = Field(..., min_length=3)


class DescriptionUpdateRequest(BaseModel):
    description: str = ""


class FinalizeRequest(BaseModel):
    appraisal_type: str


def _error(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    return str(first.get("msg", "Invalid request")).removeprefix("Value error, ")


# ============================================================================
# WEBHOOK
# ============================================================================

router = APIRouter()


@router.post("/stripe-webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    services: ServiceContainer = Depends(get_services),
):
    """Single endpoint for both Stripe accounts; the verifying secret picks the mode."""
    raw_body = await request.body()

    try:
        outcome = await services.orchestrator.handle_webhook(raw_body, stripe_signature)
    except (AuthenticationError, InvalidPayloadError) as e:
        return _error(400, f"Webhook Error: {e}")
    except ConfigurationError as e:
        logger.error("webhook_misconfigured", error=str(e))
        return _error(500, "Webhook processing is not configured")
    except Exception as e:
        logger.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
        return _error(500, "Error processing webhook")

    return {"received": True, **outcome.model_dump(mode="json", exclude_none=True)}


# ============================================================================
# SUBMISSION INTAKE
# ============================================================================

async def _read_upload(key: AssetKey, upload: Optional[UploadFile]) -> Optional[UploadedFile]:
    if upload is None or not upload.filename:
        return None
    return UploadedFile(
        key=key,
        content=await upload.read(),
        filename=upload.filename,
        content_type=upload.content_type or "application/octet-stream",
    )


@router.post("/api/appraisals", status_code=202)
async def submit_appraisal(
    session_id: str = Form(""),
    description: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    name: Optional[str] = Form(None),
    payment_id: Optional[str] = Form(None),
    main: Optional[UploadFile] = File(None),
    signature: Optional[UploadFile] = File(None),
    age: Optional[UploadFile] = File(None),
    services: ServiceContainer = Depends(get_services),
):
    """Accept images + description for a paid session; processing continues in the background."""
    files = {}
    for key, upload in ((AssetKey.MAIN, main), (AssetKey.SIGNATURE, signature), (AssetKey.AGE, age)):
        uploaded = await _read_upload(key, upload)
        if uploaded is not None:
            files[key] = uploaded

    try:
        submission = Submission.model_validate(
            {
                "session_id": session_id.strip(),
                "customer_email": email or "",
                "customer_name": name or "",
                "description": description,
                "files": files,
                "payment_ref": payment_id,
            },
            context=services.settings.validation_limits,
        )
        submission = await services.orchestrator.resolve_customer(submission)
        result = await services.orchestrator.handle_submission(submission)
    except ValidationError as e:
        return _error(400, _validation_message(e))
    except SubmissionValidationError as e:
        return _error(400, str(e))
    except stripe.InvalidRequestError:
        return _error(404, "Session not found")
    except ContentCreationError as e:
        return _error(500, "Failed to create appraisal record", details=str(e))
    except Exception as e:
        logger.error("submission_failed", session_id=session_id, error=str(e), error_type=type(e).__name__)
        return _error(500, "Failed to process appraisal submission")

    if result.deduplicated:
        return _error(409, "Submission already received for this session", session_id=session_id)

    return JSONResponse(status_code=202, content={
        "success": True,
        "message": "Submission received, processing started",
        "session_id": result.session_id,
        "post_id": result.content_id,
        "post_url": result.edit_url,
    })


# ============================================================================
# BULK INTAKE
# ============================================================================

bulk_router = APIRouter(prefix="/api/bulk-appraisals")


@bulk_router.post("/init")
async def bulk_init(services: ServiceContainer = Depends(get_services)):
    session = await services.bulk.initialize_session()
    return {"success": True, **session}


@bulk_router.post("/upload/{session_id}")
async def bulk_upload(
    session_id: str,
    file: UploadFile = File(...),
    description: str = Form(""),
    category: str = Form("uncategorized"),
    position: int = Form(0),
    services: ServiceContainer = Depends(get_services),
):
    content = await file.read()
    max_size = services.settings.max_upload_bytes
    if len(content) > max_size:
        return _error(400, f"File exceeds maximum size of {max_size // (1024 * 1024)}MB")
    uploaded = await services.bulk.upload_item(
        session_id,
        content,
        original_name=file.filename or "",
        position=position,
        description=description,
        category=category,
    )
    return {"success": True, **uploaded}


@bulk_router.delete("/upload/{session_id}/{file_id}")
async def bulk_delete(session_id: str, file_id: str, services: ServiceContainer = Depends(get_services)):
    await services.bulk.delete_item(session_id, file_id)
    return {"success": True}


@bulk_router.put("/description/{session_id}/{file_id}")
async def bulk_description(
    session_id: str,
    file_id: str,
    body: DescriptionUpdateRequest,
    services: ServiceContainer = Depends(get_services),
):
    limit = services.settings.max_description_length
    if len(body.description) > limit:
        return _error(400, f"Description exceeds maximum length of {limit} characters")
    await services.bulk.update_item_description(session_id, file_id, body.description)
    return {"success": True}


@bulk_router.get("/session/{session_id}")
async def bulk_session(session_id: str, services: ServiceContainer = Depends(get_services)):
    session = await services.bulk.get_session_status(session_id)
    return {"success": True, "session": session.model_dump(mode="json")}


@bulk_router.put("/email/{session_id}")
async def bulk_email(
    session_id: str,
    body: EmailUpdateRequest,
    services: ServiceContainer = Depends(get_services),
):
    await services.bulk.update_customer_email(session_id, body.email)
    return {"success": True}


@bulk_router.post("/finalize/{session_id}")
async def bulk_finalize(
    session_id: str,
    body: FinalizeRequest,
    services: ServiceContainer = Depends(get_services),
):
    checkout = await services.bulk.finalize(session_id, body.appraisal_type)
    return {"success": True, **checkout}


# ============================================================================
# STRIPE SESSION LOOKUP
# ============================================================================

@router.get("/stripe/session/{session_id}")
async def stripe_session(
    request: Request,
    session_id: str,
    x_shared_secret: Optional[str] = Header(None, alias="x-shared-secret"),
    services: ServiceContainer = Depends(get_services),
):
    expected = services.settings.stripe_shared_secret
    if not x_shared_secret or not expected or x_shared_secret != expected:
        services.reporter.report_in_background(services.reporter.build_entry(
            Severity.WARNING,
            "stripeRoutes",
            "AuthenticationError",
            "Invalid or missing shared secret",
            endpoint=request.url.path,
            context={"has_shared_secret": bool(x_shared_secret)},
        ))
        return _error(401, "Unauthorized")

    try:
        session = await services.stripe.retrieve_session(session_id, PaymentMode.LIVE)
    except stripe.InvalidRequestError:
        return _error(404, "Session not found")

    details = session.get("customer_details") or {}
    return {
        "customer_details": {"name": details.get("name"), "email": details.get("email")},
        "amount_total": (session.get("amount_total") or 0) / 100,
        "currency": session.get("currency"),
        "payment_status": session.get("payment_status"),
    }


# ============================================================================
# HEALTH
# ============================================================================

@router.get("/health", response_model=HealthResponse)
async def health_check(services: ServiceContainer = Depends(get_services)):
    return HealthResponse(
        status="healthy",
        version=VERSION,
        uptime_seconds=(datetime.now(timezone.utc) - START_TIME).total_seconds(),
        background_tasks=services.tasks.pending,
    )


@router.get("/api/health/status")
async def health_status(services: ServiceContainer = Depends(get_services)):
    """Probe external dependencies and summarize them."""
    try:
        await services.spreadsheet.read_column(services.ledger.sales, SALES_KEY_COLUMN)
        sheets_ok = True
    except Exception as e:
        logger.warning("sheets_health_failed", error=str(e))
        sheets_ok = False

    checks = {
        "sheets": sheets_ok,
        "wordpress": await services.content.health_check(),
        "email": services.notifier.configured,
        "event_bus": await services.publisher.health_check(),
    }
    passing = sum(checks.values())
    status = "healthy" if passing == len(checks) else "degraded" if passing else "unhealthy"

    return {
        "status": status,
        "version": VERSION,
        "uptime_seconds": (datetime.now(timezone.utc) - START_TIME).total_seconds(),
        "services": {name: "healthy" if ok else "unhealthy" for name, ok in checks.items()},
    }


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(services: Optional[ServiceContainer] = None) -> FastAPI:
    """
    Build the FastAPI app. Without a container, services are wired from the
    environment when the app starts.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(level_from_name(os.getenv("LOG_LEVEL", "INFO")))
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(Settings.from_env())

        container: ServiceContainer = app.state.services
        try:
            await container.startup()
        except Exception as e:
            logger.warning("event_bus_unavailable", error=str(e))
        logger.info("service_started", version=VERSION)

        yield

        logger.info("service_stopping", background_tasks=container.tasks.pending)
        await container.shutdown()

    app = FastAPI(
        title="Appraisal Fulfillment Service",
        description="Payment webhooks and submission intake for art appraisals",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")
        response.headers["X-Request-Id"] = request_id
        response.headers["X-Response-Time-Ms"] = f"{(time.perf_counter() - start) * 1000:.2f}"
        return response

    @app.exception_handler(BulkSessionError)
    async def bulk_error_handler(request: Request, exc: BulkSessionError):
        return _error(exc.status_code, str(exc))

    @app.exception_handler(FulfillmentError)
    async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
        logger.error("request_failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
        return _error(500, str(exc))

    app.include_router(router)
    app.include_router(bulk_router)
    return app


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8080"))
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV", "production") == "development",
        log_level="info",
    )
