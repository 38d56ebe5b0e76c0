import logging
import os
import sys
import time
import uuid
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes_health import router as health_router
from app.api.routes_metrics import router as metrics_router
from app.api.routes_portal import router as portal_router
from app.api.routes_subscriptions import router as subscriptions_router
from app.domain.errors import PROBLEM_TYPE_DOMAIN, PROBLEM_TYPE_VALIDATION, DomainError
from app.infra.db import get_session_factory
from app.infra.logging import configure_logging
from app.infra.metrics import configure_metrics
from app.settings import settings

PROBLEM_TYPE_SERVER = "https://example.com/problems/server-error"
DEV_PORTAL_SECRET = "dev-client-portal-secret"

logger = logging.getLogger(__name__)


def problem_details(
    request: Request,
    status: int,
    title: str,
    detail: str,
    errors: list[dict[str, str]] | None = None,
    type_: str = "about:blank",
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    content = {
        "type": type_,
        "title": title,
        "status": status,
        "detail": detail,
        "request_id": getattr(request.state, "request_id", None),
        "errors": errors or [],
    }
    return JSONResponse(status_code=status, content=content, headers=headers)


class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable):
        request_logger = logging.getLogger("app.request")
        start = time.time()
        response = await call_next(request)
        request_logger.info(
            "request",
            extra={
                "extra": {
                    "request_id": getattr(request.state, "request_id", None),
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "latency_ms": int((time.time() - start) * 1000),
                }
            },
        )
        return response


def _validate_prod_config(app_settings) -> None:
    if app_settings.app_env == "dev" or getattr(app_settings, "testing", False) or os.getenv("PYTEST_CURRENT_TEST") or "pytest" in sys.argv[0]:
        return

    errors: list[str] = []
    if app_settings.client_portal_secret == DEV_PORTAL_SECRET:
        errors.append("CLIENT_PORTAL_SECRET must be set outside dev")

    staff_credentials = [
        (app_settings.owner_basic_username, app_settings.owner_basic_password),
        (app_settings.admin_basic_username, app_settings.admin_basic_password),
        (app_settings.dispatcher_basic_username, app_settings.dispatcher_basic_password),
        (app_settings.viewer_basic_username, app_settings.viewer_basic_password),
    ]
    if not any(username and password for username, password in staff_credentials):
        errors.append("At least one staff credential pair must be configured outside dev")

    if errors:
        for error in errors:
            logger.error("startup_config_error", extra={"extra": {"detail": error}})
        raise RuntimeError("Invalid production configuration; see logs for details")


def create_app(app_settings) -> FastAPI:
    configure_logging()
    _validate_prod_config(app_settings)
    app = FastAPI(title="Subscription Scheduling", version="1.0.0")

    app.state.app_settings = app_settings
    app.state.db_session_factory = get_session_factory()
    app.state.metrics = configure_metrics(app_settings.metrics_enabled)

    app.add_middleware(LoggingMiddleware)
    app.add_middleware(RequestIdMiddleware)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            loc = error.get("loc", [])
            field = ".".join(str(part) for part in loc if part not in {"body", "query", "path"}) or "body"
            errors.append({"field": field, "message": error.get("msg", "Invalid value")})
        return problem_details(
            request=request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=errors,
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type or PROBLEM_TYPE_DOMAIN,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request=request,
            status=exc.status_code,
            title=exc.detail if isinstance(exc.detail, str) else "HTTP Error",
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            type_=PROBLEM_TYPE_DOMAIN if exc.status_code < 500 else PROBLEM_TYPE_SERVER,
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            extra={"extra": {"request_id": getattr(request.state, "request_id", None), "path": request.url.path}},
        )
        return problem_details(
            request=request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(subscriptions_router)
    app.include_router(portal_router)
    return app


app = create_app(settings)
