from __future__ import annotations

from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from satgate.apps.api.errors import (
    configuration_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    store_unavailable_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from satgate.apps.api.response import API_VERSION
from satgate.apps.api.routes.contacts import router as contacts_router
from satgate.apps.api.routes.health import router as health_router
from satgate.apps.api.routes.messages import router as messages_router
from satgate.apps.api.routes.sat import router as sat_router
from satgate.core.config import get_settings
from satgate.core.errors import ConfigurationError, StoreUnavailableError
from satgate.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Satgate API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(StoreUnavailableError, store_unavailable_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(sat_router, prefix=f"/{API_VERSION}")
    app.include_router(messages_router, prefix=f"/{API_VERSION}")
    app.include_router(contacts_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Document bearer sessions and the action-token header on protected routes.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Satgate API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        security_schemes["ActionToken"] = {
            "type": "apiKey",
            "in": "header",
            "name": get_settings().sat_header,
        }
        protected = {f"/{API_VERSION}/messages": {"post"}, f"/{API_VERSION}/contacts": {"get"}}
        for path, operations in schema.get("paths", {}).items():
            if path == f"/{API_VERSION}/health":
                continue
            for method, operation in operations.items():
                requirement = {"BearerAuth": []}
                if method in protected.get(path, set()):
                    requirement["ActionToken"] = []
                operation.setdefault("security", [requirement])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
