from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from printvault.apps.api.errors import (
    http_exception_handler,
    printvault_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from printvault.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from printvault.apps.api.routes.admin import router as admin_router
from printvault.apps.api.routes.assigned import router as assigned_router
from printvault.apps.api.routes.jobs import router as jobs_router
from printvault.apps.api.routes.offline import router as offline_router
from printvault.apps.api.routes.ops import router as ops_router
from printvault.apps.api.routes.printing import router as printing_router
from printvault.core.errors import PrintVaultError
from printvault.core.logging import configure_logging
from printvault.services.telemetry import record_request


_ROUTERS = (
    printing_router,
    offline_router,
    assigned_router,
    jobs_router,
    admin_router,
    ops_router,
)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="PrintVault API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        started = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - started) * 1000.0,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    # StarletteHTTPException also covers fastapi.HTTPException, its subclass.
    app.add_exception_handler(PrintVaultError, printvault_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
