import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from loan_service import __version__
from loan_service.api.v1.health import router as health_router
from loan_service.api.v1.loans import router as loans_router
from loan_service.clients import build_http_collaborators
from loan_service.core.config import settings
from loan_service.core.logging import setup_logging
from loan_service.db.session import AsyncSessionLocal
from loan_service.services.scheduler import LoanSweeper
from loan_service.services.side_effects import SideEffectCoordinator

logger = logging.getLogger(__name__)

_TAG_METADATA: list[dict[str, Any]] = [
    {
        "name": "health",
        "description": "Server liveness probe. No authentication required.",
    },
    {
        "name": "loans",
        "description": (
            "Loan lifecycle: create, return, extend, cancel, fines and history.\n\n"
            "- **Members** may only see and act on their **own** loans.\n"
            "- **Librarians** and **Admins** may act on any loan.\n\n"
            "> **Business rules:** at most 5 open loans per user, one open loan per "
            "user and book, 7–30 day loans, at most 2 extensions of 7 days, and a "
            "daily fine once overdue."
        ),
    },
]

_APP_DESCRIPTION = """\
The **loan management service** of the library platform.

Users, books and notifications live in their own services; this one owns loans
and their history, and calls the others over HTTP.

## Authentication

Every loan endpoint requires a **Bearer JWT** issued by the user service.
The token's `sub` claim is the user id and `role` is one of
`ADMIN`, `LIBRARIAN` or `MEMBER`.
"""


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()

    http = httpx.AsyncClient(timeout=settings.COLLABORATOR_TIMEOUT_SECONDS)
    effects = SideEffectCoordinator(build_http_collaborators(http))
    app.state.side_effects = effects

    sweeper = LoanSweeper(AsyncSessionLocal, effects)
    if settings.SCHEDULER_ENABLED:
        sweeper.start()

    try:
        yield
    finally:
        await sweeper.stop()
        await effects.drain()
        await http.aclose()


app = FastAPI(
    title="Loan Management Service",
    description=_APP_DESCRIPTION,
    version=__version__,
    openapi_tags=_TAG_METADATA,
    license_info={"name": "MIT"},
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health_router)
app.include_router(loans_router)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
