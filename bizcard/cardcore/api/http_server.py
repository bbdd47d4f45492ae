"""
FastAPI application for CardCore.

This module exposes the services over HTTP:
- Profile routes (personal info, professional info)
- Card routes (create, versioned edit, default selection)
- Public card page and contact downloads (recorded as analytics)
- Analytics report and telemetry status

Invariants:
    - Every owner-scoped route requires the principal header
    - A stale version is answered with 409 and {conflict, currentVersion, message}
    - Transient store failures that outlive their retries are answered with 503
    - Recording a view never delays or fails the response

How to change safely:
    - Map new CardCoreError subclasses in _register_error_handlers
    - Keep the conflict payload shape stable; clients reload on it
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .._version import __version__
from ..concurrency.versioned import ConflictSignal
from ..errors import (
    AccessDeniedError,
    ErrorCode,
    NotFoundError,
    StoreError,
    ValidationError,
    VersionConflictError,
)
from ..server import Server
from .settings import Settings


logger = logging.getLogger(__name__)

router = APIRouter(tags=["CardCore"])


# --- Request Models ---


class PersonalInfoRequest(BaseModel):
    """Save personal info. expected_version is omitted only on first save."""

    values: dict[str, Any] = Field(..., description="Personal info fields")
    expected_version: int | None = Field(None, description="Version the edit is based on")


class ProfessionalInfoCreateRequest(BaseModel):
    values: dict[str, Any] = Field(..., description="Professional info fields")


class ProfessionalInfoUpdateRequest(BaseModel):
    values: dict[str, Any] = Field(..., description="Fields to update")
    expected_version: int = Field(..., description="Version the edit is based on")


class CardCreateRequest(BaseModel):
    """Request to create a card."""

    name: str = Field(..., min_length=1, description="Card name, used for the slug")
    template_type: str | None = Field(None, description="Template identifier")
    fields_config: dict[str, Any] | None = Field(None, description="Visible fields")
    design_config: dict[str, Any] | None = Field(None, description="Design options")


class CardUpdateRequest(BaseModel):
    """Request to edit a card at a known version."""

    expected_version: int = Field(..., description="Version the edit is based on")
    changes: dict[str, Any] = Field(..., description="Fields to update")


# --- Dependencies ---


def get_server(request: Request) -> Server:
    """Get the server container from app state."""
    return request.app.state.server


def get_actor(request: Request) -> str:
    """Get the authenticated principal from the actor header."""
    header = request.app.state.settings.actor_header
    actor = request.headers.get(header)
    if not actor:
        raise HTTPException(status_code=401, detail="Authentication required")
    return actor


def _client_address(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# --- Profile Routes ---


@router.get("/profile")
async def get_profile(
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    """Get the principal's personal and professional info."""
    return await server.profiles.get_profile(actor)


@router.put("/profile/personal")
async def save_personal_info(
    body: PersonalInfoRequest,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    """
    Create or update personal info.

    Saving over an existing record requires expected_version; a stale or
    missing version is answered with 409.
    """
    record = await server.profiles.save_personal_info(
        actor, body.values, expected_version=body.expected_version
    )
    return record.to_dict()


@router.post("/profile/professional", status_code=201)
async def create_professional_info(
    body: ProfessionalInfoCreateRequest,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    record = await server.profiles.save_professional_info(actor, body.values)
    return record.to_dict()


@router.patch("/profile/professional/{record_id}")
async def update_professional_info(
    record_id: str,
    body: ProfessionalInfoUpdateRequest,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    record = await server.profiles.save_professional_info(
        actor, body.values, record_id=record_id, expected_version=body.expected_version
    )
    return record.to_dict()


@router.delete("/profile/professional/{record_id}", status_code=204)
async def delete_professional_info(
    record_id: str,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    await server.profiles.delete_professional_info(actor, record_id)
    return Response(status_code=204)


# --- Card Routes ---


@router.get("/cards")
async def list_cards(
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    cards = await server.cards.list_cards(actor)
    return [c.to_dict() for c in cards]


@router.post("/cards", status_code=201)
async def create_card(
    body: CardCreateRequest,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    """
    Create a card.

    The slug is derived from the name; collisions are retried with a random
    suffix before a 409 is returned.
    """
    card = await server.cards.create_card(
        actor,
        body.name,
        template_type=body.template_type,
        fields_config=body.fields_config,
        design_config=body.design_config,
    )
    return card.to_dict()


@router.patch("/cards/{card_id}")
async def update_card(
    card_id: str,
    body: CardUpdateRequest,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    """Edit a card at expected_version. A stale version is answered with 409."""
    card = await server.cards.update_card(actor, card_id, body.expected_version, body.changes)
    return card.to_dict()


@router.post("/cards/{card_id}/default")
async def set_default_card(
    card_id: str,
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    card = await server.cards.set_default_card(actor, card_id)
    return card.to_dict()


# --- Public Routes ---


@router.get("/public/cards/{slug}")
async def get_public_card(
    slug: str,
    request: Request,
    response: Response,
    server: Server = Depends(get_server),
):
    """
    Get an active card with its owner's details.

    The view is recorded through the telemetry pipeline without waiting on
    the store.
    """
    card = await server.cards.get_public_card(slug)
    server.cards.record_view(
        card,
        _client_address(request),
        request.headers.get("user-agent"),
        request.headers.get("referer"),
    )
    sections = await server.cards.get_owner_sections(card)
    response.headers["Cache-Control"] = "public, max-age=300, s-maxage=300"
    return {"card": card.to_dict(), **sections}


@router.post("/public/cards/{slug}/downloads", status_code=202)
async def record_card_download(
    slug: str,
    request: Request,
    server: Server = Depends(get_server),
):
    """Record a contact download and return the owner's contact sections."""
    card = await server.cards.get_public_card(slug)
    sections = await server.cards.get_owner_sections(card)
    server.cards.record_download(
        card, _client_address(request), request.headers.get("user-agent")
    )
    return {"card": card.to_dict(), **sections}


# --- Analytics Routes ---


@router.get("/analytics")
async def get_analytics(
    days: int = Query(30, description="Window length: 7, 30, 90 or 365"),
    server: Server = Depends(get_server),
    actor: str = Depends(get_actor),
):
    """Views, unique visitors and referrers across the principal's cards."""
    report = await server.analytics.report(actor, days=days)
    return report.to_dict()


@router.get("/telemetry/status")
async def telemetry_status(server: Server = Depends(get_server)):
    if server.telemetry is None:
        return {"enabled": False}
    return {"enabled": True, **server.telemetry.stats}


# --- Error Mapping ---


def _error_body(error: Exception, message: str | None = None) -> dict[str, Any]:
    return {
        "error": message or getattr(error, "message", str(error)),
        "code": getattr(error, "code", None),
    }


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(VersionConflictError)
    async def on_conflict(request: Request, exc: VersionConflictError):
        logger.info(
            "Version conflict",
            extra={"path": request.url.path, "current_version": exc.current_version},
        )
        return JSONResponse(status_code=409, content=ConflictSignal.from_error(exc).to_response())

    @app.exception_handler(NotFoundError)
    async def on_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content=_error_body(exc))

    @app.exception_handler(AccessDeniedError)
    async def on_access_denied(request: Request, exc: AccessDeniedError):
        return JSONResponse(status_code=403, content=_error_body(exc))

    @app.exception_handler(ValidationError)
    async def on_validation(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400, content={**_error_body(exc), "field": exc.field_name}
        )

    @app.exception_handler(StoreError)
    async def on_store_error(request: Request, exc: StoreError):
        if exc.code == ErrorCode.UNIQUE_VIOLATION.value:
            return JSONResponse(
                status_code=409,
                content=_error_body(exc, "URL conflict detected. Please try again."),
            )
        logger.error(
            f"Store error on {request.url.path}: {exc.message}",
            extra={"code": exc.code, "table": exc.table},
        )
        return JSONResponse(
            status_code=503,
            content=_error_body(exc, "The service is busy, please try again."),
        )


def create_app(server: Server, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        server: Started (or startable) server container holding the services
        settings: HTTP settings (loaded from environment if not provided)
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the container with the app; drain telemetry on shutdown."""
        await server.start()
        yield
        await server.stop()

    app = FastAPI(
        title="CardCore",
        description="Profile and card mutations with optimistic concurrency, plus view analytics.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.server = server
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {
            "status": "healthy" if server.is_running else "starting",
            "service": "cardcore",
            "version": __version__,
        }

    return app
