"""
SignVault Backend API
FastAPI application for vaulting signed documents from DocuSign, SignNow
and PandaDoc, and verifying their integrity.
"""

import logging
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from signvault.config import Settings
from signvault.dependencies import VaultServices, build_services, get_services
from signvault.errors import PersistenceError, StorageError
from signvault.routers import connections, documents, oauth, verification, webhooks

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


def get_cors_origins(extra_origins: Optional[List[str]] = None) -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes:
    - http://localhost:3000  (dashboard dev server)
    - http://localhost:3001  (Docker-mapped port)

    Additional origins come from the CORS_ORIGINS environment variable
    (comma-separated, parsed into Settings.cors_origins), e.g.:
        CORS_ORIGINS=https://vault.example.com,https://preview.vault.example.com

    Duplicates are removed while preserving order.
    """
    always_included = [
        "http://localhost:3000",
        "http://localhost:3001",
    ]

    seen: set = set()
    origins: List[str] = []
    for origin in always_included + list(extra_origins or []):
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)

    return origins


def create_app(
    services: Optional[VaultServices] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API.

    With ``services`` given (tests), nothing is constructed from the
    environment and no workers are started. Otherwise settings are read now
    (Settings.from_env() unless passed in) and the clients and ingestion
    workers are created on startup and torn down on shutdown.

    Run with: uvicorn signvault.main:create_app --factory
    """
    if services is not None:
        settings = services.settings
    elif settings is None:
        settings = Settings.from_env()

    app = FastAPI(
        title="SignVault API",
        description="Signed document vaulting and integrity verification",
        version=API_VERSION,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_cors_origins(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(oauth.router, prefix="/oauth", tags=["oauth"])
    app.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(verification.router, tags=["verification"])
    app.include_router(documents.router, prefix="/documents", tags=["documents"])
    app.include_router(connections.router, prefix="/connections", tags=["connections"])

    @app.on_event("startup")
    async def start_services() -> None:
        if app.state.services is None:
            app.state.services = build_services(settings)
        app.state.services.queue.start()
        logger.info(f"SignVault API {API_VERSION} started")

    @app.on_event("shutdown")
    async def stop_services() -> None:
        current: Optional[VaultServices] = app.state.services
        if current is None:
            return
        await current.queue.shutdown(current.settings.ingestion_shutdown_grace_seconds)
        await current.aclose()

    @app.get("/")
    async def root():
        return {"message": "SignVault API", "version": API_VERSION}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/health/db")
    async def health_db(request: Request):
        """
        Test the Supabase database connection with a one-row SELECT.
        Returns 503 on failure.
        """
        current = get_services(request)
        try:
            current.repo.ping()
        except PersistenceError as exc:
            logger.error(f"Database health check failed: {exc}")
            raise HTTPException(status_code=503, detail=f"Database connection failed: {exc}")
        return {"status": "ok", "database": "reachable"}

    @app.get("/health/storage")
    async def health_storage(request: Request):
        """
        Test Supabase Storage access and verify the vault bucket exists.
        Returns 503 if storage is unreachable or the bucket is missing.
        """
        current = get_services(request)
        try:
            current.store.ping()
        except StorageError as exc:
            logger.error(f"Storage health check failed: {exc}")
            raise HTTPException(status_code=503, detail=f"Storage check failed: {exc}")
        return {"status": "ok", "storage": "reachable", "bucket": current.store.bucket}

    return app
