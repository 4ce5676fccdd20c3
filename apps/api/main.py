# FastAPI entrypoint for the ABAC service: stores, engine, routes and middleware

from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
import dotenv

from abac.abac_routes import router as abac_router
from abac.config import ABACConfig
from abac.exceptions import DuplicateError, NotFoundError, StoreUnavailableError, ValueCoercionError
from abac.service import ABACServices, build_services
from auth.security_middleware import AuditLoggingMiddleware, SecurityHeadersMiddleware

dotenv.load_dotenv()


def create_app(config: Optional[ABACConfig] = None, services: Optional[ABACServices] = None) -> FastAPI:
    """
    Build the application.

    Args:
        config: settings; read from the environment when omitted
        services: prebuilt stores/engine (tests pass in-memory ones);
            SQL-backed services are built from config otherwise
    """
    if services is None:
        services = build_services(config or ABACConfig())

    app = FastAPI(
        title="ABAC Policy Service",
        description="Attribute-based access control for the academic administration app",
        version="1.0.0"
    )
    app.state.abac = services

    # ==================== MIDDLEWARE ====================

    app.add_middleware(AuditLoggingMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin"],
        max_age=86400,
    )

    # ==================== ERROR HANDLERS ====================

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        logger.error(f"Store unavailable on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=503, content={"detail": "Policy store unavailable"})

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DuplicateError)
    async def duplicate_handler(request: Request, exc: DuplicateError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(ValueCoercionError)
    async def invalid_value_handler(request: Request, exc: ValueCoercionError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    # ==================== ROUTES ====================

    app.include_router(abac_router)  # /abac

    @app.get("/health")
    def health():
        """Liveness plus database reachability."""
        database = app.state.abac.database
        database_ok = database.health_check() if database is not None else True
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
        }

    # ==================== STARTUP / SHUTDOWN ====================

    @app.on_event("startup")
    async def startup_event():
        """Seed stores and purge expired audit records."""
        app.state.abac.start()
        logger.info("✓ ABAC service started")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.abac.stop()
        logger.info("ABAC service stopped")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("apps.api.main:app", host="0.0.0.0", port=8000)
