import structlog
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from weaver import __version__
from weaver.api.routes import health, sessions
from weaver.application.factory import OrchestratorFactory
from weaver.application.registry import SessionRegistry

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for FastAPI startup/shutdown events."""
    await logger.ainfo("fastapi.startup", message="Weaver API starting...")
    yield
    await app.state.registry.close_all()
    await logger.ainfo("fastapi.shutdown", message="Weaver API shutting down...")


def create_app(
    registry: SessionRegistry | None = None,
    factory: OrchestratorFactory | None = None,
) -> FastAPI:
    """Create and configure FastAPI application."""

    app = FastAPI(
        title="Weaver Orchestration API",
        description="Inspect integration sessions and confirm implementation plans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.registry = registry or SessionRegistry()
    app.state.factory = factory or OrchestratorFactory()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(sessions.router, prefix="/api/v1", tags=["sessions"])
    app.include_router(health.router, tags=["health"])

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8070)
