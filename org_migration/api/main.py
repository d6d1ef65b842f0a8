"""FastAPI application entry point."""

from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .routes import migrations
from ..config import EngineSettings
from ..orchestrator import MigrationEngine
from ..templates.registry import TemplateRegistry


def create_app(engine: Optional[MigrationEngine] = None) -> FastAPI:
    """Create the API around an engine, built from the environment when not given."""
    if engine is None:
        settings = EngineSettings.from_env()
        engine = MigrationEngine(
            settings=settings,
            template_registry=TemplateRegistry(settings.templates_dir),
        )

    app = FastAPI(
        title="Org Migration API",
        description="API for migrating records between orgs",
        version="0.1.0",
    )
    app.state.engine = engine
    app.state.results = {}

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(migrations.router, prefix="/api/migrations", tags=["migrations"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "running": app.state.engine.is_running}

    return app


app = create_app()
