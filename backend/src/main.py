# main.py
# Entry point for the privacy compliance service.
# - Builds the engine from environment settings
# - Registers the privacy API routes
# - Provides root health-check endpoints
# - Run with: uvicorn main:app --app-dir backend/src --reload
from contextlib import asynccontextmanager
import logging
import sys
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

sys.path.insert(0, str(Path(__file__).parent))
from api.privacy_routes import router as privacy_router
from config.settings import EngineSettings, configure_logging
from privacy.engine import PrivacyComplianceEngine
from services.bootstrap import build_engine

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[EngineSettings] = None,
    engine: Optional[PrivacyComplianceEngine] = None,
) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    configure_logging(settings.log_level)
    engine = engine or build_engine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.engine.aclose()

    app = FastAPI(
        title="Privacy Compliance API",
        description="Consent ledger, data-rights requests and age gating across jurisdictions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Update this with your frontend URL in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"status": "healthy", "message": "Privacy compliance API is running"}

    @app.get("/health")
    def health_check():
        return {"status": "ok", "regions": len(app.state.engine.resolver.regions())}

    # Register API routes
    app.include_router(privacy_router)

    logger.info(
        f"Privacy API ready: authority={settings.authority_backend}, cache={settings.cache_backend}"
    )
    return app


app = create_app()
