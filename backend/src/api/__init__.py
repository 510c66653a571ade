# API routes module
# Contains all API endpoint definitions

from .privacy_routes import router as privacy_router

__all__ = ["privacy_router"]
