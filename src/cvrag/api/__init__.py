"""HTTP surface for the excluded presentation layer."""

from cvrag.api.routes import router

__all__ = ["router"]
