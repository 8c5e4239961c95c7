from fastapi import FastAPI

from .admin import router as admin_router
from .pairings import router as pairings_router


def include_modular_routers(app: FastAPI) -> None:
    app.include_router(admin_router, tags=["admin"])
    app.include_router(pairings_router, tags=["pairings"])


__all__ = ["include_modular_routers"]
