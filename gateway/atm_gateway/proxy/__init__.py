"""
Proxy Package
=============

Pass-through endpoints for the external APIs the banking frontend consumes.

Main Components:
----------------
- routes.py: FastAPI router with /api/chat and /api/stock/* endpoints

Usage:
------
    from atm_gateway.proxy import proxy_router
    app.include_router(proxy_router)
"""

from .routes import proxy_router

__all__ = ["proxy_router"]
