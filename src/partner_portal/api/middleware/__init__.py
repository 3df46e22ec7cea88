"""API middleware package."""

from src.partner_portal.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
