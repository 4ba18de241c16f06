"""API middleware package."""

from src.crm_connect.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
