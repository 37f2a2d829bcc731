"""Request middleware (correlation ids, timing) and the error-body handlers"""
from .correlation import CorrelationIdMiddleware
from .error_handlers import register_error_handlers

__all__ = ["CorrelationIdMiddleware", "register_error_handlers"]
