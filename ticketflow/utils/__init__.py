"""Logging, id and time helpers shared by the engine and the API"""
from .logger import get_logger, get_event_logger, setup_logging
from .idgen import generate_id, generate_correlation_id
from .time import utc_now, ensure_utc, format_iso, parse_iso

__all__ = [
    "get_logger",
    "get_event_logger",
    "setup_logging",
    "generate_id",
    "generate_correlation_id",
    "utc_now",
    "ensure_utc",
    "format_iso",
    "parse_iso",
]
