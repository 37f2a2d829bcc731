"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'TKT', 'STS', 'TRN')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('TRN')
        'TRN-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_workflow_type_id() -> str:
    return generate_id("WFT")


def generate_status_id() -> str:
    return generate_id("STS")


def generate_transition_id() -> str:
    return generate_id("TRN")


def generate_condition_id() -> str:
    return generate_id("CND")


def generate_action_id() -> str:
    return generate_id("ACT")


def generate_history_id() -> str:
    return generate_id("HIS")


def generate_ticket_id() -> str:
    return generate_id("TKT")


def generate_comment_id() -> str:
    return generate_id("CMT")


def generate_notification_id() -> str:
    return generate_id("NTF")


def generate_version_id() -> str:
    return generate_id("VER")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for request tracing

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
