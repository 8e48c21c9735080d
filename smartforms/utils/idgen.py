"""ID Generation Utilities"""
import uuid
from datetime import datetime, timezone
from typing import Optional


def generate_id(prefix: Optional[str] = None) -> str:
    """
    Generate a unique ID with optional prefix

    Args:
        prefix: Optional prefix for the ID (e.g., 'APR', 'EVT')

    Returns:
        Unique ID string

    Examples:
        >>> generate_id('APR')
        'APR-a1b2c3d4e5f6'
        >>> generate_id()
        'a1b2c3d4e5f6'
    """
    unique_part = uuid.uuid4().hex[:12]

    if prefix:
        return f"{prefix}-{unique_part}"
    return unique_part


def generate_approval_record_id() -> str:
    """Generate approval record ID"""
    return generate_id("APR")


def generate_event_id() -> str:
    """Generate timeline event ID"""
    return generate_id("EVT")


def generate_instruction_id() -> str:
    """Generate side-effect instruction ID"""
    return generate_id("INS")


def generate_correlation_id() -> str:
    """
    Generate a correlation ID for tracing one evaluation pass

    Returns:
        Correlation ID string with timestamp prefix
    """
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    unique_part = uuid.uuid4().hex[:8]
    return f"COR-{timestamp}-{unique_part}"
