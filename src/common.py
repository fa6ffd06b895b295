"""Common utilities and types for stack deployment."""

import logging
from dataclasses import dataclass, field
from typing import Optional

logger = logging.getLogger(__name__)

# Per-resource outcome statuses reported by the executor
SUCCEEDED = 'succeeded'
UNCHANGED = 'unchanged'
FAILED = 'failed'
SKIPPED = 'skipped'
CANCELLED = 'cancelled'
MISSING = 'missing'


@dataclass
class OperationResult:
    """Result returned by a provider operation.

    Attributes:
        success: Whether the operation completed
        message: Human-readable summary or error text
        duration: Seconds spent in the operation
        physical_id: Provider-assigned identifier (create/update)
        outputs: Output properties observed after the operation
        not_found: True when the provider no longer has the resource
    """
    success: bool
    message: str = ''
    duration: float = 0.0
    physical_id: Optional[str] = None
    outputs: dict = field(default_factory=dict)
    not_found: bool = False


def format_duration(seconds: Optional[float]) -> str:
    """Format seconds for summary lines (e.g. '1.2s', '3m05s')."""
    if seconds is None:
        return '-'
    if seconds < 60:
        return f'{seconds:.1f}s'
    minutes, secs = divmod(int(seconds), 60)
    return f'{minutes}m{secs:02d}s'
