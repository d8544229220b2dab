"""Papertrail utility functions module."""

from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Union
import structlog

from ..errors import InvalidInput

logger = structlog.get_logger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
DEFAULT_LOOKBACK_SECONDS = 3600

# Syslog severities 0-3: emergency, alert, critical, error
ERROR_SEVERITY_THRESHOLD = 3

TimeValue = Union[int, float, str, datetime]

_SEVERITY_LEVELS = {
    "emergency": 0, "alert": 1, "critical": 2, "error": 3,
    "warning": 4, "notice": 5, "info": 6, "debug": 7,
}


def to_epoch_seconds(value: TimeValue, field: str = "time") -> int:
    """Convert a caller-supplied instant to whole epoch seconds.

    Accepts epoch numbers, datetimes (naive values are taken as UTC) and
    ISO 8601 strings, including a trailing 'Z'.

    Raises:
        InvalidInput: If the value cannot be interpreted as an instant
    """
    if isinstance(value, bool):
        raise InvalidInput(f"Invalid {field}: expected a timestamp, got a boolean")

    if isinstance(value, (int, float)):
        if value < 0:
            raise InvalidInput(f"Invalid {field}: epoch seconds cannot be negative")
        return int(value)

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp())

    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise InvalidInput(
                f"Invalid {field} format. Use ISO 8601 format (e.g., 2023-12-01T10:00:00Z)"
            )
        return to_epoch_seconds(parsed, field)

    raise InvalidInput(f"Invalid {field}: unsupported type {type(value).__name__}")


def clamp_limit(limit: Optional[int]) -> int:
    """Clamp a requested event limit into [1, MAX_LIMIT], defaulting to DEFAULT_LIMIT."""
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def severity_level(severity: Any) -> Optional[int]:
    """Numeric syslog severity for a Papertrail severity field.

    Papertrail reports severities by name ("Error", "Info"); numeric values
    are passed through.
    """
    if severity is None:
        return None
    if isinstance(severity, int) and not isinstance(severity, bool):
        return severity
    return _SEVERITY_LEVELS.get(str(severity).strip().lower())


def parse_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """Map a raw Papertrail event onto the stable event record shape."""
    return {
        'id': event.get('id'),
        'timestamp': event.get('received_at'),
        'hostname': event.get('hostname'),
        'program': event.get('program'),
        'facility': event.get('facility'),
        'severity': event.get('severity'),
        'message': event.get('message', ''),
        'source': {
            'ip': event.get('source_ip'),
            'name': event.get('source_name'),
            'id': event.get('source_id'),
        },
    }


def summarize_events(events: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Compute summary statistics over normalized events.

    Args:
        events: Events as produced by parse_event

    Returns:
        Dict[str, Any]: unique host/program counts, error-level count and
        the earliest/latest receipt timestamps seen
    """
    hosts = set()
    programs = set()
    error_count = 0
    first_seen = None
    last_seen = None

    for event in events:
        if event.get('hostname'):
            hosts.add(event['hostname'])
        if event.get('program'):
            programs.add(event['program'])

        level = severity_level(event.get('severity'))
        if level is not None and level <= ERROR_SEVERITY_THRESHOLD:
            error_count += 1

        received = _parse_received_at(event.get('timestamp'))
        if received is not None:
            if first_seen is None or received < first_seen:
                first_seen = received
            if last_seen is None or received > last_seen:
                last_seen = received

    return {
        'unique_hosts': len(hosts),
        'unique_programs': len(programs),
        'error_count': error_count,
        'first_seen': first_seen.isoformat() if first_seen else None,
        'last_seen': last_seen.isoformat() if last_seen else None,
    }


def _parse_received_at(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + '+00:00' if value.endswith('Z') else value
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable event timestamp", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
