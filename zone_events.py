"""
Structured event log for the firewalld zone synchronizer.

Every decision point is written as one self-contained JSON line to an
append-only log file. Records carry the zone they belong to through a
LoggerAdapter instead of any module level "current zone" state.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping

EVENT_LOGGER_NAME = 'zone_sync'
TIMESTAMP_FORMAT = '%Y-%m-%dT%H:%M:%SZ'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - [%(zone)s] %(message)s'

_LEVEL_NAMES = {
    logging.DEBUG: 'DEBUG',
    logging.INFO: 'INFO',
    logging.WARNING: 'WARN',
    logging.ERROR: 'ERROR',
    logging.CRITICAL: 'ERROR',
}


@dataclass(frozen=True)
class EventRecord:
    """One immutable, timestamped entry of the event stream."""

    timestamp: str
    level: str
    zone: str
    message: str
    payload: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, 'payload', MappingProxyType(dict(self.payload)))

    @classmethod
    def from_log_record(cls, record: logging.LogRecord) -> 'EventRecord':
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        return cls(
            timestamp=created.strftime(TIMESTAMP_FORMAT),
            level=_LEVEL_NAMES.get(record.levelno, record.levelname),
            zone=getattr(record, 'zone', '') or '',
            message=record.getMessage(),
            payload=getattr(record, 'payload', None) or {},
        )

    def to_dict(self) -> Dict[str, Any]:
        """Flatten the record; payload keys never shadow the core fields."""
        data: Dict[str, Any] = {
            'timestamp': self.timestamp,
            'level': self.level,
            'zone': self.zone,
            'message': self.message,
        }
        for key, value in self.payload.items():
            data.setdefault(key, value)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), default=str)


class JsonEventFormatter(logging.Formatter):
    """Render log records as single-line JSON events."""

    def format(self, record: logging.LogRecord) -> str:
        event = EventRecord.from_log_record(record)
        if record.exc_info:
            data = event.to_dict()
            data.setdefault('traceback', self.formatException(record.exc_info))
            return json.dumps(data, separators=(',', ':'), default=str)
        return event.to_json()


class ZoneContextFilter(logging.Filter):
    """Give records logged outside a zone adapter the global defaults."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, 'zone'):
            record.zone = ''
        if not hasattr(record, 'payload'):
            record.payload = {}
        return True


class ZoneEventLogger(logging.LoggerAdapter):
    """Logger adapter that tags every record with a zone name."""

    def __init__(self, logger: logging.Logger, zone: str = ''):
        super().__init__(logger, {'zone': zone})

    @property
    def zone(self) -> str:
        return self.extra['zone']

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        extra['zone'] = self.zone
        extra.setdefault('payload', {})
        kwargs['extra'] = extra
        return msg, kwargs

    def for_zone(self, zone: str) -> 'ZoneEventLogger':
        return ZoneEventLogger(self.logger, zone)

    def record(self, level: int, message: str, **payload: Any) -> None:
        """Append one event with an optional structured payload."""
        self.log(level, message, extra={'payload': payload})


def get_event_logger(zone: str = '') -> ZoneEventLogger:
    return ZoneEventLogger(logging.getLogger(EVENT_LOGGER_NAME), zone)


def setup_event_log(log_file: str, verbose: bool = False) -> ZoneEventLogger:
    """
    Configure the event logger with a JSON file handler and a console handler.

    Args:
        log_file: Path of the append-only JSON lines file
        verbose: If True, also show DEBUG events on the console

    Returns:
        A global (zone-less) event logger

    Raises:
        OSError: If the log file cannot be opened for appending
    """
    logger = logging.getLogger(EVENT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JsonEventFormatter())

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    for handler in (file_handler, console):
        handler.addFilter(ZoneContextFilter())
        logger.addHandler(handler)

    return ZoneEventLogger(logger)
