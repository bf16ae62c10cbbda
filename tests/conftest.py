import json
import logging

import pytest

from fakes import FakeBackend
from zone_events import EVENT_LOGGER_NAME, setup_event_log
from zone_sources import NameResolver


@pytest.fixture
def log_path(tmp_path):
    return tmp_path / 'fw-zone-sync.jsonl'


@pytest.fixture
def events(log_path):
    adapter = setup_event_log(str(log_path))
    yield adapter
    logger = logging.getLogger(EVENT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def read_events(log_path):
    def _read():
        if not log_path.exists():
            return []
        return [json.loads(line) for line in log_path.read_text(encoding='utf-8').splitlines()]
    return _read


@pytest.fixture
def make_resolver():
    def _make(records=None, failing=()):
        return NameResolver(FakeBackend(records, failing))
    return _make
