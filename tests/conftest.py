from __future__ import annotations

from typing import Iterator

import pytest

from prwarden.observability import configure_logging


@pytest.fixture(autouse=True)
def _silence_logging_between_tests() -> Iterator[None]:
    yield
    # Handlers may hold a captured stderr that pytest closes after the test.
    configure_logging(None)
