from __future__ import annotations

import pytest

from fakes import THURSDAY_EVENING, make_settings
from reservation_agent.config import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def clock():
    return lambda: THURSDAY_EVENING
