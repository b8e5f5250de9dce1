import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config import Settings  # noqa: E402
from ozon_api import OzonCredentials  # noqa: E402


@pytest.fixture
def creds():
    return OzonCredentials("123456", "api-key-0000-1111")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        draft_poll_interval_s=0,
        draft_recreate_delay_s=0,
        supply_poll_interval_s=0,
        order_id_attempts=1,
        order_id_delay_ms=0,
        cancel_poll_attempts=1,
        cancel_poll_delay_ms=0,
    )
