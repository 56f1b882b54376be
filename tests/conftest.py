import sys
from unittest.mock import MagicMock
import pytest

# Mock fcntl for Windows
if sys.platform.startswith("win"):
    if "fcntl" not in sys.modules:
        mock_fcntl = MagicMock()
        mock_fcntl.LOCK_EX = 1
        mock_fcntl.LOCK_NB = 2
        mock_fcntl.LOCK_UN = 8
        sys.modules["fcntl"] = mock_fcntl

from warpsync.store import TransferStore
from tests.mocks.factories import make_request


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "transfers.json"


@pytest.fixture
def store(state_file):
    return TransferStore(state_file)
