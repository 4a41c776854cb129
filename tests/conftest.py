import os

import pytest

os.environ.setdefault("TEST_MODE", "1")


@pytest.fixture(autouse=True)
def _test_mode(monkeypatch):
    monkeypatch.setenv("TEST_MODE", "1")
