from __future__ import annotations

import logging

import pytest


@pytest.fixture(autouse=True)
def _harness_logging(caplog):
    caplog.set_level(logging.DEBUG, logger="benchharness")
    yield
