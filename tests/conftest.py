"""Shared test fixtures for the minter test suite."""

from __future__ import annotations

import os

# Tests must not pick up a developer's .env production settings.
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("CORS_ORIGINS", "http://localhost:3000")

from unittest.mock import MagicMock

import pytest

from pt_minter.core.ledger import PointsLedger
from pt_minter.core.nonces import NonceStore
from pt_minter.core.registry import DeviceRegistry
from tests.helpers import CLAIMANT, DEVICE, make_minter


@pytest.fixture
def registry() -> DeviceRegistry:
    reg = DeviceRegistry()
    reg.upsert_device(DEVICE, initialized=True)
    reg.bind(CLAIMANT, DEVICE)
    yield reg
    reg.close()


@pytest.fixture
def nonce_store() -> NonceStore:
    store = NonceStore()
    store.issue(CLAIMANT, "n1")
    yield store
    store.close()


@pytest.fixture
def ledger() -> PointsLedger:
    pl = PointsLedger()
    yield pl
    pl.close()


@pytest.fixture
def minter() -> MagicMock:
    return make_minter()
