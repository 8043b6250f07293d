"""Shared test fixtures."""

from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from smartimport.config import Config
from smartimport.database.models import RawTransaction
from smartimport.database.repository import Repository

# Test fixture config directory with synthetic data
FIXTURE_CONFIG_DIR = Path(__file__).parent / "fixtures" / "config"


def make_raw(description="Continente supermercado", amount="45.67",
             on=date(2024, 1, 15), **overrides) -> RawTransaction:
    """Build a RawTransaction with sensible defaults."""
    return RawTransaction(
        date=on, description=description, amount=Decimal(amount), **overrides
    )


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations()
    yield r
    r.close()


@pytest.fixture
def config():
    return Config(FIXTURE_CONFIG_DIR)
