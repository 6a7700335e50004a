"""
Pytest fixtures shared by the identity risk engine tests.
"""

from __future__ import annotations

import pytest

from m365_identity_risk.indicators import load_catalog


@pytest.fixture(scope="session")
def catalog():
    """The packaged IOC catalog."""
    return load_catalog()
