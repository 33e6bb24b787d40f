"""Fixtures shared by the auth unit tests."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from tests.fakes import FakeKeyStore, make_identity as _make_identity
from waveorder.auth.context import ApiIdentity


@pytest.fixture()
def make_identity() -> Callable[..., ApiIdentity]:
    """Factory for ApiIdentity with sensible defaults; override any field."""
    return _make_identity


@pytest.fixture()
def key_store() -> FakeKeyStore:
    return FakeKeyStore()
