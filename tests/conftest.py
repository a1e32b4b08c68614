"""
tests/conftest.py
"""
from __future__ import annotations

import itertools
from pathlib import Path
from typing import Generator

import pytest
from flask.testing import FlaskClient

from folio.core import ADMIN, Folio
from folio.site import app

_ip_counter = itertools.count(1)


def _next_ip() -> str:
    n = next(_ip_counter)
    return f"10.0.{n // 250}.{n % 250 + 1}"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """A fresh database file per test; nothing leaks between tests."""
    return tmp_path / "folio.sqlite3"


@pytest.fixture
def folio(db_path: Path) -> Folio:
    return Folio(db_path)


@pytest.fixture
def admin(folio: Folio) -> Folio:
    """Same bundle, already switched into admin mode."""
    folio.session.set_mode(ADMIN)
    return folio


@pytest.fixture
def client(db_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[FlaskClient, None, None]:
    """
    A test client bound to this test's database.  Every client gets its
    own REMOTE_ADDR so the login rate limit never bleeds between tests.
    """
    monkeypatch.setitem(app.config, "TESTING", True)
    monkeypatch.setitem(app.config, "DATABASE", str(db_path))
    app.extensions.pop("folio", None)

    with app.test_client() as c, app.app_context():
        c.environ_base["REMOTE_ADDR"] = _next_ip()
        yield c

    app.extensions.pop("folio", None)

