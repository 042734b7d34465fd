"""Shared pytest configuration for the Stratus test suite.

Ensures the project root is on sys.path so test files can import
source modules (api, billing, providers, etc.) directly, and provides a
fresh SQLite database per test.
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to sys.path so `import billing`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("STRATUS_ENV", "test")
os.environ.setdefault("STRATUS_API_TOKEN", "")
os.environ.setdefault("STRATUS_CREDENTIAL_KEY", "stratus-test-credential-key")
os.environ.setdefault("STRATUS_DB_BACKEND", "sqlite")


@pytest.fixture
def db(tmp_path):
    """Isolated SQLite database for one test."""
    from db import Database

    return Database(backend="sqlite", db_path=str(tmp_path / "stratus.db"))


@pytest.fixture
def catalog(db):
    from catalog import CatalogStore

    return CatalogStore(db)


@pytest.fixture
def linode_provider(catalog):
    return catalog.add_provider("Linode main", "linode", "lin-token-123")


@pytest.fixture
def do_provider(catalog):
    return catalog.add_provider("DO main", "digitalocean", "do-token-456")
