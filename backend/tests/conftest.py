"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors), and
give every test a fresh in-memory platform so state never leaks between
cases.
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable across tests
REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.identity_access.settings import IdentitySettings  # noqa: E402
from backend.storage.documents import InMemoryDocumentStore  # noqa: E402
from backend.web.wiring import build_platform, set_platform  # noqa: E402

TEST_JWT_SECRET = "test-only-jwt-secret-0123456789abcdef"
TEST_ADMIN_KEY = "test-admin-elevation"
TEST_CLERGY_KEY = "test-clergy-elevation"


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def identity_settings() -> IdentitySettings:
    # bcrypt at its lowest cost factor keeps the suite fast
    return IdentitySettings(
        jwt_secret=TEST_JWT_SECRET,
        admin_secret=TEST_ADMIN_KEY,
        clergy_secret=TEST_CLERGY_KEY,
        hash_rounds=4,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def platform(identity_settings, store):
    """Fresh service graph over an in-memory store, installed for the web app."""
    built = build_platform(settings=identity_settings, store=store)
    set_platform(built)
    yield built
    set_platform(None)


@pytest.fixture(autouse=True)
def _clear_environment_toggles(monkeypatch: pytest.MonkeyPatch):
    """Keep env-driven behavior deterministic per test.

    Why:
        A few tests opt into production semantics or shrink upload ceilings;
        clearing these variables up front prevents leaks into unrelated tests.
    """
    for var in (
        "EXCELLENCE_ENV",
        "CONTENT_STORE",
        "MEDIA_MAX_UPLOAD_BYTES",
        "MATERIALS_MAX_UPLOAD_BYTES",
    ):
        monkeypatch.delenv(var, raising=False)
    if os.getenv("JWT_SECRET") is None:
        monkeypatch.setenv("JWT_SECRET", TEST_JWT_SECRET)
    yield
