import os

import pytest

# Keep a developer's shell / .env from leaking into Settings
for _key in list(os.environ):
    if _key.startswith("SSX_") or _key in ("APP_ENV", "CORS_ORIGINS"):
        os.environ.pop(_key)

from signer import OTHER_KEY, SiweSigner  # noqa: E402

from ssx_server.config import Settings  # noqa: E402


def make_settings(**overrides) -> Settings:
    values = {
        "signing_key": "test_signing_key",
        "use_secure_cookies": False,
        "cors_origins_raw": "http://localhost",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def signer() -> SiweSigner:
    return SiweSigner()


@pytest.fixture
def other_signer() -> SiweSigner:
    return SiweSigner(OTHER_KEY)


@pytest.fixture
def settings_factory():
    return make_settings
