from __future__ import annotations

import pytest

from lark_cli.config import Settings
from lark_cli.state import CredentialStore

_ENV_VARS = (
    "LARK_APP_ID",
    "LARK_APP_SECRET",
    "LARK_BASE_URL",
    "LARK_USER_ACCESS_TOKEN",
    "LARK_CONFIG",
    "LARK_ACCOUNT",
    "LARK_OAUTH_REDIRECT_PORT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture()
def store(tmp_path) -> CredentialStore:
    return CredentialStore(str(tmp_path / "config.json"))


@pytest.fixture()
def settings() -> Settings:
    return Settings(app_id="app", app_secret="secret")
