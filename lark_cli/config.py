from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from platformdirs import user_config_dir

from .errors import ConfigurationError
from .state import CredentialState

DEFAULT_BASE_URL = "https://open.feishu.cn"
DEFAULT_REDIRECT_PORT = 17231


def default_config_path() -> str:
    return os.path.join(user_config_dir("lark"), "config.json")


class Settings(BaseSettings):
    # Reads LARK_* from the environment; a .env file is loaded by the CLI beforehand.
    model_config = SettingsConfigDict(env_prefix="LARK_", extra="ignore")

    app_id: Optional[str] = None
    app_secret: Optional[str] = None
    base_url: Optional[str] = None
    user_access_token: Optional[str] = None
    config_file: Optional[str] = Field(default=None, validation_alias="LARK_CONFIG")
    account: Optional[str] = None
    oauth_redirect_port: int = DEFAULT_REDIRECT_PORT

    def config_path(self) -> str:
        return self.config_file or default_config_path()


class AppCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_id: str
    app_secret: str
    base_url: str = DEFAULT_BASE_URL

    @staticmethod
    def from_env_or_config(settings: Settings, state: CredentialState) -> "AppCredentials":
        app_id = settings.app_id or state.app_id
        app_secret = settings.app_secret or state.app_secret
        base_url = settings.base_url or state.base_url or DEFAULT_BASE_URL

        if not app_id:
            raise ConfigurationError("missing app_id: run `lark auth login --app-id ...` or set LARK_APP_ID")
        if not app_secret:
            raise ConfigurationError(
                "missing app_secret: run `lark auth login --app-secret ...` or set LARK_APP_SECRET"
            )
        return AppCredentials(app_id=app_id, app_secret=app_secret, base_url=base_url.rstrip("/"))


def resolve_base_url(settings: Settings, state: CredentialState) -> str:
    return (settings.base_url or state.base_url or DEFAULT_BASE_URL).rstrip("/")
