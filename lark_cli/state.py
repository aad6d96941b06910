from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import CredentialStoreError

logger = logging.getLogger(__name__)

DEFAULT_ACCOUNT = "default"


def _drop_nulls(data: Any) -> Any:
    # Older config files may carry explicit nulls; treat them as absent.
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if v is not None}
    return data


class RefreshPayload(BaseModel):
    # Inputs of the last successful authorization, used to prefill the next one.
    model_config = ConfigDict(extra="ignore")

    scopes: str = ""
    services: list[str] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def strip_nulls(cls, data: Any) -> Any:
        return _drop_nulls(data)


class UserAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_access_token: str = ""
    user_access_token_expires_at: int = 0
    refresh_token: str = ""
    refresh_token_expires_at: int = 0
    user_scopes: list[str] = Field(default_factory=list)
    user_refresh_token_payload: Optional[RefreshPayload] = None

    @model_validator(mode="before")
    @classmethod
    def strip_nulls(cls, data: Any) -> Any:
        return _drop_nulls(data)

    @property
    def has_tokens(self) -> bool:
        return bool(self.user_access_token or self.refresh_token)


class TenantCredential(BaseModel):
    model_config = ConfigDict(frozen=True)

    app_id: str = ""
    app_secret: str = ""
    tenant_access_token: str = ""
    tenant_access_token_expires_at: int = 0


class CredentialState(BaseModel):
    """Mirrors config.json. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    app_id: str = ""
    app_secret: str = ""
    base_url: str = ""
    tenant_access_token: str = ""
    tenant_access_token_expires_at: int = 0
    # Legacy single-account fields; they back the "default" account.
    user_access_token: str = ""
    user_access_token_expires_at: int = 0
    user_scopes: list[str] = Field(default_factory=list)
    user_accounts: dict[str, UserAccount] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def strip_nulls(cls, data: Any) -> Any:
        return _drop_nulls(data)


def load_credentials(path: str) -> CredentialState:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return CredentialState()
    except json.JSONDecodeError as e:
        raise CredentialStoreError(f"config file {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise CredentialStoreError(f"cannot read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise CredentialStoreError(f"config file {path} must be a JSON object")
    try:
        return CredentialState.model_validate(data)
    except ValidationError as e:
        raise CredentialStoreError(f"config file {path} is malformed: {e}") from e


def save_credentials(path: str, state: CredentialState) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    tmp = path + ".tmp"
    try:
        os.makedirs(parent, mode=0o700, exist_ok=True)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(state.model_dump(mode="json"), f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except OSError as e:
        raise CredentialStoreError(f"cannot write config file {path}: {e}") from e


class CredentialStore:
    """
    In-memory credential state backed by one JSON file.

    Every mutating method persists immediately. There is no cross-process locking:
    two processes writing at once means the last write wins.
    """

    def __init__(self, path: str, state: Optional[CredentialState] = None):
        self.path = path
        self._state = state if state is not None else load_credentials(path)
        self._lock = threading.RLock()

    def snapshot(self) -> CredentialState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def save(self) -> None:
        with self._lock:
            save_credentials(self.path, self._state)
            logger.debug("saved credentials to %s", self.path)

    # ---- app / tenant ----
    def tenant_credential(self) -> TenantCredential:
        with self._lock:
            s = self._state
            return TenantCredential(
                app_id=s.app_id,
                app_secret=s.app_secret,
                tenant_access_token=s.tenant_access_token,
                tenant_access_token_expires_at=s.tenant_access_token_expires_at,
            )

    def update_app(
        self,
        *,
        app_id: Optional[str] = None,
        app_secret: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> None:
        with self._lock:
            if app_id is not None:
                self._state.app_id = app_id
            if app_secret is not None:
                self._state.app_secret = app_secret
            if base_url is not None:
                self._state.base_url = base_url
            self.save()

    def update_tenant_token(self, token: str, expires_at: int) -> None:
        with self._lock:
            self._state.tenant_access_token = token
            self._state.tenant_access_token_expires_at = int(expires_at)
            self.save()

    def clear_tenant_token(self) -> None:
        with self._lock:
            self._state.tenant_access_token = ""
            self._state.tenant_access_token_expires_at = 0
            self.save()

    # ---- user accounts ----
    def legacy_user_scopes(self) -> list[str]:
        with self._lock:
            return list(self._state.user_scopes)

    def account_names(self) -> list[str]:
        with self._lock:
            names = set(self._state.user_accounts)
            if self._state.user_access_token:
                names.add(DEFAULT_ACCOUNT)
            return sorted(names)

    def get_account(self, name: str) -> Optional[UserAccount]:
        with self._lock:
            acct = self._state.user_accounts.get(name)
            if acct is not None:
                return acct.model_copy(deep=True)
            if name == DEFAULT_ACCOUNT and self._state.user_access_token:
                return UserAccount(
                    user_access_token=self._state.user_access_token,
                    user_access_token_expires_at=self._state.user_access_token_expires_at,
                    user_scopes=list(self._state.user_scopes),
                )
            return None

    def put_account(self, name: str, account: UserAccount) -> None:
        with self._lock:
            self._state.user_accounts[name] = account.model_copy(deep=True)
            if name == DEFAULT_ACCOUNT:
                self._state.user_access_token = account.user_access_token
                self._state.user_access_token_expires_at = account.user_access_token_expires_at
                self._state.user_scopes = list(account.user_scopes)
            self.save()

    def remove_account(self, name: str) -> bool:
        with self._lock:
            removed = self._state.user_accounts.pop(name, None) is not None
            if name == DEFAULT_ACCOUNT and self._state.user_access_token:
                self._state.user_access_token = ""
                self._state.user_access_token_expires_at = 0
                self._state.user_scopes = []
                removed = True
            if removed:
                self.save()
            return removed
