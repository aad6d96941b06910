from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Optional, Protocol

from .client import LarkClient
from .config import AppCredentials, Settings
from .errors import ConfigurationError, LarkAPIError, NotAuthenticatedError, ReauthenticationRequiredError
from .resolver import ScopeOptions, resolve_user_scopes
from .scopes import (
    DEFAULT_USER_SERVICES,
    expand_aliases,
    join_scopes,
    normalize_scopes,
    normalize_services,
    parse_scope_list,
    parse_services_list,
)
from .singleflight import SingleFlight
from .state import DEFAULT_ACCOUNT, CredentialStore, RefreshPayload, UserAccount

logger = logging.getLogger(__name__)

USER_TOKEN_SAFETY_MARGIN_S = 300


class ScopePrompt(Protocol):
    def available(self) -> bool: ...

    def select_scope_options(self, previous_services: list[str], previous_scopes: list[str]) -> ScopeOptions: ...


class CodeReceiver(Protocol):
    redirect_uri: str

    def wait_for_code(self, authorize_url: str, state: str) -> str: ...


def login_command(account: str) -> str:
    cmd = "lark auth user login"
    if account != DEFAULT_ACCOUNT:
        cmd += f" --account {account}"
    return cmd


class UserTokenManager:
    """
    Owns user OAuth tokens for every named account in the credential store.

    Refreshes are single-flight per account. A rejected refresh grant clears the
    account's tokens and asks for a new interactive login; it is never retried.
    Missing scopes are never escalated here: callers route those failures through
    `hints.translate`.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: LarkClient,
        settings: Optional[Settings] = None,
        *,
        prompt: Optional[ScopePrompt] = None,
        receiver: Optional[CodeReceiver] = None,
        safety_margin_s: int = USER_TOKEN_SAFETY_MARGIN_S,
    ):
        self._store = store
        self._client = client
        self._settings = settings or Settings()
        self._prompt = prompt
        self._receiver = receiver
        self._margin = safety_margin_s
        self._flight: SingleFlight[str] = SingleFlight()

    def account_name(self, account: Optional[str] = None) -> str:
        name = (account or self._settings.account or DEFAULT_ACCOUNT).strip()
        if not name:
            raise ConfigurationError("account name must not be empty")
        return name

    def _app(self) -> AppCredentials:
        return AppCredentials.from_env_or_config(self._settings, self._store.snapshot())

    def _override_token(self) -> Optional[str]:
        token = (self._settings.user_access_token or "").strip()
        return token or None

    def _is_fresh(self, acct: UserAccount) -> bool:
        return bool(acct.user_access_token) and time.time() < acct.user_access_token_expires_at - self._margin

    def previous_selection(self, account: Optional[str] = None) -> tuple[list[str], list[str]]:
        """(services, scopes) used at the last authorization, for prefilling a new one."""
        acct = self._store.get_account(self.account_name(account))
        if acct is None:
            return [], []
        services: list[str] = []
        scopes: list[str] = []
        payload = acct.user_refresh_token_payload
        if payload is not None:
            services = normalize_services(payload.services)
            scopes = parse_scope_list(payload.scopes)
        if not scopes:
            scopes = normalize_scopes(acct.user_scopes)
        return services, scopes

    # ---- token access ----
    def ensure_user_token(self, account: Optional[str] = None, *, timeout: Optional[float] = None) -> str:
        override = self._override_token()
        if override:
            logger.debug("using LARK_USER_ACCESS_TOKEN override")
            return override

        name = self.account_name(account)
        acct = self._store.get_account(name)
        if acct is None or not acct.has_tokens:
            raise NotAuthenticatedError(f"no user access token for account {name!r}; run `{login_command(name)}`")
        if self._is_fresh(acct):
            return acct.user_access_token
        if not acct.refresh_token:
            raise ReauthenticationRequiredError(
                f"user access token for account {name!r} has expired and no refresh token is stored; "
                f"run `{login_command(name)}`"
            )
        return self._refresh(name, timeout=timeout, force=False)

    def refresh_user_token(self, account: Optional[str] = None, *, timeout: Optional[float] = None) -> str:
        return self._refresh(self.account_name(account), timeout=timeout, force=True)

    def _refresh(self, name: str, *, timeout: Optional[float], force: bool) -> str:
        def run() -> str:
            acct = self._store.get_account(name)
            if acct is None or not acct.has_tokens:
                raise NotAuthenticatedError(f"no user access token for account {name!r}; run `{login_command(name)}`")
            if not force and self._is_fresh(acct):
                # Refreshed by an earlier flight.
                return acct.user_access_token
            if not acct.refresh_token:
                raise ReauthenticationRequiredError(
                    f"account {name!r} has no refresh token; run `{login_command(name)}`"
                )
            issued_at = int(time.time())
            if acct.refresh_token_expires_at and issued_at >= acct.refresh_token_expires_at:
                self._drop_tokens(name, acct)
                raise ReauthenticationRequiredError(
                    f"refresh token for account {name!r} has expired; run `{login_command(name)} --force-consent`"
                )
            app = self._app()
            logger.debug("refreshing user access token for account %s", name)
            try:
                grant = self._client.refresh_user_token(
                    client_id=app.app_id,
                    client_secret=app.app_secret,
                    refresh_token=acct.refresh_token,
                    timeout=timeout,
                )
            except LarkAPIError as e:
                # Only a rejected grant costs the stored tokens; anything else leaves the account as is.
                if not e.is_grant_rejected:
                    raise
                self._drop_tokens(name, acct)
                raise ReauthenticationRequiredError(
                    f"refresh for account {name!r} was rejected ({e}); "
                    f"re-authenticate with `{login_command(name)} --force-consent`"
                ) from e

            # Scopes stay as granted; a refresh never changes consent.
            acct.user_access_token = grant.access_token
            acct.user_access_token_expires_at = issued_at + grant.expires_in
            if grant.refresh_token:
                acct.refresh_token = grant.refresh_token
            if grant.refresh_token_expires_in:
                acct.refresh_token_expires_at = issued_at + grant.refresh_token_expires_in
            self._store.put_account(name, acct)
            return grant.access_token

        return self._flight.do(name, run, timeout=timeout)

    def _drop_tokens(self, name: str, acct: UserAccount) -> None:
        # Keep the account and its scope snapshot so the next login can prefill from it.
        acct.user_access_token = ""
        acct.user_access_token_expires_at = 0
        acct.refresh_token = ""
        acct.refresh_token_expires_at = 0
        self._store.put_account(name, acct)

    # ---- login / logout ----
    def begin_interactive_login(
        self,
        account: Optional[str] = None,
        options: Optional[ScopeOptions] = None,
        *,
        force_consent: bool = False,
        receiver: Optional[CodeReceiver] = None,
        timeout: Optional[float] = None,
    ) -> UserAccount:
        name = self.account_name(account)
        receiver = receiver or self._receiver
        options = options or ScopeOptions()
        if not options.is_explicit and self._prompt is not None and self._prompt.available():
            prev_services, prev_scopes = self.previous_selection(name)
            options = self._prompt.select_scope_options(prev_services, prev_scopes)

        existing = self._store.get_account(name)
        prior = (existing.user_scopes if existing else []) or self._store.legacy_user_scopes()
        scopes, source = resolve_user_scopes(options, prior)
        logger.debug("resolved scopes for account %s from %s: %s", name, source, scopes)

        services: list[str] = []
        if source == "services":
            services = expand_aliases(parse_services_list(options.services or []) or DEFAULT_USER_SERVICES)

        app = self._app()
        if receiver is None:
            raise ConfigurationError("interactive login needs an OAuth code receiver")
        state = secrets.token_urlsafe(16)
        url = self._client.authorize_url(
            client_id=app.app_id,
            redirect_uri=receiver.redirect_uri,
            scopes=scopes,
            state=state,
            force_consent=force_consent,
        )
        code = receiver.wait_for_code(url, state)

        issued_at = int(time.time())
        grant = self._client.exchange_code(
            client_id=app.app_id,
            client_secret=app.app_secret,
            code=code,
            redirect_uri=receiver.redirect_uri,
            timeout=timeout,
        )
        if not grant.refresh_token:
            logger.warning("no refresh token returned; is offline_access enabled for the app?")

        acct = existing or UserAccount()
        acct.user_access_token = grant.access_token
        acct.user_access_token_expires_at = issued_at + grant.expires_in
        acct.refresh_token = grant.refresh_token
        acct.refresh_token_expires_at = issued_at + grant.refresh_token_expires_in if grant.refresh_token_expires_in else 0
        acct.user_scopes = grant.scopes or scopes
        acct.user_refresh_token_payload = RefreshPayload(scopes=join_scopes(scopes), services=services)
        self._store.put_account(name, acct)
        return acct

    def logout(self, account: Optional[str] = None) -> bool:
        return self._store.remove_account(self.account_name(account))

    def status(self, account: Optional[str] = None) -> dict[str, Any]:
        name = self.account_name(account)
        acct = self._store.get_account(name)
        now = int(time.time())
        out: dict[str, Any] = {
            "account": name,
            "authenticated": bool(acct and acct.has_tokens),
            "env_override": self._override_token() is not None,
        }
        if acct is not None:
            out.update(
                {
                    "expires_at": acct.user_access_token_expires_at,
                    "expires_in": max(0, acct.user_access_token_expires_at - now),
                    "access_token_valid": self._is_fresh(acct),
                    "has_refresh_token": bool(acct.refresh_token),
                    "scopes": list(acct.user_scopes),
                }
            )
        return out
