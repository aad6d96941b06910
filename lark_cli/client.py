from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional
from urllib.parse import urlencode

import requests

from .errors import LarkAPIError
from .scopes import join_scopes, parse_scope_list

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class TenantToken:
    token: str
    # TTL in seconds, as returned by the token endpoint.
    expire: int


@dataclass(frozen=True)
class UserTokenGrant:
    access_token: str
    expires_in: int
    refresh_token: str = ""
    refresh_token_expires_in: int = 0
    scopes: list[str] = field(default_factory=list)


class LarkClient:
    """Thin HTTP transport for the Open API auth endpoints (plus a generic call for `lark api`)."""

    TENANT_TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
    AUTHORIZE_PATH = "/open-apis/authen/v1/authorize"
    OAUTH_TOKEN_PATH = "/open-apis/authen/v2/oauth/token"

    def __init__(self, base_url: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _accounts_base(self) -> str:
        # The consent page lives on accounts.<domain> when the API is on open.<domain>.
        return self.base_url.replace("://open.", "://accounts.", 1)

    @staticmethod
    def _parse(resp: requests.Response) -> dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise LarkAPIError(f"request failed: HTTP {resp.status_code}", status=resp.status_code)
        code = data.get("code") or 0
        if code != 0 or not resp.ok:
            msg = data.get("msg") or data.get("error_description") or data.get("error") or f"HTTP {resp.status_code}"
            raise LarkAPIError(str(msg), code=int(code), status=resp.status_code, error=str(data.get("error") or ""))
        return data

    def _post_json(self, path: str, payload: dict[str, Any], *, timeout: Optional[float]) -> dict[str, Any]:
        logger.debug("POST %s", path)
        resp = self._session.post(
            self._url(path),
            json=payload,
            headers={"Content-Type": "application/json; charset=utf-8"},
            timeout=timeout or DEFAULT_TIMEOUT_S,
        )
        return self._parse(resp)

    def tenant_access_token(self, app_id: str, app_secret: str, *, timeout: Optional[float] = None) -> TenantToken:
        data = self._post_json(
            self.TENANT_TOKEN_PATH,
            {"app_id": app_id, "app_secret": app_secret},
            timeout=timeout,
        )
        token = data.get("tenant_access_token")
        if not token:
            raise LarkAPIError("token response missing tenant_access_token")
        return TenantToken(token=str(token), expire=int(data.get("expire") or 0))

    def authorize_url(
        self,
        *,
        client_id: str,
        redirect_uri: str,
        scopes: Iterable[str],
        state: str,
        force_consent: bool = False,
    ) -> str:
        params = {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": join_scopes(scopes),
            "state": state,
        }
        if force_consent:
            params["prompt"] = "consent"
        return f"{self._accounts_base()}{self.AUTHORIZE_PATH}?{urlencode(params)}"

    @staticmethod
    def _grant(data: dict[str, Any]) -> UserTokenGrant:
        token = data.get("access_token")
        if not token:
            raise LarkAPIError("token response missing access_token")
        return UserTokenGrant(
            access_token=str(token),
            expires_in=int(data.get("expires_in") or 0),
            refresh_token=str(data.get("refresh_token") or ""),
            refresh_token_expires_in=int(data.get("refresh_token_expires_in") or 0),
            scopes=parse_scope_list(data.get("scope")),
        )

    def exchange_code(
        self,
        *,
        client_id: str,
        client_secret: str,
        code: str,
        redirect_uri: str,
        timeout: Optional[float] = None,
    ) -> UserTokenGrant:
        data = self._post_json(
            self.OAUTH_TOKEN_PATH,
            {
                "grant_type": "authorization_code",
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
            },
            timeout=timeout,
        )
        return self._grant(data)

    def refresh_user_token(
        self,
        *,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        timeout: Optional[float] = None,
    ) -> UserTokenGrant:
        data = self._post_json(
            self.OAUTH_TOKEN_PATH,
            {
                "grant_type": "refresh_token",
                "client_id": client_id,
                "client_secret": client_secret,
                "refresh_token": refresh_token,
            },
            timeout=timeout,
        )
        return self._grant(data)

    def request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: Optional[dict[str, str]] = None,
        json_body: Any = None,
        timeout: Optional[float] = None,
    ) -> dict[str, Any]:
        logger.debug("%s %s", method.upper(), path)
        resp = self._session.request(
            method.upper(),
            self._url(path),
            params=params,
            json=json_body,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout or DEFAULT_TIMEOUT_S,
        )
        return self._parse(resp)
