from __future__ import annotations

import logging
import time
from typing import Optional

from .client import LarkClient
from .config import AppCredentials, Settings
from .singleflight import SingleFlight
from .state import CredentialStore

logger = logging.getLogger(__name__)

# Refetch a little before the vendor-side expiry so a request never races it.
TENANT_TOKEN_SAFETY_MARGIN_S = 300

_FLIGHT_KEY = "tenant"


class TenantTokenManager:
    """
    Owns the app-level tenant access token for the lifetime of one CLI process.

    Fetches are single-flight: concurrent callers share one request. Failures are
    not retried and nothing is cached when a fetch fails.
    """

    def __init__(
        self,
        store: CredentialStore,
        client: LarkClient,
        settings: Optional[Settings] = None,
        *,
        safety_margin_s: int = TENANT_TOKEN_SAFETY_MARGIN_S,
    ):
        self._store = store
        self._client = client
        self._settings = settings or Settings()
        self._margin = safety_margin_s
        self._flight: SingleFlight[str] = SingleFlight()

    def _cached(self) -> Optional[str]:
        cred = self._store.tenant_credential()
        if not cred.tenant_access_token or not cred.tenant_access_token_expires_at:
            return None
        if time.time() < cred.tenant_access_token_expires_at - self._margin:
            return cred.tenant_access_token
        return None

    def expires_at(self) -> int:
        return self._store.tenant_credential().tenant_access_token_expires_at

    def ensure_tenant_token(self, *, timeout: Optional[float] = None, force_refresh: bool = False) -> str:
        # Fail on missing app credentials before touching the network.
        app = AppCredentials.from_env_or_config(self._settings, self._store.snapshot())
        if not force_refresh:
            token = self._cached()
            if token:
                return token

        def fetch() -> str:
            if not force_refresh:
                token = self._cached()
                if token:
                    return token
            issued_at = int(time.time())
            logger.debug("fetching tenant access token for app %s", app.app_id)
            result = self._client.tenant_access_token(app.app_id, app.app_secret, timeout=timeout)
            self._store.update_tenant_token(result.token, issued_at + result.expire)
            return result.token

        return self._flight.do(_FLIGHT_KEY, fetch, timeout=timeout)

    def invalidate(self) -> None:
        self._store.clear_tenant_token()
