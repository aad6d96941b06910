from __future__ import annotations

from typing import Optional


class LarkCLIError(Exception):
    """Base class for errors the CLI reports as a one-line message and exit code 1."""


class ConfigurationError(LarkCLIError):
    pass


class UnknownServiceError(ConfigurationError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"unknown service {name!r} (use `lark auth user services` to list supported services)")


class ScopeOptionsError(ConfigurationError):
    pass


class CredentialStoreError(LarkCLIError):
    pass


class LarkAPIError(LarkCLIError):
    # Codes the Open API uses for missing / invalid / expired access tokens.
    TOKEN_INVALID_CODES = frozenset({99991661, 99991663, 99991664, 99991668, 99991677})
    # Refresh token invalid, expired, revoked or already used.
    GRANT_REJECTED_CODES = frozenset({20026, 20037, 20064, 20073})

    def __init__(self, msg: str, *, code: int = 0, status: Optional[int] = None, error: str = ""):
        self.code = code
        self.msg = msg
        self.status = status
        # OAuth error string from token endpoints, e.g. "invalid_grant".
        self.error = error
        detail = f" (code={code})" if code else ""
        super().__init__(f"{msg}{detail}")

    @property
    def is_token_invalid(self) -> bool:
        return self.code in self.TOKEN_INVALID_CODES

    @property
    def is_grant_rejected(self) -> bool:
        return self.code in self.GRANT_REJECTED_CODES or self.error == "invalid_grant"

    @property
    def is_server_error(self) -> bool:
        return self.status is not None and self.status >= 500


class NotAuthenticatedError(LarkCLIError):
    pass


class ReauthenticationRequiredError(LarkCLIError):
    """The refresh-token grant was rejected; only a fresh interactive login recovers."""


class AuthorizationError(LarkCLIError):
    def __init__(self, original_message: str, missing_scopes: list[str], hint: str):
        self.original_message = original_message
        self.missing_scopes = list(missing_scopes)
        self.hint = hint
        super().__init__(f"{original_message}\n{hint}")


class LoginError(LarkCLIError):
    pass
