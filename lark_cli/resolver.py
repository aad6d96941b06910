from __future__ import annotations

from typing import Iterable, Literal, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from .errors import ScopeOptionsError
from .scopes import (
    DEFAULT_USER_SERVICES,
    OFFLINE_ACCESS_SCOPE,
    ensure_offline_access,
    normalize_scopes,
    parse_scope_list,
    parse_services_list,
    scopes_for_services,
    validate_drive_scope,
)

ScopeSource = Literal["flag", "services", "config", "default"]


class ScopeOptions(BaseModel):
    # None means "not given", which is distinct from an empty value for --scopes.
    model_config = ConfigDict(frozen=True)

    scopes: Optional[str] = None
    services: Optional[list[str]] = None
    readonly: bool = False
    drive_scope: Optional[str] = None

    @model_validator(mode="after")
    def _check_drive_scope(self) -> "ScopeOptions":
        # Checked here so bad flags fail even when --scopes would win.
        if self.readonly and self.drive_scope and self.drive_scope.strip():
            raise ScopeOptionsError("drive-scope cannot be combined with --readonly")
        validate_drive_scope(self.drive_scope)
        return self

    @property
    def selects_services(self) -> bool:
        return self.services is not None or self.readonly or bool(self.drive_scope and self.drive_scope.strip())

    @property
    def is_explicit(self) -> bool:
        return self.scopes is not None or self.selects_services


def resolve_user_scopes(
    options: ScopeOptions,
    prior_scopes: Optional[Iterable[str]] = None,
) -> tuple[list[str], ScopeSource]:
    """
    Pick the scope list for a user OAuth request. First match wins:

    1. --scopes               -> "flag"
    2. --services/--readonly/--drive-scope -> "services"
    3. previously granted scopes          -> "config"
    4. offline access only                -> "default"
    """
    if options.scopes is not None:
        scopes = parse_scope_list(options.scopes)
        if not scopes:
            raise ScopeOptionsError("scopes must not be empty")
        return ensure_offline_access(scopes), "flag"

    if options.selects_services:
        services = parse_services_list(options.services or []) or list(DEFAULT_USER_SERVICES)
        scopes = scopes_for_services(services, readonly=options.readonly, drive_scope=options.drive_scope)
        return ensure_offline_access(scopes), "services"

    prior = normalize_scopes(prior_scopes or [])
    if prior:
        return ensure_offline_access(prior), "config"

    return [OFFLINE_ACCESS_SCOPE], "default"
