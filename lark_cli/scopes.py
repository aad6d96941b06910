from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .errors import ScopeOptionsError, UnknownServiceError

OFFLINE_ACCESS_SCOPE = "offline_access"

_SCOPE_SPLIT = re.compile(r"[,\s]+")


class TokenType(str, Enum):
    TENANT = "tenant"
    USER = "user"
    EITHER = "either"

    @property
    def accepts_user(self) -> bool:
        return self in (TokenType.USER, TokenType.EITHER)


class Service(str, Enum):
    DRIVE = "drive"
    DOCS = "docs"
    SHEETS = "sheets"
    WIKI = "wiki"
    TASKS = "tasks"
    CALENDAR = "calendar"
    MAIL = "mail"
    MESSAGES = "messages"
    CHATS = "chats"


@dataclass(frozen=True)
class ServiceDefinition:
    name: Service
    token_type: TokenType
    # None means "needs a user token but has not declared scopes yet".
    full_scopes: Optional[tuple[str, ...]] = None
    readonly_scopes: Optional[tuple[str, ...]] = None

    @property
    def has_user_scopes(self) -> bool:
        return self.token_type.accepts_user and self.full_scopes is not None


REGISTRY: dict[Service, ServiceDefinition] = {
    d.name: d
    for d in (
        ServiceDefinition(Service.DRIVE, TokenType.EITHER, ("drive:drive",), ("drive:drive:readonly",)),
        ServiceDefinition(Service.DOCS, TokenType.EITHER, ("drive:drive",), ("drive:drive:readonly",)),
        ServiceDefinition(Service.SHEETS, TokenType.EITHER, ("drive:drive",), ("drive:drive:readonly",)),
        ServiceDefinition(Service.WIKI, TokenType.USER, ("wiki:wiki",), ("wiki:wiki:readonly",)),
        ServiceDefinition(Service.TASKS, TokenType.USER, ("task:task:write",), ("task:task:read",)),
        ServiceDefinition(Service.CALENDAR, TokenType.EITHER, ("calendar:calendar",), ("calendar:calendar:readonly",)),
        ServiceDefinition(Service.MAIL, TokenType.USER),
        ServiceDefinition(Service.MESSAGES, TokenType.TENANT),
        ServiceDefinition(Service.CHATS, TokenType.TENANT),
    )
}

SERVICE_ALIASES: dict[str, tuple[str, ...]] = {
    "all": ("drive", "docs", "sheets"),
    "user": ("drive", "docs", "sheets"),
}

DEFAULT_USER_SERVICES: tuple[str, ...] = ("drive",)

DRIVE_SCOPE_CHOICES = ("full", "readonly")


def parse_scope_list(raw: Optional[str]) -> list[str]:
    """Split a scope string on commas and whitespace."""
    if not raw or not raw.strip():
        return []
    return normalize_scopes(_SCOPE_SPLIT.split(raw))


def normalize_scopes(scopes: Iterable[str]) -> list[str]:
    # Case is significant for scopes; only trim and de-dupe, keeping first-seen order.
    seen: set[str] = set()
    out: list[str] = []
    for s in scopes:
        s = (s or "").strip()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def ensure_offline_access(scopes: Iterable[str]) -> list[str]:
    out = normalize_scopes(scopes)
    if OFFLINE_ACCESS_SCOPE in out:
        return out
    return [OFFLINE_ACCESS_SCOPE, *out]


def join_scopes(scopes: Iterable[str]) -> str:
    return " ".join(normalize_scopes(scopes))


def normalize_services(services: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for s in services:
        s = (s or "").strip().lower()
        if not s or s in seen:
            continue
        seen.add(s)
        out.append(s)
    return out


def parse_services_list(raw: Iterable[str]) -> list[str]:
    """Accepts repeated options and/or CSV values: ["drive,docs", "sheets"]."""
    parts: list[str] = []
    for entry in raw:
        parts.extend(_SCOPE_SPLIT.split(entry or ""))
    return normalize_services(parts)


def expand_aliases(services: Iterable[str]) -> list[str]:
    expanded: list[str] = []
    for s in normalize_services(services):
        expanded.extend(SERVICE_ALIASES.get(s, (s,)))
    return normalize_services(expanded)


def lookup_service(name: str) -> ServiceDefinition:
    try:
        return REGISTRY[Service(name.strip().lower())]
    except ValueError:
        raise UnknownServiceError(name) from None


def validate_drive_scope(drive_scope: Optional[str]) -> Optional[str]:
    if drive_scope is None:
        return None
    v = drive_scope.strip().lower()
    if not v:
        return None
    if v == "file":
        raise ScopeOptionsError("drive-scope file is not supported; use full or readonly")
    if v not in DRIVE_SCOPE_CHOICES:
        raise ScopeOptionsError(f"invalid drive-scope {drive_scope!r} (use full or readonly)")
    return v


def scopes_for_services(
    services: Iterable[str],
    readonly: bool = False,
    drive_scope: Optional[str] = None,
) -> list[str]:
    """
    Map service names (aliases allowed) to the user OAuth scopes they need.

    `readonly` picks each service's readonly bundle; `drive_scope` picks the bundle explicitly.
    The two are mutually exclusive.
    """
    mode = validate_drive_scope(drive_scope)
    if readonly:
        if mode is not None:
            raise ScopeOptionsError("drive-scope cannot be combined with --readonly")
        mode = "readonly"
    mode = mode or "full"

    scopes: list[str] = []
    for name in expand_aliases(services):
        d = lookup_service(name)
        if d.token_type is TokenType.TENANT:
            raise ScopeOptionsError(f"service {name!r} uses the tenant token and has no user OAuth scopes")
        if d.full_scopes is None:
            raise ScopeOptionsError(
                f"service {name!r} has not declared its user OAuth scopes yet; pass them with --scopes"
            )
        bundle = d.readonly_scopes if mode == "readonly" and d.readonly_scopes else d.full_scopes
        scopes.extend(bundle)
    return normalize_scopes(scopes)


def required_scopes_union(services: Iterable[str]) -> tuple[list[str], list[str]]:
    """
    Return (sorted union of declared full scopes, sorted services that need a user token
    but declare no scopes). The second list is a registry-completeness report and never
    causes an error on its own.
    """
    scopes: set[str] = set()
    undeclared: set[str] = set()
    for name in expand_aliases(services):
        d = lookup_service(name)
        if d.token_type.accepts_user and d.full_scopes is None:
            undeclared.add(d.name.value)
        scopes.update(d.full_scopes or ())
    return sorted(scopes), sorted(undeclared)


def list_user_services() -> list[str]:
    return sorted(d.name.value for d in REGISTRY.values() if d.has_user_scopes)


def available_user_scopes() -> list[str]:
    scopes: list[str] = [OFFLINE_ACCESS_SCOPE]
    for name in list_user_services():
        d = REGISTRY[Service(name)]
        scopes.extend(d.full_scopes or ())
        scopes.extend(d.readonly_scopes or ())
    return normalize_scopes(scopes)
