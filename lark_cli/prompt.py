from __future__ import annotations

import sys

import typer

from .errors import ScopeOptionsError
from .resolver import ScopeOptions
from .scopes import (
    DEFAULT_USER_SERVICES,
    available_user_scopes,
    ensure_offline_access,
    expand_aliases,
    list_user_services,
    lookup_service,
    normalize_scopes,
    parse_scope_list,
    parse_services_list,
)

_MODES = ("services", "scopes")


class TerminalPrompt:
    """Line-based service / scope selection for `lark auth user login`."""

    def __init__(self, enabled: bool = True):
        self._enabled = enabled

    def available(self) -> bool:
        return self._enabled and sys.stdin.isatty() and sys.stdout.isatty()

    def _select_mode(self, default: str) -> str:
        while True:
            answer = typer.prompt("Select OAuth access by services or scopes", default=default).strip().lower()
            for mode in _MODES:
                if answer and mode.startswith(answer):
                    return mode
            typer.echo(f"Please answer one of: {', '.join(_MODES)}", err=True)

    def select_scope_options(self, previous_services: list[str], previous_scopes: list[str]) -> ScopeOptions:
        default_mode = "scopes" if previous_scopes and not previous_services else "services"
        if self._select_mode(default_mode) == "services":
            return self._select_services(previous_services)
        return self._select_scopes(previous_scopes)

    def _select_services(self, previous: list[str]) -> ScopeOptions:
        typer.echo("Available services: " + ", ".join(list_user_services()))
        defaults = previous or list(DEFAULT_USER_SERVICES)
        raw = typer.prompt("Services (comma-separated)", default=",".join(defaults))
        services = parse_services_list([raw])
        if not services:
            raise ScopeOptionsError("no services selected")
        for name in expand_aliases(services):
            lookup_service(name)
        return ScopeOptions(services=services)

    def _select_scopes(self, previous: list[str]) -> ScopeOptions:
        offered = normalize_scopes([*available_user_scopes(), *previous])
        typer.echo("Available scopes:")
        for scope in offered:
            typer.echo(f"  {scope}")
        defaults = ensure_offline_access(previous)
        raw = typer.prompt("Scopes (space or comma separated)", default=" ".join(defaults))
        # offline_access is always requested.
        scopes = ensure_offline_access(parse_scope_list(raw))
        return ScopeOptions(scopes=" ".join(scopes))
