from __future__ import annotations

import contextlib
import json
import logging
import sys
from concurrent.futures import TimeoutError as FutureTimeoutError
from functools import cached_property
from pathlib import Path
from typing import Any, Iterator, Optional

import requests
import typer
from dotenv import load_dotenv

from .callback import LocalCallbackReceiver, ManualCodeReceiver
from .client import LarkClient
from .config import Settings, resolve_base_url
from .errors import LarkAPIError, LarkCLIError
from .hints import translate
from .prompt import TerminalPrompt
from .resolver import ScopeOptions
from .scopes import REGISTRY, join_scopes, parse_services_list, required_scopes_union
from .state import CredentialStore
from .tenant import TenantTokenManager
from .user import UserTokenManager

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="lark",
    help="Command-line client for the Lark / Feishu Open API.",
    add_completion=False,
)
auth_app = typer.Typer(help="Manage app credentials, tenant tokens and user OAuth logins.")
user_app = typer.Typer(help="User OAuth tokens (per named account).")
app.add_typer(auth_app, name="auth")
auth_app.add_typer(user_app, name="user")


class Runtime:
    """Per-invocation objects; the token managers live here for the whole process."""

    def __init__(self, settings: Settings, *, config_path: str, json_output: bool):
        self.settings = settings
        self.config_path = config_path
        self.json_output = json_output

    @cached_property
    def store(self) -> CredentialStore:
        return CredentialStore(self.config_path)

    @cached_property
    def client(self) -> LarkClient:
        return LarkClient(resolve_base_url(self.settings, self.store.snapshot()))

    @cached_property
    def tenant(self) -> TenantTokenManager:
        return TenantTokenManager(self.store, self.client, self.settings)

    @cached_property
    def user(self) -> UserTokenManager:
        return UserTokenManager(
            self.store,
            self.client,
            self.settings,
            prompt=TerminalPrompt(enabled=not self.json_output),
        )

    def emit(self, payload: Any, text: str) -> None:
        if self.json_output:
            print(json.dumps(payload, indent=2, sort_keys=True))
        else:
            print(text)


@contextlib.contextmanager
def _reporting() -> Iterator[None]:
    # One line on stderr and exit 1 for every failure the auth core reports.
    try:
        yield
    except (LarkCLIError, requests.RequestException, FutureTimeoutError) as e:
        print(f"error: {e}", file=sys.stderr)
        raise typer.Exit(code=1) from e


def _runtime(ctx: typer.Context) -> Runtime:
    rt = ctx.find_root().obj
    if not isinstance(rt, Runtime):
        raise RuntimeError("CLI runtime not initialised")
    return rt


@app.callback()
def root(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        help="Path to config.json (default: user config dir, or LARK_CONFIG).",
    ),
    json_output: bool = typer.Option(False, "--json", help="Print machine-readable JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging to stderr."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    settings = Settings()
    path = str(config) if config else settings.config_path()
    ctx.obj = Runtime(settings, config_path=path, json_output=json_output)


# ---- app credentials / tenant token ----
@auth_app.command("login")
def auth_login(
    ctx: typer.Context,
    app_id: Optional[str] = typer.Option(None, "--app-id", help="App ID from the developer console."),
    app_secret: Optional[str] = typer.Option(None, "--app-secret", help="App secret from the developer console."),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="Open API base URL (e.g. https://open.larksuite.com)."),
) -> None:
    """Store app credentials. Cached tokens are kept."""
    rt = _runtime(ctx)
    if not (app_id or app_secret or base_url):
        raise typer.BadParameter("Provide at least one of --app-id, --app-secret, --base-url.")
    with _reporting():
        rt.store.update_app(app_id=app_id, app_secret=app_secret, base_url=base_url)
    rt.emit({"config": rt.config_path}, f"Saved app credentials to {rt.config_path}")


@auth_app.command("tenant")
def auth_tenant(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Ignore the cached token and fetch a new one."),
) -> None:
    """Fetch and cache a tenant access token."""
    rt = _runtime(ctx)
    with _reporting():
        token = rt.tenant.ensure_tenant_token(force_refresh=force)
        expires_at = rt.tenant.expires_at()
    rt.emit({"tenant_access_token": token, "expires_at": expires_at}, f"tenant_access_token: {token}")


# ---- user OAuth ----
@user_app.command("login")
def user_login(
    ctx: typer.Context,
    scopes: Optional[str] = typer.Option(None, "--scopes", help="Explicit scopes (space or comma separated)."),
    services: Optional[list[str]] = typer.Option(
        None,
        "--services",
        help="Services to authorize (CSV or repeated). See `lark auth user services`.",
    ),
    readonly: bool = typer.Option(False, "--readonly", help="Request readonly scopes for the selected services."),
    drive_scope: Optional[str] = typer.Option(None, "--drive-scope", help="Scope bundle to request: full or readonly."),
    force_consent: bool = typer.Option(False, "--force-consent", help="Show the consent page even if already granted."),
    account: Optional[str] = typer.Option(None, "--account", help="Account name (default: LARK_ACCOUNT or 'default')."),
    no_browser: bool = typer.Option(False, "--no-browser", help="Print the URL and paste the redirect back."),
) -> None:
    """Authorize a user account via OAuth and store its tokens."""
    rt = _runtime(ctx)
    with _reporting():
        # Flag conflicts fail here, before any network call.
        options = ScopeOptions(
            scopes=scopes,
            services=list(services) if services else None,
            readonly=readonly,
            drive_scope=drive_scope,
        )
        port = rt.settings.oauth_redirect_port
        receiver = ManualCodeReceiver(port) if no_browser else LocalCallbackReceiver(port)
        name = rt.user.account_name(account)
        acct = rt.user.begin_interactive_login(name, options, force_consent=force_consent, receiver=receiver)
    rt.emit(
        {
            "account": name,
            "expires_at": acct.user_access_token_expires_at,
            "scopes": acct.user_scopes,
        },
        f"Logged in account {name!r} with scopes: {join_scopes(acct.user_scopes)}",
    )


@user_app.command("refresh")
def user_refresh(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", help="Account name."),
) -> None:
    """Renew the user access token with the stored refresh token."""
    rt = _runtime(ctx)
    with _reporting():
        name = rt.user.account_name(account)
        rt.user.refresh_user_token(name)
        status = rt.user.status(name)
    rt.emit(status, f"Refreshed account {name!r}; expires in {status.get('expires_in', 0)}s")


@user_app.command("token")
def user_token(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", help="Account name."),
) -> None:
    """Print a valid user access token, refreshing it if needed."""
    rt = _runtime(ctx)
    with _reporting():
        token = rt.user.ensure_user_token(account)
    rt.emit({"user_access_token": token}, token)


@user_app.command("status")
def user_status(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", help="Account name."),
) -> None:
    """Show the stored token state for an account."""
    rt = _runtime(ctx)
    with _reporting():
        status = rt.user.status(account)
    lines = [f"account: {status['account']}", f"authenticated: {status['authenticated']}"]
    if "expires_in" in status:
        lines.append(f"access token valid: {status['access_token_valid']} (expires in {status['expires_in']}s)")
        lines.append(f"refresh token: {'yes' if status['has_refresh_token'] else 'no'}")
        lines.append(f"scopes: {join_scopes(status['scopes'])}")
    if status["env_override"]:
        lines.append("LARK_USER_ACCESS_TOKEN is set and overrides the stored token")
    rt.emit(status, "\n".join(lines))


@user_app.command("accounts")
def user_accounts(ctx: typer.Context) -> None:
    """List stored account names."""
    rt = _runtime(ctx)
    with _reporting():
        names = rt.store.account_names()
    rt.emit({"accounts": names}, "\n".join(names) if names else "No accounts.")


@user_app.command("logout")
def user_logout(
    ctx: typer.Context,
    account: Optional[str] = typer.Option(None, "--account", help="Account name."),
) -> None:
    """Remove an account and its tokens."""
    rt = _runtime(ctx)
    with _reporting():
        name = rt.user.account_name(account)
        removed = rt.user.logout(name)
    rt.emit({"account": name, "removed": removed}, f"Removed account {name!r}" if removed else f"No account {name!r}")


@user_app.command("services")
def user_services(ctx: typer.Context) -> None:
    """List services and the user OAuth scopes they map to."""
    rt = _runtime(ctx)
    rows = []
    for d in sorted(REGISTRY.values(), key=lambda d: d.name.value):
        rows.append(
            {
                "service": d.name.value,
                "token_type": d.token_type.value,
                "full": list(d.full_scopes or ()),
                "readonly": list(d.readonly_scopes or ()),
            }
        )
    text = "\n".join(
        f"{r['service']:<10} {r['token_type']:<7} full={join_scopes(r['full']) or '-'} "
        f"readonly={join_scopes(r['readonly']) or '-'}"
        for r in rows
    )
    rt.emit(rows, text)


@user_app.command("scopes")
def user_scopes(
    ctx: typer.Context,
    services: list[str] = typer.Option(..., "--services", help="Services to report on (CSV or repeated)."),
) -> None:
    """Show the user OAuth scopes required by the given services."""
    rt = _runtime(ctx)
    with _reporting():
        scopes, undeclared = required_scopes_union(parse_services_list(services))
    for name in undeclared:
        print(f"warning: service {name!r} needs a user token but declares no scopes", file=sys.stderr)
    rt.emit({"scopes": scopes, "undeclared": undeclared}, join_scopes(scopes))


# ---- generic API call ----
def _parse_params(raw: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in raw:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"Expected key=value, got {item!r}", param_hint="--param")
        params[key] = value
    return params


@app.command("api")
def api(
    ctx: typer.Context,
    method: str = typer.Argument(..., help="HTTP method, e.g. GET or POST."),
    path: str = typer.Argument(..., help="Endpoint path, e.g. /open-apis/drive/v1/files."),
    as_: str = typer.Option("tenant", "--as", help="Token to send: tenant or user."),
    account: Optional[str] = typer.Option(None, "--account", help="Account name for --as user."),
    param: Optional[list[str]] = typer.Option(None, "--param", help="Query parameter key=value (repeatable)."),
    data: Optional[str] = typer.Option(None, "--data", help="JSON request body."),
) -> None:
    """Call an Open API endpoint with a managed token."""
    rt = _runtime(ctx)
    if as_ not in ("tenant", "user"):
        raise typer.BadParameter("Expected tenant or user.", param_hint="--as")
    params = _parse_params(param or [])
    try:
        body = json.loads(data) if data else None
    except ValueError as e:
        raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--data") from e

    with _reporting():
        name = rt.user.account_name(account) if as_ == "user" else None

        def call(token: str) -> dict[str, Any]:
            return rt.client.request(method, path, token=token, params=params, json_body=body)

        try:
            if name is None:
                try:
                    result = call(rt.tenant.ensure_tenant_token())
                except LarkAPIError as e:
                    if not e.is_token_invalid:
                        raise
                    logger.debug("tenant token rejected; fetching a new one")
                    result = call(rt.tenant.ensure_tenant_token(force_refresh=True))
            else:
                try:
                    result = call(rt.user.ensure_user_token(name))
                except LarkAPIError as e:
                    # An env override cannot be refreshed.
                    if not e.is_token_invalid or rt.settings.user_access_token:
                        raise
                    logger.debug("user token rejected; refreshing account %s", name)
                    result = call(rt.user.refresh_user_token(name))
        except LarkAPIError as e:
            # Tenant permissions are granted in the developer console, not by a user login.
            if name is None:
                raise
            translated = translate(e, account=name)
            if translated is e:
                raise
            raise translated from e
    rt.emit(result, json.dumps(result, indent=2, ensure_ascii=False))


def main(argv: Optional[list[str]] = None) -> None:
    # Does not override variables already set in the environment.
    load_dotenv()
    app(prog_name="lark", args=argv)


if __name__ == "__main__":
    main()
