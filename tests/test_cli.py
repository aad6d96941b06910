from __future__ import annotations

import json
import os
import time

import pytest
from typer.testing import CliRunner

from lark_cli import cli as cli_mod
from lark_cli.errors import LarkAPIError
from lark_cli.state import CredentialStore, UserAccount
from tests.fakes import FakeLarkClient

runner = CliRunner()


@pytest.fixture()
def config_path(tmp_path) -> str:
    return str(tmp_path / "lark" / "config.json")


@pytest.fixture()
def fake_client(monkeypatch) -> FakeLarkClient:
    client = FakeLarkClient()
    monkeypatch.setattr(cli_mod, "LarkClient", lambda base_url: client)
    return client


def _run(config_path: str, *args: str):
    return runner.invoke(cli_mod.app, ["--config", config_path, *args])


def test_readonly_with_drive_scope_fails_before_anything_happens(config_path, fake_client) -> None:
    result = _run(config_path, "auth", "user", "login", "--readonly", "--drive-scope", "full")
    assert result.exit_code == 1
    assert "drive-scope cannot be combined with --readonly" in result.output
    assert not os.path.exists(config_path)
    assert fake_client.exchange_calls == []


def test_unknown_service_is_reported(config_path, fake_client) -> None:
    result = _run(config_path, "auth", "user", "login", "--services", "drive,photos", "--no-browser")
    assert result.exit_code == 1
    assert "unknown service 'photos'" in result.output


def test_services_lists_registry(config_path) -> None:
    result = _run(config_path, "--json", "auth", "user", "services")
    assert result.exit_code == 0
    rows = {r["service"]: r for r in json.loads(result.stdout)}
    assert rows["drive"]["full"] == ["drive:drive"]
    assert rows["tasks"]["readonly"] == ["task:task:read"]
    assert rows["messages"]["token_type"] == "tenant"
    assert rows["mail"]["full"] == []


def test_scopes_warns_about_undeclared_services(config_path) -> None:
    result = _run(config_path, "auth", "user", "scopes", "--services", "all,mail")
    assert result.exit_code == 0
    assert "drive:drive" in result.stdout
    assert "warning: service 'mail'" in result.output


def test_auth_login_keeps_cached_tenant_token(config_path) -> None:
    CredentialStore(config_path).update_tenant_token("t-cached", 4_000_000_000)

    result = _run(config_path, "auth", "login", "--app-id", "cli_new", "--app-secret", "s3cret")
    assert result.exit_code == 0

    state = CredentialStore(config_path).snapshot()
    assert state.app_id == "cli_new"
    assert state.app_secret == "s3cret"
    assert state.tenant_access_token == "t-cached"


def test_auth_login_requires_an_option(config_path) -> None:
    result = _run(config_path, "auth", "login")
    assert result.exit_code == 2


def test_auth_tenant_fetches_then_reuses(config_path, fake_client) -> None:
    assert _run(config_path, "auth", "login", "--app-id", "app", "--app-secret", "secret").exit_code == 0

    first = _run(config_path, "--json", "auth", "tenant")
    assert first.exit_code == 0
    assert json.loads(first.stdout)["tenant_access_token"] == "t-1"

    second = _run(config_path, "auth", "tenant")
    assert second.stdout.strip() == "tenant_access_token: t-1"
    assert fake_client.tenant_calls == 1


def test_auth_tenant_without_credentials(config_path, fake_client) -> None:
    result = _run(config_path, "auth", "tenant")
    assert result.exit_code == 1
    assert "missing app_id" in result.output
    assert fake_client.tenant_calls == 0


def test_api_as_user_adds_reauthorize_hint(config_path, fake_client, monkeypatch) -> None:
    monkeypatch.setenv("LARK_USER_ACCESS_TOKEN", "env-token")
    fake_client.request_error = LarkAPIError(
        "Access denied. One of the following scopes is required: [drive:drive]", code=99991679, status=400
    )

    result = _run(config_path, "api", "GET", "/open-apis/drive/v1/files", "--as", "user")

    assert result.exit_code == 1
    assert "Access denied" in result.output
    assert "Re-authorize with:" in result.output
    assert 'lark auth user login --scopes "offline_access drive:drive" --force-consent' in result.output
    assert fake_client.requests[0]["token"] == "env-token"


def test_api_retries_once_with_new_tenant_token(config_path, monkeypatch) -> None:
    class ExpiringTokenClient(FakeLarkClient):
        def request(self, method, path, *, token, params=None, json_body=None, timeout=None):
            self.requests.append({"method": method, "path": path, "token": token})
            if token == "t-1":
                raise LarkAPIError("Invalid access token for authorization.", code=99991663, status=400)
            return {"code": 0, "data": {"token": token}}

    client = ExpiringTokenClient()
    monkeypatch.setattr(cli_mod, "LarkClient", lambda base_url: client)
    monkeypatch.setenv("LARK_APP_ID", "app")
    monkeypatch.setenv("LARK_APP_SECRET", "secret")

    result = _run(config_path, "--json", "api", "GET", "/open-apis/im/v1/chats", "--param", "page_size=20")

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["data"]["token"] == "t-2"
    assert [r["token"] for r in client.requests] == ["t-1", "t-2"]


def test_user_accounts_status_and_logout(config_path) -> None:
    CredentialStore(config_path).put_account(
        "work",
        UserAccount(
            user_access_token="u-1",
            user_access_token_expires_at=int(time.time()) + 3600,
            refresh_token="r-1",
            user_scopes=["offline_access", "wiki:wiki"],
        ),
    )

    accounts = _run(config_path, "--json", "auth", "user", "accounts")
    assert json.loads(accounts.stdout) == {"accounts": ["work"]}

    status = json.loads(_run(config_path, "--json", "auth", "user", "status", "--account", "work").stdout)
    assert status["authenticated"] is True
    assert status["access_token_valid"] is True
    assert status["scopes"] == ["offline_access", "wiki:wiki"]

    token = _run(config_path, "auth", "user", "token", "--account", "work")
    assert token.stdout.strip() == "u-1"

    assert _run(config_path, "auth", "user", "logout", "--account", "work").exit_code == 0
    assert CredentialStore(config_path).account_names() == []


def test_user_token_without_login(config_path) -> None:
    result = _run(config_path, "auth", "user", "token", "--account", "work")
    assert result.exit_code == 1
    assert "lark auth user login --account work" in result.output


def test_invalid_drive_scope_fails_before_anything_happens(config_path, fake_client) -> None:
    result = _run(config_path, "auth", "user", "login", "--scopes", "drive:drive", "--drive-scope", "bogus")
    assert result.exit_code == 1
    assert "invalid drive-scope 'bogus'" in result.output
    assert not os.path.exists(config_path)
    assert fake_client.exchange_calls == []


def test_api_as_tenant_reports_scope_errors_unchanged(config_path, fake_client, monkeypatch) -> None:
    monkeypatch.setenv("LARK_APP_ID", "app")
    monkeypatch.setenv("LARK_APP_SECRET", "secret")
    fake_client.request_error = LarkAPIError(
        "Access denied. One of the following scopes is required: [im:chat:readonly]", code=99991672, status=400
    )

    result = _run(config_path, "api", "GET", "/open-apis/im/v1/chats", "--as", "tenant")

    assert result.exit_code == 1
    assert "[im:chat:readonly]" in result.output
    assert "Re-authorize with:" not in result.output
    assert "lark auth user login" not in result.output
