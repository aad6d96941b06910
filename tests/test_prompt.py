from __future__ import annotations

import pytest

from lark_cli import prompt as prompt_mod
from lark_cli.errors import UnknownServiceError
from lark_cli.prompt import TerminalPrompt


def _answers(monkeypatch, *answers: str) -> list[tuple[str, object]]:
    queue = list(answers)
    asked: list[tuple[str, object]] = []

    def fake_prompt(text, default=None):
        asked.append((text, default))
        return queue.pop(0)

    monkeypatch.setattr(prompt_mod.typer, "prompt", fake_prompt)
    return asked


def test_select_services_prefills_previous(monkeypatch) -> None:
    asked = _answers(monkeypatch, "serv", "drive, wiki")
    options = TerminalPrompt().select_scope_options(["wiki"], ["offline_access", "wiki:wiki"])

    assert options.services == ["drive", "wiki"]
    assert asked[0][1] == "services"
    assert asked[1][1] == "wiki"


def test_select_scopes_always_adds_offline_access(monkeypatch) -> None:
    asked = _answers(monkeypatch, "scopes", "drive:drive")
    options = TerminalPrompt().select_scope_options([], ["task:task:read"])

    assert options.scopes == "offline_access drive:drive"
    assert asked[0][1] == "scopes"
    assert asked[1][1] == "offline_access task:task:read"


def test_select_services_rejects_unknown(monkeypatch) -> None:
    _answers(monkeypatch, "services", "photos")
    with pytest.raises(UnknownServiceError):
        TerminalPrompt().select_scope_options([], [])


def test_disabled_prompt_is_unavailable() -> None:
    assert TerminalPrompt(enabled=False).available() is False
