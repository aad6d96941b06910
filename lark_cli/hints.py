from __future__ import annotations

import re
from typing import Optional

from .errors import AuthorizationError
from .scopes import ensure_offline_access, parse_scope_list
from .state import DEFAULT_ACCOUNT

REAUTH_MARKER = "Re-authorize with:"

# The Open API lists missing scopes inside brackets in its error message,
# e.g. "... required one of these privileges: [drive:drive, drive:drive:readonly]".
_BRACKETED = re.compile(r"\[(.*?)\]")


def extract_missing_scopes(message: str) -> list[str]:
    """
    Return the first bracketed group that looks like a scope list, or [].

    A group qualifies only if one of its tokens contains ":" (the scope namespace
    separator), so incidental bracketed text is skipped.
    """
    for group in _BRACKETED.findall(message or ""):
        scopes = parse_scope_list(group)
        if any(":" in s for s in scopes):
            return scopes
    return []


def reauthorize_hint(scopes: list[str], account: Optional[str] = None) -> str:
    cmd = f'lark auth user login --scopes "{" ".join(scopes)}" --force-consent'
    if account and account != DEFAULT_ACCOUNT:
        cmd += f" --account {account}"
    return f"Missing user OAuth scopes: {', '.join(scopes)}.\n{REAUTH_MARKER}\n  {cmd}"


def translate(err: BaseException, account: Optional[str] = None) -> BaseException:
    """
    Attach a re-authorization command to an error that names missing scopes.

    Returns `err` itself when there is nothing to add, including when it already
    carries a hint, so calling this twice is the same as calling it once.
    """
    if isinstance(err, AuthorizationError):
        return err
    msg = str(err)
    if REAUTH_MARKER in msg:
        return err
    missing = extract_missing_scopes(msg)
    if not missing:
        return err
    scopes = ensure_offline_access(missing)
    translated = AuthorizationError(msg, missing, reauthorize_hint(scopes, account))
    translated.__cause__ = err
    return translated
