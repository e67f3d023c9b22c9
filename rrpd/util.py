from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _clean_text(value, max_chars: int) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Embedded newlines or NUL break log lines and client rendering.
    if "\n" in s or "\r" in s or "\x00" in s:
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_name(value, max_chars: int) -> str | None:
    return _clean_text(value, max_chars)


def normalize_email(value, max_chars: int) -> str | None:
    s = _clean_text(value, max_chars)
    if s is None or any(ch.isspace() for ch in s):
        return None
    return s


def fmt_email(email) -> str:
    return email if isinstance(email, str) and email else "-"
