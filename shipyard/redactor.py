"""Secret redaction for text fed back to the model.

Tool results and build output can echo environment values or config
files that contain credentials.  ``redact`` replaces anything matching a
known secret shape with ``[REDACTED]`` before the text enters the
conversation history.  Pure functions, no I/O.
"""

from __future__ import annotations

import re
from collections.abc import Sequence

SecretPattern = tuple[str, re.Pattern[str]]

DEFAULT_PATTERNS: tuple[SecretPattern, ...] = (
    ("anthropic_key", re.compile(r"sk-ant-[A-Za-z0-9_-]{20,}")),
    ("api_key_sk", re.compile(r"sk-[A-Za-z0-9]{20,}")),
    ("github_pat", re.compile(r"gh[pousr]_[A-Za-z0-9]{36,}")),
    ("aws_key", re.compile(r"AKIA[A-Z0-9]{16}")),
    (
        "jwt",
        re.compile(r"eyJ[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}\.[A-Za-z0-9_-]{20,}"),
    ),
    ("bearer_token", re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]{20,}")),
    ("conn_string", re.compile(r"(?:postgres(?:ql)?|mysql|redis|mongodb(?:\+srv)?)://\S+")),
    (
        "assignment",
        re.compile(
            r"(?i)\b[A-Z0-9_]*(?:SECRET|TOKEN|PASSWORD|API_KEY)[A-Z0-9_]*\s*[=:]\s*[\"']?[^\s\"']{8,}"
        ),
    ),
    ("pem_block", re.compile(r"-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----")),
)

REDACTED: str = "[REDACTED]"


def _spans(text: str, patterns: Sequence[SecretPattern]) -> list[tuple[int, int]]:
    spans = sorted(
        (m.start(), m.end())
        for _name, pattern in patterns
        for m in pattern.finditer(text)
    )
    merged: list[tuple[int, int]] = []
    for start, end in spans:
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(end, merged[-1][1]))
        else:
            merged.append((start, end))
    return merged


def redact(text: str, *, extra_patterns: Sequence[SecretPattern] = ()) -> str:
    """Replace every secret match in *text* with ``[REDACTED]``.

    Overlapping matches are merged; replacement runs right-to-left so
    earlier offsets stay valid.
    """
    spans = _spans(text, (*DEFAULT_PATTERNS, *extra_patterns))
    for start, end in reversed(spans):
        text = text[:start] + REDACTED + text[end:]
    return text


def literal_pattern(name: str, value: str) -> SecretPattern:
    """Pattern matching one known secret value verbatim (e.g. a configured token)."""
    return (name, re.compile(re.escape(value)))


__all__ = [
    "DEFAULT_PATTERNS",
    "REDACTED",
    "literal_pattern",
    "redact",
]
