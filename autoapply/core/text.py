from __future__ import annotations

import re

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_STOP_WORDS = {
    "a",
    "an",
    "and",
    "at",
    "for",
    "from",
    "in",
    "of",
    "on",
    "or",
    "the",
    "to",
    "with",
}


def tokenize(value: str | None, *, min_length: int = 1) -> set[str]:
    if not value:
        return set()
    tokens = _TOKEN_RE.findall(value.casefold())
    return {token for token in tokens if len(token) >= min_length and token not in _STOP_WORDS}


def jaccard(left: set[str], right: set[str]) -> float:
    if not left or not right:
        return 0.0
    union = len(left | right)
    if union <= 0:
        return 0.0
    return len(left & right) / union
