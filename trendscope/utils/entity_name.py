from __future__ import annotations

import re

from trendscope.utils.json_extract import entity_from_json


MAX_ENTITY_CHARS = 64

# OpenAI-style inline citations (optionally wrapped in private-use delimiters), e.g.
# "citeturn0search0" or "citeturn0news12turn0search1".
_CITE_RE = re.compile(r"[\ue200-\ue2ff]*cite(?:[\ue200-\ue2ff]*turn\d+(?:search|news|view|image|fetch)\d+)+[\ue200-\ue2ff]*", re.IGNORECASE)
_BRACKET_CITE_RE = re.compile(r"【[^】]*】|\[\d+(?:,\s*\d+)*\]")
_EDGE_QUOTES_RE = re.compile(r"^[\"'`“”‘’]+|[\"'`“”‘’]+$")
_EDGE_EMPHASIS_RE = re.compile(r"^[*_]+|[*_]+$")
_DASH_TAIL_RE = re.compile(r"^(.+?)\s*(?:[—–]|\s-\s)")
_BECAUSE_TAIL_RE = re.compile(r"^([^,]+?)(?:,?\s+because|,?\s+since|,?\s+as it)\b", re.IGNORECASE)
_COLON_TAIL_RE = re.compile(r"^([^:]+):")
_TRAILING_PUNCT_RE = re.compile(r"[.!?]+$")
_SPACES_RE = re.compile(r"\s+")


def _title_words(s: str) -> str:
    # Not str.title(): "it's" must stay "It's", not "It'S".
    return " ".join(w[:1].upper() + w[1:] for w in s.lower().split(" "))


def normalize_entity(raw: str) -> str:
    """Map free-form model output to the canonical entity display name.

    Pure and total: always returns a string (possibly empty), at most 64 chars,
    title-cased per word. Applying it twice gives the same result as once.

    >>> normalize_entity("The Last of Us — because it's critically acclaimed.")
    'The Last Of Us'
    """
    s = _SPACES_RE.sub(" ", str(raw or "")).strip()

    from_json = entity_from_json(s)
    if from_json is not None:
        s = _SPACES_RE.sub(" ", from_json).strip()

    s = _CITE_RE.sub("", s)
    s = _BRACKET_CITE_RE.sub("", s).strip()

    s = _EDGE_QUOTES_RE.sub("", s)
    s = _EDGE_EMPHASIS_RE.sub("", s).strip()

    # Explanatory tails: "X — reason", "X - reason", "X, because ...", "X: reason".
    m = _DASH_TAIL_RE.match(s)
    if m:
        s = m.group(1).strip()
    m = _BECAUSE_TAIL_RE.match(s)
    if m:
        s = m.group(1).strip()
    m = _COLON_TAIL_RE.match(s)
    if m:
        s = m.group(1).strip()

    s = _EDGE_QUOTES_RE.sub("", s)
    s = _EDGE_EMPHASIS_RE.sub("", s)
    s = _TRAILING_PUNCT_RE.sub("", s).strip()

    if len(s) > MAX_ENTITY_CHARS:
        s = s[:MAX_ENTITY_CHARS].strip()
        s = _EDGE_EMPHASIS_RE.sub("", _EDGE_QUOTES_RE.sub("", s))
        s = _TRAILING_PUNCT_RE.sub("", s).strip()

    return _title_words(_SPACES_RE.sub(" ", s))
