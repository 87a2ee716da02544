from __future__ import annotations

import pytest

from trendscope.utils.entity_name import MAX_ENTITY_CHARS, normalize_entity


def test_dash_explanation_is_cut_and_words_title_cased() -> None:
    assert normalize_entity("The Last of Us — because it's critically acclaimed.") == "The Last Of Us"


@pytest.mark.parametrize("raw", ["breaking bad", "Breaking Bad ", "BREAKING BAD.", '"Breaking Bad"', "**Breaking Bad**"])
def test_case_and_punctuation_variants_collapse(raw: str) -> None:
    assert normalize_entity(raw) == "Breaking Bad"


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("New York - it's the best city because...", "New York"),
        ("React, since it has a large community", "React"),
        ("Python because it is easy", "Python"),
        ("Python: easy to learn", "Python"),
        ("it's always sunny in philadelphia", "It's Always Sunny In Philadelphia"),
    ],
)
def test_explanatory_tails(raw: str, expected: str) -> None:
    assert normalize_entity(raw) == expected


def test_unspaced_hyphen_is_part_of_the_name() -> None:
    assert normalize_entity("gpt-5") == "Gpt-5"
    assert normalize_entity("GPT-5") == "Gpt-5"


def test_json_entity_payload() -> None:
    assert normalize_entity('{"entity": "new york"}') == "New York"
    assert normalize_entity('  {"entity": "React."}  ') == "React"


def test_citation_markers_removed() -> None:
    assert normalize_entity("React citeturn0search0") == "React"
    assert normalize_entity("React citeturn0search3") == "React"
    assert normalize_entity("Python [1]") == "Python"
    assert normalize_entity("Python 【3†source】") == "Python"
    # Plain words containing "cite" survive.
    assert normalize_entity("Excite") == "Excite"


def test_truncated_to_max_chars() -> None:
    out = normalize_entity("a" * 100)
    assert len(out) == MAX_ENTITY_CHARS
    assert out == "A" + "a" * (MAX_ENTITY_CHARS - 1)


def test_total_on_empty_input() -> None:
    assert normalize_entity("") == ""
    assert normalize_entity("   ") == ""


@pytest.mark.parametrize(
    "raw",
    [
        "The Last of Us — because it's critically acclaimed.",
        "gpt-5",
        "word " * 30,
        '"**Quoted**"',
        "React, since it has a large community",
        "x" * 70 + ".",
    ],
)
def test_idempotent(raw: str) -> None:
    once = normalize_entity(raw)
    assert normalize_entity(once) == once
