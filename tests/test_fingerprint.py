"""Tests for fingerprinting, stack parsing and PII scrubbing."""

import pytest

from errorwatch.processing.fingerprint import (
    extract_error_type,
    generate_fingerprint,
    match_fingerprint_rule,
    normalize_file,
    parse_stack_frames,
    scrub_pii,
)

CHROME_STACK = """TypeError: x is undefined
    at render (https://app.example.com/main.js:10:5)
    at https://app.example.com/main.js:20:1
    at main (https://app.example.com/main.js:2:3)"""

FIREFOX_STACK = """render@https://app.example.com/main.js:10:5
main@https://app.example.com/main.js:2:3"""


def test_error_type_prefix():
    assert extract_error_type("TypeError: x is undefined") == "TypeError"
    assert extract_error_type("ChunkLoadError: failed") == "ChunkLoadError"
    assert extract_error_type("something broke") == "Error"


def test_chrome_frames():
    assert parse_stack_frames(CHROME_STACK) == [
        "render:10:5",
        "anonymous:20:1",
        "main:2:3",
    ]


def test_firefox_frames():
    assert parse_stack_frames(FIREFOX_STACK) == ["render:10:5", "main:2:3"]


def test_frames_are_capped():
    stack = "\n".join(f"    at f{n} (a.js:{n}:1)" for n in range(10))
    assert len(parse_stack_frames(stack)) == 5


def test_normalize_file_drops_query_and_hash():
    assert normalize_file("https://cdn/app.js?v=3#x") == "https://cdn/app.js"


def test_same_bug_same_fingerprint_even_when_message_differs():
    a = generate_fingerprint("p1", "TypeError: user 12 missing", "app.js?v=1", 10, CHROME_STACK)
    b = generate_fingerprint("p1", "TypeError: user 99 missing", "app.js?v=2", 10, CHROME_STACK)
    assert a == b
    assert len(a) == 40


@pytest.mark.parametrize(
    "other",
    [
        ("p2", "TypeError: x", "app.js", 10, CHROME_STACK),
        ("p1", "RangeError: x", "app.js", 10, CHROME_STACK),
        ("p1", "TypeError: x", "app.js", 11, CHROME_STACK),
        ("p1", "TypeError: x", "app.js", 10, FIREFOX_STACK),
    ],
)
def test_fingerprint_components_matter(other):
    base = generate_fingerprint("p1", "TypeError: x", "app.js", 10, CHROME_STACK)
    assert generate_fingerprint(*other) != base


def test_column_is_part_of_fingerprint():
    a = generate_fingerprint("p1", "TypeError: x", "app.js", 10, "", column=1)
    b = generate_fingerprint("p1", "TypeError: x", "app.js", 10, "", column=2)
    assert a != b


def test_first_matching_rule_wins():
    rules = [
        {"pattern": "^ChunkLoadError", "groupKey": "chunks"},
        {"pattern": "Error", "groupKey": "everything"},
    ]
    chunks = match_fingerprint_rule("p1", "ChunkLoadError: 3", rules)
    other = match_fingerprint_rule("p1", "TypeError: x", rules)
    assert chunks and other and chunks != other
    assert match_fingerprint_rule("p1", "ChunkLoadError: 4", rules) == chunks


def test_invalid_rules_are_skipped():
    rules = [{"pattern": "(", "groupKey": "bad"}, {"groupKey": "no pattern"}]
    assert match_fingerprint_rule("p1", "anything", rules) is None


def test_custom_fingerprint_is_project_scoped():
    rules = [{"pattern": ".", "groupKey": "all"}]
    assert match_fingerprint_rule("p1", "x", rules) != match_fingerprint_rule("p2", "x", rules)


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("mail jane.doe@example.com now", "mail [email] now"),
        ("from 10.0.0.12", "from [ip]"),
        ("card 4111 1111 1111 1111", "card [card]"),
        ('{"password": "hunter2"}', '{"password":"[filtered]"}'),
        ("api_key='abc123'", '"[filtered_key]":"[filtered]"'),
        ("Authorization Bearer eyJhbGciOi.xyz", "Authorization Bearer [filtered]"),
    ],
)
def test_scrub_pii(raw, expected):
    assert scrub_pii(raw) == expected
