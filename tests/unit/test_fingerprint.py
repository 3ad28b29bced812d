import re

from issuetrack.core.fingerprint import FINGERPRINT_LENGTH, first_stack_line, fingerprint
from issuetrack.core.levels import ErrorLevel, higher_level, meets_threshold, priority_for_level


def test_fingerprint_is_deterministic_hex():
    fp = fingerprint("TypeError", "x is undefined", "at foo (app.js:1:2)\nat bar (app.js:3:4)")
    assert fp == fingerprint("TypeError", "x is undefined", "at foo (app.js:1:2)\nat bar (app.js:3:4)")
    assert len(fp) == FINGERPRINT_LENGTH
    assert re.fullmatch(r"[0-9a-f]{16}", fp)


def test_only_first_stack_line_counts():
    a = fingerprint("E", "boom", "line one\nline two")
    b = fingerprint("E", "boom", "line one\nsomething else entirely")
    assert a == b


def test_missing_stack_equals_empty_stack():
    assert fingerprint("E", "boom") == fingerprint("E", "boom", "")
    assert first_stack_line(None) == ""


def test_message_is_not_normalized():
    assert fingerprint("E", "request 123 failed") != fingerprint("E", "request 456 failed")


def test_title_and_message_are_separate_inputs():
    assert fingerprint("E", "boom") != fingerprint("E2", "boom")


def test_higher_level_keeps_the_most_severe():
    assert higher_level("warning", "error") is ErrorLevel.ERROR
    assert higher_level("error", "info") is ErrorLevel.ERROR
    assert higher_level("debug", "debug") is ErrorLevel.DEBUG


def test_meets_threshold():
    assert meets_threshold("error", "warning")
    assert meets_threshold("warning", "warning")
    assert not meets_threshold("info", "warning")
    assert meets_threshold("debug", "debug")


def test_priority_for_level():
    assert priority_for_level("error") == "urgent"
    assert priority_for_level(ErrorLevel.WARNING) == "high"
    assert priority_for_level("info") == "normal"
    assert priority_for_level("debug") == "normal"
