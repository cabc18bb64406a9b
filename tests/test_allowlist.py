import pytest

from pathgate.allowlist import compile_allow_patterns, escape_pattern
from pathgate.errors import ConfigurationError


def test_dots_are_escaped():
    assert escape_pattern("10.0.0.1") == r"10\.0\.0\.1"
    allow = compile_allow_patterns("10.0.0.1")
    assert allow.matches("10.0.0.1")
    assert not allow.matches("10a0b0c1")


def test_match_is_unanchored():
    allow = compile_allow_patterns("192.168.1")
    assert allow.matches("192.168.1.20")
    assert allow.matches("192.168.10.5")
    assert allow.matches("10.192.168.1")


def test_cidr_entries_are_not_ranges():
    allow = compile_allow_patterns("10.0.0.0/8")
    assert not allow.matches("10.1.2.3")
    assert not allow.matches("10.0.0.0")


def test_regex_syntax_survives_escaping():
    allow = compile_allow_patterns(r"^172.(16|17).")
    assert allow.matches("172.17.0.3")
    assert not allow.matches("1.172.16.0")


def test_list_and_comma_string_are_equivalent():
    a = compile_allow_patterns(" 127.0.0.1 , ::1,, ")
    b = compile_allow_patterns(["127.0.0.1", "::1"])
    assert a.sources == b.sources == [r"127\.0\.0\.1", "::1"]
    assert len(a) == 2


def test_first_match_in_listed_order():
    allow = compile_allow_patterns("10.1.,10.")
    assert allow.first_match("10.1.2.3").pattern == r"10\.1\."
    assert allow.first_match("10.2.0.1").pattern == r"10\."


def test_empty_allow_list_matches_nothing():
    for raw in ("", None, []):
        allow = compile_allow_patterns(raw)
        assert not allow
        assert not allow.matches("127.0.0.1")


def test_invalid_pattern_is_configuration_error():
    with pytest.raises(ConfigurationError, match="invalid IP regex pattern"):
        compile_allow_patterns("10.(0")
