"""Tests for shared LLM response parsing utilities."""

from mailrecall.common.llm_utils import as_str_list, parse_llm_json


class TestParseLlmJson:
    def test_valid_json(self):
        assert parse_llm_json('{"primary": "chase"}') == {"primary": "chase"}

    def test_json_with_markdown_fences(self):
        raw = '```json\n{"primary": "amex", "variations": ["aexp"]}\n```'
        assert parse_llm_json(raw) == {"primary": "amex", "variations": ["aexp"]}

    def test_json_embedded_in_text(self):
        raw = 'Sure! Here it is: {"primary": "chase"} Hope that helps.'
        assert parse_llm_json(raw) == {"primary": "chase"}

    def test_no_json_returns_empty_dict(self):
        assert parse_llm_json("I am not sure which company you mean") == {}

    def test_empty_string_returns_empty_dict(self):
        assert parse_llm_json("") == {}

    def test_array_is_not_an_object(self):
        assert parse_llm_json('["amex", "aexp"]') == {}

    def test_invalid_json_with_braces_returns_empty(self):
        assert parse_llm_json('{"primary: chase') == {}


class TestAsStrList:
    def test_list(self):
        assert as_str_list(["amex", "", 3, "aexp"]) == ["amex", "aexp"]

    def test_bare_string(self):
        assert as_str_list("amex") == ["amex"]

    def test_other_types(self):
        assert as_str_list(None) == []
        assert as_str_list({"a": 1}) == []
