import pytest

from promptworks.errors import DomainError
from promptworks.services.templating import (
    Literal, Placeholder, extract_parameters, merge_parameters, parse_template, placeholder_names, render_text,
)


class TestParsing:
    def test_both_syntaxes_in_first_appearance_order(self):
        text = "Hi ${name}, write {{genre}} about {{ name }} and ${topic}"
        assert placeholder_names(text) == ["name", "genre", "topic"]

    def test_segments_keep_literal_text(self):
        segments = parse_template("a {{x}} b")
        assert segments == [Literal("a "), Placeholder(name="x", raw="{{x}}"), Literal(" b")]

    def test_blank_placeholder_is_literal(self):
        assert placeholder_names("keep {{ }} as is") == []

    @pytest.mark.parametrize("text", [None, "", "no placeholders here"])
    def test_nothing_to_extract(self, text):
        assert extract_parameters(text) == []


class TestExtractParameters:
    def test_defaults_required_with_empty_description(self):
        assert extract_parameters("{{genre}}") == [
            {"name": "genre", "required": True, "description": ""}
        ]

    def test_overrides_survive_for_names_still_present(self):
        existing = [
            {"name": "genre", "required": False, "description": "Book genre"},
            {"name": "gone", "required": False, "description": "dropped"},
        ]
        params = extract_parameters("{{genre}} {{tone}}", existing)
        assert params == [
            {"name": "genre", "required": False, "description": "Book genre"},
            {"name": "tone", "required": True, "description": ""},
        ]

    def test_merge_first_occurrence_wins(self):
        merged = merge_parameters([
            [{"name": "a", "required": True, "description": "first"}],
            [{"name": "a", "required": False, "description": "second"}, {"name": "b"}],
        ])
        assert [p["name"] for p in merged] == ["a", "b"]
        assert merged[0]["description"] == "first"


class TestRender:
    def test_substitutes_values(self):
        assert render_text("Write {{genre}} for ${who}.", {"genre": "noir", "who": "adults"}) == \
            "Write noir for adults."

    def test_non_string_values_are_stringified(self):
        assert render_text("{{n}} chapters", {"n": 12}) == "12 chapters"

    def test_missing_required_raises(self):
        params = [{"name": "genre", "required": True, "description": ""}]
        with pytest.raises(DomainError) as exc:
            render_text("{{genre}}", {}, params)
        assert "genre" in exc.value.message
        assert exc.value.details == [{"field": "genre", "message": "required"}]

    def test_missing_optional_renders_empty(self):
        params = [{"name": "tone", "required": False, "description": ""}]
        assert render_text("[{{tone}}]", {}, params) == "[]"

    def test_undeclared_placeholder_renders_empty(self):
        assert render_text("x{{y}}z", {}) == "xz"
