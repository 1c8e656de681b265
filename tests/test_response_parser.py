"""Tests for oracle response parsing and validation."""

from lbteacher.commands import Click, Scroll
from lbteacher.response_parser import (
    ParsedFields,
    extract_fields,
    extract_json,
    parse_response,
    validate,
    wants_to_continue,
)


class TestExtractJson:
    """Test the two-stage JSON extraction."""

    def test_fenced_block_in_narrative(self):
        result = extract_json('here is the result: ```json\n{"a":1}\n``` thanks')
        assert result.success is True
        assert result.value == {"a": 1}

    def test_plain_object(self):
        assert extract_json('{"a":1}').value == {"a": 1}

    def test_unlabelled_fence(self):
        assert extract_json('```\n{"a": [1, 2]}\n```').value == {"a": [1, 2]}

    def test_balanced_scan_ignores_trailing_text(self):
        text = 'Sure! {"notes": {"confidence": 85}} and then {"other": true}'
        assert extract_json(text).value == {"notes": {"confidence": 85}}

    def test_brackets_inside_strings(self):
        text = 'prefix {"selector": "div:has-text(\\"}\\")", "n": 2} suffix'
        assert extract_json(text).value == {"selector": 'div:has-text("}")', "n": 2}

    def test_array(self):
        assert extract_json("result: [1, 2, 3]").value == [1, 2, 3]

    def test_no_json(self):
        result = extract_json("I could not analyse the page.")
        assert result.success is False
        assert result.error

    def test_empty(self):
        assert extract_json("").success is False
        assert extract_json(None).success is False

    def test_broken_json_reports_error(self):
        result = extract_json('{"a": 1,')
        assert result.success is False
        assert "Invalid JSON" in result.error


class TestValidate:
    """Test schema validation."""

    def test_requires_confidence(self):
        result = validate({"switchers": []})
        assert result.valid is False
        assert any("confidence" in e for e in result.errors)

    def test_confidence_range(self):
        assert validate({"notes": {"confidence": 101}}).valid is False
        assert validate({"notes": {"confidence": -1}}).valid is False
        assert validate({"notes": {"confidence": 0}}).valid is True
        assert validate({"notes": {"confidence": 100}}).valid is True

    def test_confidence_must_be_numeric(self):
        assert validate({"notes": {"confidence": "high"}}).valid is False
        assert validate({"notes": {"confidence": True}}).valid is False

    def test_top_level_confidence_accepted(self):
        assert validate({"confidence": 70}).valid is True

    def test_switcher_without_locator_is_warning(self):
        result = validate({"notes": {"confidence": 80}, "switchers": [{"name": "stake"}]})
        assert result.valid is True
        assert any("selector or coordinates" in w for w in result.warnings)

    def test_unknown_browser_command_rejected(self):
        result = validate({"notes": {"confidence": 50}, "browser_commands": [{"action": "eval", "code": "x"}]})
        assert result.valid is False
        assert any("invalid action" in e for e in result.errors)

    def test_click_without_locator_rejected(self):
        result = validate({"notes": {"confidence": 50}, "browser_commands": [{"action": "click"}]})
        assert result.valid is False

    def test_wait_for_selector_without_selector_rejected(self):
        result = validate({"notes": {"confidence": 50}, "browser_commands": [{"action": "waitForSelector"}]})
        assert result.valid is False

    def test_valid_commands(self):
        result = validate({
            "notes": {"confidence": 50},
            "browser_commands": [
                {"action": "click", "coordinates": {"x": 10, "y": 20}},
                {"action": "scroll", "direction": "down", "amount": 300},
                {"action": "wait", "ms": 500},
            ],
        })
        assert result.valid is True

    def test_not_an_object(self):
        assert validate([1, 2]).valid is False


class TestExtractFields:
    """Test normalization with defaults."""

    def test_defaults_for_empty(self):
        fields = extract_fields({})
        assert fields == ParsedFields()
        assert fields.is_correct is True
        assert fields.switchers == []
        assert fields.finished is False

    def test_full_answer(self):
        fields = extract_fields({
            "data_verification": {
                "is_correct": False,
                "issues": [{"leaderboard": "stake", "problem": "swapped", "corrected_data": [{"rank": 1}]}],
            },
            "switchers": [{"name": "stake", "selector": ".s"}, "junk"],
            "notes": {"confidence": 72, "observations": ["a"], "warnings": ["b"]},
            "browser_commands": [{"action": "click", "selector": ".tab"}, {"action": "scroll"}],
            "finished": True,
        })
        assert fields.confidence == 72
        assert fields.is_correct is False
        assert fields.issues[0].leaderboard == "stake"
        assert fields.issues[0].corrected_data == [{"rank": 1}]
        assert fields.switchers == [{"name": "stake", "selector": ".s"}]
        assert fields.observations == ["a"]
        assert fields.warnings == ["b"]
        assert fields.browser_commands == [Click(selector=".tab"), Scroll()]
        assert fields.finished is True

    def test_non_dict(self):
        assert extract_fields("nope") == ParsedFields()


class TestWantsToContinue:
    """Test the continuation rule."""

    def test_finished_stops(self):
        assert wants_to_continue({"finished": True, "notes": {"confidence": 10}}) is False

    def test_commands_continue(self):
        value = {"notes": {"confidence": 95}, "browser_commands": [{"action": "wait", "ms": 100}]}
        assert wants_to_continue(value) is True

    def test_low_confidence_continues(self):
        """Confidence 65 with no commands and finished unset continues."""
        assert wants_to_continue({"notes": {"confidence": 65}}) is True

    def test_high_confidence_stops(self):
        assert wants_to_continue({"notes": {"confidence": 80}}) is False

    def test_custom_threshold(self):
        assert wants_to_continue(ParsedFields(confidence=85), threshold=90) is True


class TestParseResponse:
    def test_success(self):
        parsed = parse_response('```json\n{"notes": {"confidence": 90}}\n```')
        assert parsed.success is True
        assert parsed.fields.confidence == 90

    def test_validation_failure(self):
        parsed = parse_response('{"switchers": []}')
        assert parsed.success is False
        assert parsed.errors
        assert parsed.raw == {"switchers": []}

    def test_extraction_failure(self):
        parsed = parse_response("no json here")
        assert parsed.success is False
        assert parsed.fields is None
