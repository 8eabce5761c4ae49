from runpilot.parsing import ParseError, ParseOk, parse_json_object


def test_parses_plain_object() -> None:
    result = parse_json_object('{"action": "continue"}')

    assert isinstance(result, ParseOk)
    assert result.ok is True
    assert result.value == {"action": "continue"}


def test_parses_fenced_block() -> None:
    text = 'Here is the plan:\n```json\n{"steps": [{"title": "Open site"}]}\n```\nDone.'

    result = parse_json_object(text)

    assert isinstance(result, ParseOk)
    assert result.value["steps"][0]["title"] == "Open site"


def test_falls_back_to_outer_braces() -> None:
    result = parse_json_object('Sure! {"shouldReplan": false, "reason": "fine"} hope that helps')

    assert isinstance(result, ParseOk)
    assert result.value["reason"] == "fine"


def test_rejects_non_object_json() -> None:
    result = parse_json_object("[1, 2, 3]")

    assert isinstance(result, ParseError)
    assert result.ok is False
    assert "list" in result.reason


def test_reports_empty_and_garbage_replies() -> None:
    assert parse_json_object("").reason == "empty response"
    assert parse_json_object(None).reason == "empty response"
    assert parse_json_object("no json here").reason == "no JSON object found"

    broken = parse_json_object("{not: valid}")
    assert isinstance(broken, ParseError)
    assert broken.reason == "invalid JSON"
    assert broken.raw == "{not: valid}"
