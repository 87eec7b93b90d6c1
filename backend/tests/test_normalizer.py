from __future__ import annotations

import json

from policydiff.normalizer import (
    ContentKind,
    NormalizedContent,
    classify_content,
    extract_content,
    normalize_response,
)


def test_report_encoded_as_json_string_is_structured() -> None:
    content = normalize_response({"data": '{"summary":"x"}'})

    assert content.kind is ContentKind.STRUCTURED
    assert content.value == {"summary": "x"}
    assert content.schema == "comparison_report"


def test_report_nested_two_levels_deep_is_unwrapped() -> None:
    body = {"data": json.dumps({"data": json.dumps({"detailed": "y"})})}

    content = normalize_response(body)

    assert content.is_structured
    assert content.value == {"detailed": "y"}


def test_plain_prose_is_free_text_verbatim() -> None:
    content = normalize_response({"data": "plain prose, not json"})

    assert content.kind is ContentKind.FREE_TEXT
    assert content.value == "plain prose, not json"
    assert content.as_text() == "plain prose, not json"


def test_checklist_array_is_structured() -> None:
    content = normalize_response({"data": [{"id": 1, "status": "满足"}]})

    assert content.is_structured
    assert content.schema == "checklist"
    assert content.value == [{"id": 1, "status": "满足"}]


def test_inner_string_that_is_not_json_is_kept_as_text() -> None:
    body = {"data": json.dumps({"data": "## 对比结果\n新增两条"})}

    content = normalize_response(body)

    assert not content.is_structured
    assert content.value == "## 对比结果\n新增两条"


def test_object_data_with_nested_string() -> None:
    body = {"data": {"data": '{"added": ["a"], "deleted": []}'}}

    content = normalize_response(body)

    assert content.is_structured
    assert content.value == {"added": ["a"], "deleted": []}


def test_object_data_without_inner_data_is_used_directly() -> None:
    body = {"data": {"statistics": {"totalAdded": 1}}}

    assert extract_content(body) == {"statistics": {"totalAdded": 1}}
    assert normalize_response(body).is_structured


def test_parsed_object_without_inner_data_falls_back_to_itself() -> None:
    body = {"data": '{"name": "消防", "matched": true}'}

    content = normalize_response(body)

    assert content.schema == "checklist"
    assert content.value == {"name": "消防", "matched": True}


def test_missing_or_unusable_data_yields_none() -> None:
    assert extract_content(None) is None
    assert extract_content("not a mapping") is None
    assert extract_content({"code": 0}) is None
    assert extract_content({"data": 42}) is None

    content = normalize_response({"code": 0, "msg": "ok"})
    assert content.kind is ContentKind.FREE_TEXT
    assert content.value is None
    assert content.as_text() == ""


def test_unrecognised_object_is_free_text_and_renders_as_json() -> None:
    content = normalize_response({"data": {"output": "中文"}})

    assert not content.is_structured
    assert content.as_text() == json.dumps({"output": "中文"}, ensure_ascii=False, indent=2)


def test_empty_array_is_not_a_checklist() -> None:
    assert not normalize_response({"data": []}).is_structured


def test_string_content_hiding_a_report_is_promoted() -> None:
    content = classify_content('{"summary": "s", "detailed": "d"}')

    assert content == NormalizedContent(
        kind=ContentKind.STRUCTURED,
        value={"summary": "s", "detailed": "d"},
        schema="comparison_report",
    )
