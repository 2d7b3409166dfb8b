from json_extractor import (
    close_truncated,
    drop_trailing_commas,
    extract,
    extract_balanced_segment,
    parse_json_object,
)
from models import (
    GeneralPhysicianResponse,
    MedicalAnalystResponse,
    NutritionistResponse,
    PathologistResponse,
    SummarizerResponse,
)


def test_fenced_json_block_behind_reasoning_tags():
    raw = (
        "<think>Let me plan the findings first {draft}</think>\n"
        "Here is the analysis:\n"
        "```json\n"
        '{"report_type_analyzed": "Blood Test", "key_findings_from_report": ["Low hemoglobin"]}\n'
        "```"
    )

    result = extract(raw, MedicalAnalystResponse)

    assert result.strategy == "fenced_block"
    assert result.payload["key_findings_from_report"] == ["Low hemoglobin"]
    assert result.response.report_type_analyzed == "Blood Test"


def test_balanced_object_inside_prose():
    raw = 'Sure! {"notes": "Stay hydrated", "foods_to_avoid": ["Fried food"]} Hope this helps.'

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "balanced_object"
    assert result.response.notes == "Stay hydrated"
    assert result.response.foods_to_avoid == ["Fried food"]


def test_trailing_commas_are_repaired():
    raw = '{"notes": "ok", "foods_to_avoid": ["salt",],}'

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "repaired"
    assert result.payload == {"notes": "ok", "foods_to_avoid": ["salt"]}


def test_single_quotes_and_python_literals_are_repaired():
    raw = "{'notes': 'ok', 'flag': True, 'extra': None}"

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "repaired"
    assert result.payload["notes"] == "ok"
    assert result.payload["flag"] is True
    assert result.payload["extra"] is None


def test_nested_object_with_trailing_comma_keeps_top_level_fields():
    raw = (
        '{"report_type_analyzed": "CBC", "key_findings_from_report": ["Hb low"], '
        '"reference_data_for_next_role": {"analyst_summary": "anemia", "raw_findings_ref": "Hb"},}'
    )

    result = extract(raw, MedicalAnalystResponse)

    assert result.strategy == "repaired"
    assert result.response.report_type_analyzed == "CBC"
    assert result.response.key_findings_from_report == ["Hb low"]
    assert result.payload["reference_data_for_next_role"]["analyst_summary"] == "anemia"


def test_nested_object_with_bare_keys_keeps_top_level_fields():
    raw = '{role_name: "Pathologist", lab_tests_relevance: {"CBC": "x"}, findings_interpretation: {"a": "b"}}'

    result = extract(raw, PathologistResponse)

    assert result.strategy == "repaired"
    assert result.response.lab_tests_relevance == {"CBC": "x"}
    assert result.response.findings_interpretation == {"a": "b"}


def test_unclosed_reasoning_tag_keeps_following_json():
    raw = '<think>Checking the CBC values first.\n{"notes": "Eat iron-rich food", "foods_to_avoid": ["tea with meals"]}'

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "balanced_object"
    assert result.response.notes == "Eat iron-rich food"
    assert result.response.foods_to_avoid == ["tea with meals"]


def test_truncated_object_is_closed():
    raw = '{"notes": "Eat more greens", "foods_to_avoid": ["fried food", "sug'

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "repaired"
    assert result.response.notes == "Eat more greens"
    assert "fried food" in result.response.foods_to_avoid


def test_markdown_sections_map_onto_list_fields():
    raw = (
        "## Nutrition Plan\n"
        "\n"
        "**Foods to include:**\n"
        "- Spinach\n"
        "- Lentils\n"
        "\n"
        "**Foods to avoid:**\n"
        "- Fried food\n"
    )

    result = extract(raw, NutritionistResponse)

    assert result.strategy == "markdown"
    assert result.response.foods_to_include == ["Spinach", "Lentils"]
    assert result.response.foods_to_avoid == ["Fried food"]
    assert result.response.reference_data_for_next_role.nutrition_summary.startswith("## Nutrition Plan")
    assert result.response.role_name == NutritionistResponse.ROLE_NAME


def test_markdown_title_becomes_report_type_for_analyst():
    raw = "# Lipid Panel Review\n\n### Key Findings\n- LDL elevated\n\n### Abnormalities\n- High LDL\n"

    result = extract(raw, MedicalAnalystResponse)

    assert result.strategy == "markdown"
    assert result.response.report_type_analyzed == "Lipid Panel Review"
    assert result.response.key_findings_from_report == ["LDL elevated"]
    assert result.response.abnormalities_highlighted == ["High LDL"]


def test_key_values_recovered_without_braces():
    raw = 'The answer was cut. "summary_of_condition": "Probable angina", "primary_concerns": ["chest pain"]'

    result = extract(raw, SummarizerResponse)

    assert result.strategy == "key_values"
    assert result.response.summary_of_condition == "Probable angina"
    assert result.response.primary_concerns == ["chest pain"]


def test_plain_prose_falls_back_to_reference_text():
    raw = "I cannot provide a structured answer right now."

    result = extract(raw, GeneralPhysicianResponse)

    assert result.strategy == "fallback"
    assert result.response.role_name == GeneralPhysicianResponse.ROLE_NAME
    assert result.response.reference_data_for_next_role.gp_summary_of_case == raw
    assert result.response.recommended_specialist_type is None


def test_fallback_truncates_long_text():
    raw = "x" * 1500

    result = extract(raw, MedicalAnalystResponse)

    reference = result.response.reference_data_for_next_role
    assert result.strategy == "fallback"
    assert reference.analyst_summary == "x" * 500 + "..."
    assert reference.raw_findings_ref == "x" * 1000 + "..."


def test_extract_never_raises_on_empty_or_missing_input():
    for raw in (None, "", "   ", "{", "```json\n```"):
        result = extract(raw, PathologistResponse)
        assert isinstance(result.response, PathologistResponse)
        assert result.response.lab_tests_relevance == {}


def test_parse_json_object_ignores_markdown():
    assert parse_json_object("## Heading\n- item") is None
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}


def test_balanced_segment_respects_braces_inside_strings():
    text = 'prefix {"a": "}", "b": [1, {"c": 2}]} tail'

    segment = extract_balanced_segment(text, text.index("{"))

    assert segment == '{"a": "}", "b": [1, {"c": 2}]}'
    assert extract_balanced_segment('{"a": 1', 0) is None


def test_close_truncated_drops_dangling_key():
    assert close_truncated('{"a": 1, "b"') == '{"a": 1}'
    assert close_truncated('{"a": [1, 2') == '{"a": [1, 2]}'
    assert drop_trailing_commas("[1, 2, ]") == "[1, 2]"
