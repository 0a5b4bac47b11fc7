from geosearch_agent.agent.orchestrator import SYSTEM_PROMPT
from geosearch_agent.agent.tools import SEARCH_TOOL_DESCRIPTION, SearchMapInput


def test_prompt_forbids_invented_results_and_requires_error_disclosure() -> None:
    assert "never invent" in SYSTEM_PROMPT
    assert "degraded" in SYSTEM_PROMPT


def test_tool_description_lists_supported_tag_examples() -> None:
    assert '{"leisure": "marina"}' in SEARCH_TOOL_DESCRIPTION
    assert '{"parking": "*"}' in SEARCH_TOOL_DESCRIPTION
    assert "chips_id" in SEARCH_TOOL_DESCRIPTION


def test_tool_input_schema_shape() -> None:
    schema = SearchMapInput.model_json_schema()

    assert set(schema["properties"]) == {"name", "tags", "bbox", "limit"}
    assert "required" not in schema
