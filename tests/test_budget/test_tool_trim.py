from context_shaper.llm import ToolDefinition
from context_shaper.tokens import estimate_tokens_for_tools
from context_shaper.tool_trim import forces_tool_use, strip_schemas, trim_tools


def _huge_tool(name: str = "huge_tool") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="Tool with massive parameter schema",
        parameters={"type": "object", "properties": {"schema": "x" * 100_000}},
    )


def _small_tool(name: str = "read") -> ToolDefinition:
    return ToolDefinition(
        name=name,
        description="Read a file",
        parameters={"type": "object", "properties": {"path": {"type": "string"}}},
    )


def test_tools_that_fit_are_returned_unchanged():
    tools = [_small_tool()]

    result = trim_tools(tools, "required", 10_000)

    assert result.tools == tools
    assert result.tools is not tools
    assert result.tool_choice == "required"
    assert result.stripped_schemas == 0
    assert result.tool_choice_relaxed is False


def test_none_tools_pass_through():
    result = trim_tools(None, "auto", 0)

    assert result.tools is None
    assert result.tool_choice == "auto"


def test_oversized_schema_is_dropped_but_tool_kept():
    tools = [_huge_tool(), _small_tool()]

    result = trim_tools(tools, "auto", 1_000)

    assert [tool.name for tool in result.tools] == ["huge_tool", "read"]
    assert result.tools[0].parameters is None
    assert result.tools[0].description == "Tool with massive parameter schema"
    assert result.tools[1] is tools[1]
    assert result.stripped_schemas == 1
    assert estimate_tokens_for_tools(result.tools) < estimate_tokens_for_tools(tools)


def test_input_tools_are_not_mutated():
    tools = [_huge_tool()]

    trim_tools(tools, "required", 100)

    assert tools[0].parameters is not None
    assert len(tools) == 1


def test_forced_choice_kept_when_trimmed_tools_fit():
    result = trim_tools([_huge_tool()], "required", 1_000)

    assert result.tools[0].parameters is None
    assert result.tool_choice == "required"
    assert result.tool_choice_relaxed is False


def test_forced_choice_relaxed_when_tools_still_do_not_fit():
    tools = [_small_tool(f"tool_{idx}") for idx in range(20)]

    result = trim_tools(tools, "required", 50)

    assert len(result.tools) == 20
    assert result.tool_choice == "auto"
    assert result.tool_choice_relaxed is True


def test_named_tool_choice_is_relaxed_like_required():
    result = trim_tools([_small_tool()], "read", -10)

    assert result.tool_choice == "auto"
    assert len(result.tools) == 1


def test_non_forcing_choice_is_left_alone():
    result = trim_tools([_small_tool()], "none", -10)

    assert result.tool_choice == "none"
    assert result.tool_choice_relaxed is False


def test_forces_tool_use():
    assert forces_tool_use("required") is True
    assert forces_tool_use("read_file") is True
    assert forces_tool_use("auto") is False
    assert forces_tool_use("none") is False
    assert forces_tool_use(None) is False


def test_strip_schemas_returns_new_list():
    tools = [_huge_tool(), _small_tool()]

    stripped_tools, stripped = strip_schemas(tools)

    assert stripped == 1
    assert stripped_tools is not tools
    assert stripped_tools[0].parameters is None
    assert stripped_tools[1] is tools[1]
    assert strip_schemas(None) == (None, 0)
