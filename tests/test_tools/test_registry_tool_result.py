from colloquy.tools.registry import ToolResult


def test_tool_result_fills_content_from_error_message_on_failure() -> None:
    result = ToolResult(success=False, metadata={"error_message": "command failed with exit code 1"})

    assert result.content == "command failed with exit code 1"


def test_tool_result_failure_without_details_gets_generic_content() -> None:
    result = ToolResult(success=False)

    assert result.content == "Tool execution failed"


def test_tool_result_keeps_explicit_content_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", metadata={"error_message": "other"})

    assert result.content == "stderr output"


def test_successful_tool_result_may_be_empty() -> None:
    result = ToolResult(tool_call_id="c1")

    assert result.success is True
    assert result.content == ""
