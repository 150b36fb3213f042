from typing import Iterable, Optional

from llm_workspace.domain.tool.base_tool import ToolSpec


TOOL_FORMAT_INSTRUCTIONS = """When you need a tool, respond with ONLY this block and nothing before or after it:
<tool_call>
<name>tool_name</name>
<arguments>{"param": "value"}</arguments>
</tool_call>

Rules:
1. The arguments element must contain a single JSON object.
2. You may emit several tool_call blocks in one response; they run in order.
3. After the tool results arrive, answer the user in plain text without any tool_call blocks.
4. If no tool is needed, answer directly in plain text."""


def describe_tools(specs: Iterable[ToolSpec]) -> str:
    lines = []
    for spec in specs:
        line = f"- {spec.name}: {spec.description}"
        required = spec.required_parameters
        optional = [name for name in spec.parameters if name not in required]
        if required:
            line += f" (required params: {', '.join(required)})"
        if optional:
            line += f" (optional params: {', '.join(optional)})"
        lines.append(line)
    return "\n".join(lines)


def build_tool_system_prompt(
    persona: str,
    specs: Iterable[ToolSpec],
    working_directory: Optional[str] = None
) -> str:
    """System message for the tool-enabled loop"""

    specs = list(specs)
    sections = [persona.strip()]

    if specs:
        sections.append("You have access to these tools:\n" + describe_tools(specs))
        sections.append(TOOL_FORMAT_INSTRUCTIONS)
    else:
        sections.append("No tools are available; answer in plain text.")

    if working_directory:
        sections.append(
            f"Current working directory: {working_directory}\n"
            "Relative paths in tool arguments are resolved against it."
        )

    return "\n\n".join(sections)
