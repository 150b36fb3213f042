"""
Parser for tool-call directives embedded in model output.

Grammar::

    output     := ( text | directive )*
    directive  := "<tool_call>" ws "<name>" name "</name>" ws
                  "<arguments>" ws json-object ws "</arguments>" ws "</tool_call>"

A model turn is either a plain response (no well-formed directive) or one
or more directives, executed in textual order. Blocks that open with
``<tool_call>`` but do not match the grammar are not directives; they are
removed from the final answer by ``strip_tool_calls``.
"""

import json
from typing import List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field

from llm_workspace.domain.models.conversation import ToolCallDirective

OPEN_TAG = "<tool_call>"
CLOSE_TAG = "</tool_call>"

_decoder = json.JSONDecoder()


class PlainResponse(BaseModel):
    """Model turn without tool calls"""
    kind: Literal["plain"] = "plain"
    text: str


class ToolCallResponse(BaseModel):
    """Model turn requesting one or more tools"""
    kind: Literal["tool_calls"] = "tool_calls"
    text: str
    directives: List[ToolCallDirective] = Field(min_length=1)


ParsedOutput = Union[PlainResponse, ToolCallResponse]


class _Cursor:
    def __init__(self, text: str, pos: int):
        self.text = text
        self.pos = pos

    def skip_ws(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def expect(self, literal: str) -> bool:
        if self.text.startswith(literal, self.pos):
            self.pos += len(literal)
            return True
        return False

    def read_until(self, literal: str) -> Optional[str]:
        end = self.text.find(literal, self.pos)
        if end == -1:
            return None
        value = self.text[self.pos:end]
        self.pos = end + len(literal)
        return value

    def read_json_object(self) -> Optional[str]:
        try:
            value, end = _decoder.raw_decode(self.text, self.pos)
        except json.JSONDecodeError:
            return None
        if not isinstance(value, dict):
            return None
        raw = self.text[self.pos:end]
        self.pos = end
        return raw


def _parse_directive(text: str, pos: int) -> Tuple[Optional[ToolCallDirective], int]:
    """Parse one directive whose opening tag ends at ``pos``"""

    cursor = _Cursor(text, pos)
    cursor.skip_ws()
    if not cursor.expect("<name>"):
        return None, pos

    name = cursor.read_until("</name>")
    if name is None:
        return None, pos
    name = name.strip()
    if not name or "<" in name:
        return None, pos

    cursor.skip_ws()
    if not cursor.expect("<arguments>"):
        return None, pos
    cursor.skip_ws()
    arguments = cursor.read_json_object()
    if arguments is None:
        return None, pos
    cursor.skip_ws()
    if not cursor.expect("</arguments>"):
        return None, pos
    cursor.skip_ws()
    if not cursor.expect(CLOSE_TAG):
        return None, pos

    return ToolCallDirective(tool_name=name, arguments_json=arguments), cursor.pos


def parse_tool_calls(text: str) -> List[ToolCallDirective]:
    """Every well-formed directive in ``text``, in order"""

    directives = []
    pos = 0
    while True:
        start = text.find(OPEN_TAG, pos)
        if start == -1:
            break
        directive, end = _parse_directive(text, start + len(OPEN_TAG))
        if directive is None:
            pos = start + len(OPEN_TAG)
            continue
        directives.append(directive)
        pos = end
    return directives


def parse_model_output(text: str) -> ParsedOutput:
    directives = parse_tool_calls(text)
    if directives:
        return ToolCallResponse(text=text, directives=directives)
    return PlainResponse(text=text)


def strip_tool_calls(text: str) -> str:
    """Remove all directive markup, including unterminated blocks.

    Removal repeats until no opening tag is left, so applying the function
    to its own output changes nothing.
    """

    while True:
        start = text.find(OPEN_TAG)
        if start == -1:
            break
        end = text.find(CLOSE_TAG, start + len(OPEN_TAG))
        if end == -1:
            text = text[:start]
        else:
            text = text[:start] + text[end + len(CLOSE_TAG):]
    return text.strip()
