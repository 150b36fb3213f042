# Parameter validation
import json
from typing import Any, Dict

import jsonschema

from llm_workspace.domain.errors import InvalidArgumentsError
from .base_tool import ToolSpec


class ToolParameterValidator:
    @staticmethod
    def parse_arguments(spec: ToolSpec, arguments_json: str) -> Dict[str, Any]:
        """Decode the raw arguments and check them against the tool schema"""

        try:
            arguments = json.loads(arguments_json) if arguments_json.strip() else {}
        except json.JSONDecodeError as e:
            raise InvalidArgumentsError(f"{spec.name}: arguments are not valid JSON: {e.msg}") from e

        if not isinstance(arguments, dict):
            raise InvalidArgumentsError(f"{spec.name}: arguments must be a JSON object")

        try:
            jsonschema.validate(arguments, spec.json_schema())
        except jsonschema.ValidationError as e:
            raise InvalidArgumentsError(f"{spec.name}: schema validation failed: {e.message}") from e

        return arguments
