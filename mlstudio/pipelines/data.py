"""Values that flow between pipeline steps."""

import re
from typing import Any, Dict

from mlstudio.exceptions import PipelineValidationError

NAME_PATTERN = re.compile(r"^[A-Za-z_][\w-]*$")


def _check_name(kind: str, name: str) -> None:
    if not NAME_PATTERN.match(name or ""):
        raise PipelineValidationError(f"Invalid {kind} name '{name}'")


class PipelineData:
    """
    Intermediate output directory written by one step and read by others.

    When a step runs, the object is replaced in its arguments by the path
    of the directory.
    """

    def __init__(self, name: str):
        _check_name("pipeline data", name)
        self.name = name

    def __repr__(self) -> str:
        return f"PipelineData(name={self.name!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "data", "name": self.name}


class PipelineParameter:
    """Named value substituted into step arguments when the pipeline is submitted."""

    def __init__(self, name: str, default_value: Any):
        _check_name("pipeline parameter", name)
        if isinstance(default_value, bool) or not isinstance(default_value, (str, int, float)):
            raise PipelineValidationError(
                f"Default of pipeline parameter '{name}' must be a string or number"
            )
        self.name = name
        self.default_value = default_value

    def __repr__(self) -> str:
        return f"PipelineParameter(name={self.name!r}, default_value={self.default_value!r})"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "parameter", "name": self.name, "default_value": self.default_value}
