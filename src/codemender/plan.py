"""Correction plans - the step list a generator proposes for fixing a file.

The generator returns plan text that is supposed to be JSON:

    {
      "planDescription": "Fix the unused import and the typo",
      "steps": [
        {"step": 1, "action": "modify_file", "description": "...",
         "path": "src/app.py", "modification_prompt": "..."},
        {"step": 2, "action": "run_command", "description": "...",
         "command": "ruff check src/app.py"}
      ]
    }

In practice it arrives wrapped in markdown fences, with chatter around it,
or with raw newlines inside strings. `parse_plan` tolerates the cosmetic
problems and rejects everything else with a PlanParseError.
"""

from __future__ import annotations

import json
import logging
import re
from enum import Enum
from pathlib import PurePosixPath, PureWindowsPath
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from codemender.errors import PlanParseError

logger = logging.getLogger(__name__)


class PlanAction(str, Enum):
    """Kinds of step a plan may contain."""

    CREATE_DIRECTORY = "create_directory"
    CREATE_FILE = "create_file"
    MODIFY_FILE = "modify_file"
    RUN_COMMAND = "run_command"


def _check_relative(path: str) -> str:
    path = path.strip()
    if not path:
        raise ValueError("path must be non-empty")
    if PurePosixPath(path).is_absolute() or PureWindowsPath(path).is_absolute() or ".." in path:
        raise ValueError("path must be relative and cannot contain '..'")
    return path


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    step: int = 0
    description: str = ""


class _PathStep(_StepBase):
    path: str

    @field_validator("path")
    @classmethod
    def _path_is_relative(cls, value: str) -> str:
        return _check_relative(value)


class CreateDirectoryStep(_PathStep):
    action: Literal["create_directory"] = "create_directory"


class CreateFileStep(_PathStep):
    """Create or overwrite a file, from literal content or a generation prompt."""

    action: Literal["create_file"] = "create_file"
    content: str | None = None
    generate_prompt: str | None = None

    @model_validator(mode="after")
    def _exactly_one_source(self) -> CreateFileStep:
        if (self.content is None) == (self.generate_prompt is None):
            raise ValueError("must have 'path' and either 'content' or 'generate_prompt'")
        return self


class ModifyFileStep(_PathStep):
    action: Literal["modify_file"] = "modify_file"
    modification_prompt: str

    @field_validator("modification_prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must have 'path' and 'modification_prompt'")
        return value


class RunCommandStep(_StepBase):
    action: Literal["run_command"] = "run_command"
    command: str

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must have a 'command'")
        return value


PlanStep = Annotated[
    Union[CreateDirectoryStep, CreateFileStep, ModifyFileStep, RunCommandStep],
    Field(discriminator="action"),
]


class Plan(BaseModel):
    """An ordered list of steps. Consumed exactly once by the executor."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    description: str = Field(default="", alias="planDescription")
    steps: list[PlanStep] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.steps)


# =============================================================================
# Parsing
# =============================================================================

_CONVERSATIONAL_PATTERNS = (
    re.compile(r"<execute_bash>", re.IGNORECASE),
    re.compile(r"\bthought\b", re.IGNORECASE),
    re.compile(r"^\s*(true|false|null)\b", re.IGNORECASE),
)

_FENCE_RE = re.compile(r"```(?:json|typescript|python)?")


def _extract_object(text: str) -> str:
    cleaned = _FENCE_RE.sub("", text).strip()
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first == -1 or last < first:
        raise PlanParseError(
            "Could not find a valid JSON object within the response.", raw_text=text
        )
    return cleaned[first : last + 1]


def _format_validation_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    message = first.get("msg", "invalid value")
    return f"{location}: {message}" if location else message


def _consolidate(steps: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Merge modify_file steps for the same path and renumber."""
    merged: list[dict[str, Any]] = []
    by_path: dict[str, dict[str, Any]] = {}
    for original in steps:
        step = dict(original)
        if step.get("action") == PlanAction.MODIFY_FILE.value:
            key = step["path"].strip()
            existing = by_path.get(key)
            if existing is not None:
                existing["modification_prompt"] += f"\n\n---\n\n{step['modification_prompt']}"
                continue
            by_path[key] = step
        merged.append(step)
    for number, step in enumerate(merged, start=1):
        step["step"] = number
    return merged


def parse_plan(text: str) -> Plan:
    """Parse generator output into a validated Plan.

    Raises:
        PlanParseError: if the text is not a usable plan.
    """
    for pattern in _CONVERSATIONAL_PATTERNS:
        if pattern.search(text):
            raise PlanParseError(
                "Response contained conversational or instructional content "
                f"instead of a plan (detected pattern: {pattern.pattern})",
                raw_text=text,
            )

    extracted = _extract_object(text)
    try:
        # strict=False accepts raw control characters inside strings
        data = json.loads(extracted, strict=False)
    except json.JSONDecodeError as exc:
        raise PlanParseError(f"Error parsing plan JSON: {exc}", raw_text=text) from exc

    if (
        not isinstance(data, dict)
        or not isinstance(data.get("planDescription"), str)
        or not isinstance(data.get("steps"), list)
    ):
        raise PlanParseError(
            "The JSON must have a 'planDescription' (string) and 'steps' (array).",
            raw_text=text,
        )

    raw_steps = data["steps"]
    if not raw_steps:
        raise PlanParseError("The plan contains an empty steps array.", raw_text=text)

    for index, step in enumerate(raw_steps, start=1):
        if not isinstance(step, dict) or step.get("step") != index:
            raise PlanParseError(
                f"Step {index} has an invalid structure or step number.", raw_text=text
            )
        if step.get("action") not in {a.value for a in PlanAction}:
            raise PlanParseError(f"Step {index} has an unknown action.", raw_text=text)

    try:
        # Validate before consolidation so merged prompts come from valid steps
        Plan.model_validate(data)
        plan = Plan.model_validate(
            {"planDescription": data["planDescription"], "steps": _consolidate(raw_steps)}
        )
    except ValidationError as exc:
        raise PlanParseError(
            f"Plan validation failed at {_format_validation_error(exc)}", raw_text=text
        ) from exc

    logger.debug("Parsed plan with %d steps", len(plan.steps))
    return plan
