from __future__ import annotations

"""LLM-backed agents, their objectives and the context parser they use."""

import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from pydantic import ValidationError

from nibble.adapters.base import (
    AdapterKind,
    Invocable,
    check_range,
    flatten_input,
    render_value,
)
from nibble.engine.exceptions import DecodeError, InvalidAdapter
from nibble.services.cipher import Wallet
from nibble.services.llm import LLMConfig, coerce_result, parse_llm_config

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([\w.:-]+)\s*\}\}")
OBJECTIVE_LINE = re.compile(r"Objective:\s*(.+),\s*Priority:\s*(\d+)")


def coerce_llm_config(value: Union[LLMConfig, Dict[str, Any]]) -> LLMConfig:
    if isinstance(value, dict):
        try:
            return parse_llm_config(value)
        except ValidationError as exc:
            raise InvalidAdapter(f"Invalid LLM config: {exc}") from exc
    return value


@dataclass
class Objective:
    description: str
    priority: int
    generated: bool = False

    def validate(self) -> None:
        if not self.description.strip():
            raise InvalidAdapter("Objective description must not be empty")
        check_range("priority", self.priority, 0, 10)


@dataclass
class ContextParser:
    """Projects an agent's input onto the fields it cares about."""

    required_fields: List[str] = field(default_factory=list)
    expected_format: Dict[str, str] = field(default_factory=dict)

    def parse(self, input: Any) -> Dict[str, Any]:
        values = flatten_input(input)
        missing = [name for name in self.required_fields if name not in values]
        if missing:
            raise DecodeError(f"Missing required context fields: {', '.join(missing)}")
        if not self.expected_format:
            return values
        projected: Dict[str, Any] = {}
        for name, type_name in self.expected_format.items():
            if name not in values:
                continue
            coerce_result(values[name], type_name)
            projected[name] = values[name]
        return projected


@dataclass(kw_only=True)
class Agent(Invocable):
    kind = AdapterKind.AGENT

    llm: LLMConfig
    role: str = ""
    personality: str = ""
    system_prompt: str = ""
    wallet: Optional[Wallet] = None
    write: bool = False
    admin: bool = False
    lens_account: Optional[str] = None
    farcaster_account: Optional[str] = None
    objectives: List[Objective] = field(default_factory=list)
    context_parser: Optional[ContextParser] = None

    def __post_init__(self) -> None:
        self.llm = coerce_llm_config(self.llm)

    def validate(self) -> None:
        super().validate()
        check_range("temperature", getattr(self.llm, "temperature", None), 0, 2)
        check_range("top_p", getattr(self.llm, "top_p", None), 0, 1)
        for objective in self.objectives:
            objective.validate()

    def add_objective(self, description: str, priority: int, generated: bool = False) -> Objective:
        objective = Objective(description=description, priority=priority, generated=generated)
        objective.validate()
        self.objectives.append(objective)
        self.objectives.sort(key=lambda o: o.priority, reverse=True)
        return objective

    def compose_prompt(self, input: Any) -> str:
        """
        Build the prompt sent to the LLM.

        A system prompt with `{{key}}` placeholders is rendered from the
        input and sent alone. Otherwise the system prompt and the serialized
        input are joined by a newline.
        """
        values = self.context_parser.parse(input) if self.context_parser else flatten_input(input)

        if self.system_prompt and PLACEHOLDER.search(self.system_prompt):
            lookup = {**input, **values} if isinstance(input, dict) else values

            def substitute(match: "re.Match[str]") -> str:
                key = match.group(1)
                return render_value(lookup[key]) if key in lookup else match.group(0)

            return PLACEHOLDER.sub(substitute, self.system_prompt)

        parts = [self.system_prompt] if self.system_prompt else []
        if self.context_parser is not None:
            parts.append(render_value(values))
        elif input is not None:
            parts.append(render_value(input))
        return "\n".join(parts)

    async def invoke(self, ctx: "ExecutionContext", input: Any, nibble: "Nibble") -> Any:
        prompt = self.compose_prompt(input)
        logger.debug("Agent '%s' prompting %s (%d chars)", self.name, self.llm.provider, len(prompt))
        return await nibble.llm.invoke(self.llm, prompt)

    async def generate_objectives(self, nibble: "Nibble", context: str) -> List[Objective]:
        """Ask the LLM for objectives and merge them in priority order."""
        prompt = (
            f"You are {self.name}, {self.role}. Personality: {self.personality}.\n"
            f"Given the following context, list your objectives.\n\n{context}\n\n"
            "Respond with one line per objective formatted as "
            "'Objective: <description>, Priority: <0-10>'."
        )
        reply = await nibble.llm.invoke(self.llm, prompt)
        generated: List[Objective] = []
        for line in reply.splitlines():
            match = OBJECTIVE_LINE.search(line)
            if not match:
                continue
            priority = int(match.group(2))
            if priority > 10:
                logger.warning("Skipping objective with priority %d: %s", priority, line)
                continue
            generated.append(self.add_objective(match.group(1).strip(), priority, generated=True))
        logger.info("Agent '%s' generated %d objectives", self.name, len(generated))
        return generated

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary.update(
            {
                "role": self.role,
                "provider": self.llm.provider,
                "objectives": [
                    {"description": o.description, "priority": o.priority, "generated": o.generated}
                    for o in self.objectives
                ],
            }
        )
        return summary
