from __future__ import annotations

"""Evaluations: human, LLM and agent judges that gate a link."""

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

import httpx

from nibble import config
from nibble.adapters.agents import coerce_llm_config
from nibble.adapters.base import AdapterKind, Gating, GateScope, check_range, render_value
from nibble.engine.exceptions import AdapterError, InvalidAdapter, UnknownAdapter
from nibble.engine.identity import generate_id
from nibble.services.llm import LLMConfig

if TYPE_CHECKING:
    from nibble.core import Nibble
    from nibble.engine.context import ExecutionContext

logger = logging.getLogger(__name__)

SCORE_PATTERN = re.compile(r"\{[^{}]*\"score\"[^{}]*\}", re.DOTALL)


@dataclass
class HumanJudge:
    endpoint: str
    timeout: float = config.HTTP_TIMEOUT_SECONDS
    default: bool = False
    auth_key: Optional[str] = None


@dataclass
class LLMJudge:
    llm: LLMConfig
    prompt: str
    threshold: float = 0.5

    def __post_init__(self) -> None:
        self.llm = coerce_llm_config(self.llm)


@dataclass
class AgentJudge:
    agent_id: bytes
    prompt: str
    threshold: float = 0.5


EvalKind = Union[HumanJudge, LLMJudge, AgentJudge]


def judge_prompt(prompt: str, scope: GateScope, extra: str = "") -> str:
    previous = "" if scope.previous is None else render_value(scope.previous)
    next_steps = "\n".join(scope.next_steps)
    return (
        f"{prompt}\n{extra}\n\n"
        "Also take into consideration the following information when deciding:\n\n"
        f"Context:\n{previous}\n\nNext Steps:\n{next_steps}\n\n"
        'Respond only with JSON of the form {"score": <number between 0 and 1>}.'
    )


def parse_score(reply: str) -> Optional[float]:
    """Pull `score` out of a reply; None when it cannot be read."""
    candidates = [reply.strip()]
    candidates.extend(match.group(0) for match in SCORE_PATTERN.finditer(reply))
    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            score = payload.get("score")
            if isinstance(score, (int, float)) and not isinstance(score, bool):
                return float(score)
    return None


@dataclass(kw_only=True)
class Evaluation(Gating):
    kind = AdapterKind.EVALUATION

    judge: EvalKind

    def validate(self) -> None:
        super().validate()
        judge = self.judge
        if isinstance(judge, HumanJudge):
            if not judge.endpoint:
                raise InvalidAdapter("Human judge needs an endpoint")
            if judge.timeout <= 0:
                raise InvalidAdapter("Human judge timeout must be positive")
        else:
            check_range("threshold", judge.threshold, 0, 1)
        if isinstance(judge, LLMJudge):
            check_range("temperature", getattr(judge.llm, "temperature", None), 0, 2)

    def references(self) -> List[Tuple[AdapterKind, bytes]]:
        if isinstance(self.judge, AgentJudge):
            return [(AdapterKind.AGENT, self.judge.agent_id)]
        return []

    async def _ask_human(self, nibble: "Nibble", scope: GateScope) -> bool:
        judge = self.judge
        headers = {"Authorization": f"Bearer {judge.auth_key}"} if judge.auth_key else {}
        body = {
            "interaction_id": generate_id(nibble.owner.principal).hex(),
            "context": scope.previous,
            "next_steps": scope.next_steps,
        }
        try:
            response = await nibble.http.post(
                judge.endpoint, json=body, headers=headers, timeout=judge.timeout
            )
        except httpx.HTTPError as exc:
            logger.warning("Human judge '%s' unreachable, using default: %s", self.name, exc)
            return judge.default
        if not response.is_success:
            logger.warning(
                "Human judge '%s' returned %s, using default", self.name, response.status_code
            )
            return judge.default
        answer = response.text.strip().lower()
        if answer == "yes":
            return True
        if answer == "no":
            return False
        return judge.default

    async def _ask_model(self, nibble: "Nibble", scope: GateScope) -> bool:
        judge = self.judge
        if isinstance(judge, AgentJudge):
            try:
                agent = nibble.registry.lookup(AdapterKind.AGENT, judge.agent_id)
            except UnknownAdapter:
                logger.warning("Evaluation '%s' references a missing agent", self.name)
                return False
            objectives = "\n".join(
                f"- {o.description} (priority {o.priority})" for o in agent.objectives
            )
            extra = f"\nAgent Objectives:\n{objectives}" if objectives else ""
            prompt = judge_prompt(judge.prompt, scope, extra)
            llm = agent.llm
        else:
            prompt = judge_prompt(judge.prompt, scope)
            llm = judge.llm
        try:
            reply = await nibble.llm.invoke(llm, prompt)
        except AdapterError as exc:
            logger.warning("Evaluation '%s' could not reach the model: %s", self.name, exc)
            return False
        score = parse_score(reply)
        if score is None:
            logger.warning("Evaluation '%s' got an unparseable reply", self.name)
            return False
        return score >= judge.threshold

    async def check(self, ctx: "ExecutionContext", nibble: "Nibble", scope: GateScope) -> bool:
        if isinstance(self.judge, HumanJudge):
            result = await self._ask_human(nibble, scope)
        else:
            result = await self._ask_model(nibble, scope)
        logger.info("Evaluation '%s' on link %s -> %s", self.name, scope.link_id.hex()[:12], result)
        return result

    def describe(self) -> Dict[str, Any]:
        summary = super().describe()
        summary["judge"] = type(self.judge).__name__
        return summary
