import asyncio
import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage
from langchain_core.tools import BaseTool

from cara.graph.extractor import Shape
from cara.graph.state import (
    EMPTY_DELTA,
    AnalysisState,
    Document,
    Stage,
    StateDelta,
    ToolCall,
)

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).parent.parent / "prompts"

FAILED_STAGE_OUTPUT = "Stage failed: no output was produced for this step."

# Keeps instructions bounded no matter how much evidence accumulates
_MAX_EVIDENCE_DOCS = 8
_MAX_BODY_CHARS = 600


@lru_cache(maxsize=None)
def _load_prompt(name: str) -> str:
    return (_PROMPTS_DIR / name).read_text(encoding="utf-8")


def conversation_window(conversation: list[BaseMessage], size: int) -> list[BaseMessage]:
    """
    The system message plus the last `size` messages.

    The window is widened backwards until it opens on a human turn, so a tool
    result is never sent without the assistant message that requested it.
    """
    if not conversation:
        return []
    system, rest = conversation[0], conversation[1:]
    start = max(0, len(rest) - size)
    while start > 0 and not isinstance(rest[start], HumanMessage):
        start -= 1
    return [system, *rest[start:]]


def _evidence_payload(evidence: list[Document]) -> list[dict]:
    return [
        {"title": doc.title, "body": doc.body[:_MAX_BODY_CHARS], "url": doc.url}
        for doc in evidence[:_MAX_EVIDENCE_DOCS]
    ]


def _records(records) -> list[dict]:
    return [record.model_dump(mode="json", by_alias=True) for record in records or []]


@dataclass(frozen=True)
class WorkerOutput:
    raw_output: str
    tool_call: ToolCall | None = None
    delta: StateDelta = EMPTY_DELTA
    failed: bool = False


class StageWorker:
    stage: Stage
    prompt_file: str
    expected_shapes: tuple[Shape, ...] = ()
    tool_names: tuple[str, ...] = ()

    def __init__(self, client, tools: dict[str, BaseTool] | None = None, window: int = 4) -> None:
        self.client = client
        self.window = window
        tools = tools or {}
        self.tools = [tools[name] for name in self.tool_names if name in tools]

    @property
    def system_prompt(self) -> str:
        return _load_prompt(self.prompt_file)

    def build_instruction(self, state: AnalysisState) -> str:
        raise NotImplementedError

    async def prepare(self, state: AnalysisState, resume: bool) -> StateDelta:
        """Work done before the model call. Returns extra evidence only."""
        return EMPTY_DELTA

    async def run(self, state: AnalysisState, resume: bool = False) -> WorkerOutput:
        prepared = await self.prepare(state, resume)
        view: AnalysisState = {**state, "evidence": [*state["evidence"], *prepared.evidence]}

        new_messages: list[BaseMessage] = []
        if not resume:
            new_messages.append(HumanMessage(content=self.build_instruction(view)))
        conversation = conversation_window(state["conversation"], self.window) + new_messages

        try:
            completion = await self.client.send(conversation, tools=self.tools or None)
        except Exception as exc:
            logger.error("%s worker failed: %s", self.stage.value, exc)
            new_messages.append(AIMessage(content=FAILED_STAGE_OUTPUT))
            return WorkerOutput(
                raw_output=FAILED_STAGE_OUTPUT,
                delta=StateDelta(messages=tuple(new_messages), evidence=prepared.evidence),
                failed=True,
            )

        tool_call = completion.tool_call if self.tools else None
        if completion.tool_call is not None and tool_call is None:
            # No tool result will follow, so keep only the text of the reply
            logger.warning("%s worker requested %s without bound tools", self.stage.value, completion.tool_call.name)
            new_messages.append(AIMessage(content=completion.content))
        else:
            new_messages.append(completion.message)
        return WorkerOutput(
            raw_output=completion.content,
            tool_call=tool_call,
            delta=StateDelta(messages=tuple(new_messages), evidence=prepared.evidence),
        )

    async def invoke_tool(self, call: ToolCall, timeout: float) -> tuple[list[Document], ToolMessage]:
        """Run a bound tool. Failures become an error message and no documents."""
        tool = next((t for t in self.tools if t.name == call.name), None)
        documents: list[Document] = []
        if tool is None:
            logger.error("%s worker has no tool named %s", self.stage.value, call.name)
            content = f"Tool {call.name} is not available."
        else:
            try:
                raw: Any = await asyncio.wait_for(tool.ainvoke(call.arguments), timeout=timeout)
                documents = [Document.model_validate(item) for item in raw or []]
                content = json.dumps(raw or [])
            except Exception as exc:
                logger.error("Tool %s failed: %s", call.name, exc)
                content = f"Tool {call.name} failed: {exc}"
        return documents, ToolMessage(content=content, tool_call_id=call.id, name=call.name)


class ResearchWorker(StageWorker):
    stage = Stage.RESEARCH
    prompt_file = "research.txt"
    expected_shapes = (Shape.EVIDENCE, Shape.SKILL_GAPS)
    tool_names = ("career_transition_search",)

    def __init__(self, client, tools=None, window: int = 4, search_client=None, max_results: int = 5) -> None:
        super().__init__(client, tools, window)
        self.search_client = search_client
        self.max_results = max_results

    async def prepare(self, state: AnalysisState, resume: bool) -> StateDelta:
        if resume or state["evidence"] or self.search_client is None:
            return EMPTY_DELTA
        request = state["request"]
        query = f"{request.source_role} to {request.target_role} transition stories"
        try:
            documents = await self.search_client.search(query, self.max_results)
        except Exception as exc:
            logger.error("Fallback search %r failed: %s", query, exc)
            return EMPTY_DELTA
        logger.info("Fallback search %r returned %d documents", query, len(documents))
        return StateDelta(evidence=tuple(documents))

    def build_instruction(self, state: AnalysisState) -> str:
        request = state["request"]
        payload = {
            "currentRole": request.source_role,
            "targetRole": request.target_role,
            "knownSkills": sorted(request.known_skills),
            "evidence": _evidence_payload(state["evidence"]),
        }
        return (
            "Research this career transition and summarise the stories as JSON.\n"
            + json.dumps(payload, indent=2)
        )


class SkillAnalysisWorker(StageWorker):
    stage = Stage.SKILL_ANALYSIS
    prompt_file = "skill_analysis.txt"
    expected_shapes = (Shape.SKILL_GAPS,)
    tool_names = ("skill_gap_search",)

    def build_instruction(self, state: AnalysisState) -> str:
        request = state["request"]
        payload = {
            "currentRole": request.source_role,
            "targetRole": request.target_role,
            "knownSkills": sorted(request.known_skills),
            "evidence": _evidence_payload(state["evidence"]),
        }
        return "Identify the skill gaps for this transition.\n" + json.dumps(payload, indent=2)


class InsightWorker(StageWorker):
    stage = Stage.INSIGHT
    prompt_file = "insight.txt"
    expected_shapes = (Shape.INSIGHT,)

    def build_instruction(self, state: AnalysisState) -> str:
        request = state["request"]
        payload = {
            "currentRole": request.source_role,
            "targetRole": request.target_role,
            "skillGaps": _records(state["skill_gaps"]),
            "evidence": _evidence_payload(state["evidence"]),
        }
        return "Extract insights about this transition.\n" + json.dumps(payload, indent=2)


class PlanningWorker(StageWorker):
    stage = Stage.PLANNING
    prompt_file = "planning.txt"
    expected_shapes = (Shape.PLAN,)
    tool_names = ("learning_resource_search",)

    def build_instruction(self, state: AnalysisState) -> str:
        request = state["request"]
        insights = state["insights"]
        payload = {
            "currentRole": request.source_role,
            "targetRole": request.target_role,
            "knownSkills": sorted(request.known_skills),
            "skillGaps": _records(state["skill_gaps"]),
            "insights": insights.model_dump(mode="json", by_alias=True) if insights else None,
        }
        return "Create a development plan for this transition.\n" + json.dumps(payload, indent=2)


