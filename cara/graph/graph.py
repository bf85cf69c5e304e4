import asyncio
import logging
from typing import Any, Awaitable, Callable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, START, StateGraph

from cara.config import Settings
from cara.config import settings as default_settings
from cara.graph.agents import (
    InsightWorker,
    PlanningWorker,
    ResearchWorker,
    SkillAnalysisWorker,
    StageWorker,
    _load_prompt,
)
from cara.graph.extractor import extract_delta
from cara.graph.router import Action, Coordinator, Decision
from cara.graph.state import (
    AnalysisRequest,
    AnalysisResult,
    AnalysisState,
    Document,
    Stage,
    StateDelta,
    initial_state,
)
from cara.graph.tools import build_search_tools
from cara.services.text_generation import TextGenerationClient
from cara.services.web_search import SearchClient

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


def _request_message(request: AnalysisRequest) -> str:
    skills = ", ".join(sorted(request.known_skills)) or "not specified"
    return (
        f"I am a {request.source_role} looking to transition to {request.target_role}. "
        f"My current skills: {skills}. "
        "Analyse this transition: research real stories, identify my skill gaps, "
        "extract insights and create a development plan."
    )


def _evidence_key(doc: Document) -> str:
    return doc.url or doc.body


class Orchestrator:
    """
    Drives one analysis from request to result.

    The step loop is a compiled LangGraph: coordinator -> (run_stage | run_tool
    | finish) -> coordinator. Nodes read shared state and return updates; every
    extracted record is written to the repository before the next decision.
    The compiled graph holds no per-run data, so one Orchestrator can serve
    concurrent runs.
    """

    def __init__(
        self,
        workers: dict[Stage, StageWorker],
        repository,
        coordinator: Coordinator | None = None,
        max_steps: int = 50,
        request_timeout: float = 45.0,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.workers = workers
        self.repository = repository
        self.coordinator = coordinator or Coordinator()
        self.max_steps = max_steps
        self.request_timeout = request_timeout
        self._graph = self._compile()

    def _compile(self):
        graph = StateGraph(AnalysisState)

        graph.add_node("coordinator", self._coordinator_node)
        graph.add_node("run_stage", self._stage_node)
        graph.add_node("run_tool", self._tool_node)
        graph.add_node("finish", self._finish_node)

        graph.add_edge(START, "coordinator")
        graph.add_conditional_edges(
            "coordinator",
            self._next_node,
            {"run_stage": "run_stage", "run_tool": "run_tool", "finish": "finish"},
        )
        graph.add_edge("run_stage", "coordinator")
        graph.add_edge("run_tool", "coordinator")
        graph.add_edge("finish", END)

        return graph.compile()

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        request: AnalysisRequest,
        cancel_event: asyncio.Event | None = None,
        on_event: EventCallback | None = None,
    ) -> AnalysisResult:
        await self.repository.clear_analysis(request.analysis_id)
        await self.repository.start_analysis(request)
        logger.info(
            "Analysis %s started: %s -> %s", request.analysis_id, request.source_role, request.target_role
        )

        state = initial_state(
            request,
            [
                SystemMessage(content=_load_prompt("coordinator.txt")),
                HumanMessage(content=_request_message(request)),
            ],
        )
        final = await self._graph.ainvoke(
            state,
            config={
                # Two supersteps per loop iteration, plus the closing decision
                "recursion_limit": 2 * self.max_steps + 10,
                "configurable": {"cancel_event": cancel_event, "on_event": on_event},
            },
        )

        logger.info(
            "Analysis %s finished after %d steps (degraded=%s)",
            request.analysis_id,
            final["steps"],
            final["degraded"],
        )
        return AnalysisResult(
            analysis_id=request.analysis_id,
            skill_gaps=tuple(final["skill_gaps"] or ()),
            insights=final["insights"],
            plan=final["plan"],
            evidence=tuple(final["evidence"]),
            degraded=final["degraded"],
            forced_stages=tuple(final["forced_stages"]),
            steps=final["steps"],
        )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _coordinator_node(self, state: AnalysisState, config: RunnableConfig) -> dict:
        cancel_event = _configurable(config).get("cancel_event")
        if cancel_event is not None and cancel_event.is_set():
            logger.warning("Analysis %s cancelled", state["request"].analysis_id)
            return {"decision": Decision(action=Action.COMPLETE, degraded=True, reason="cancelled")}

        if state["steps"] >= self.max_steps:
            if self.coordinator.is_complete(state):
                return {"decision": Decision(action=Action.COMPLETE, reason="all stages settled")}
            logger.warning(
                "Analysis %s hit the step cap (%d); completing with partial results",
                state["request"].analysis_id,
                self.max_steps,
            )
            return {"decision": Decision(action=Action.COMPLETE, degraded=True, reason="step cap reached")}

        decision = self.coordinator.decide(state)
        logger.info("Coordinator: %s %s (%s)", decision.action.value, getattr(decision.stage, "value", ""), decision.reason)

        update: dict = {"decision": decision}
        if decision.forced_stage is not None:
            update.update(await self._apply_delta(state, decision.seed))
            update["forced_stages"] = [*state["forced_stages"], decision.forced_stage]
            await _emit(config, "stage_forced", stage=decision.forced_stage.value)
        return update

    def _next_node(self, state: AnalysisState) -> str:
        action = state["decision"].action
        if action is Action.TOOL_CALL:
            return "run_tool"
        if action is Action.INVOKE:
            return "run_stage"
        return "finish"

    async def _stage_node(self, state: AnalysisState, config: RunnableConfig) -> dict:
        decision: Decision = state["decision"]
        stage = decision.stage
        worker = self.workers[stage]

        conversation = state["conversation"]
        if stage is not state["stage"]:
            # Exactly one system message, always first
            conversation = [SystemMessage(content=worker.system_prompt), *conversation[1:]]
        await _emit(config, "stage_started", stage=stage.value, resume=decision.resume)

        output = await worker.run({**state, "conversation": conversation, "stage": stage}, resume=decision.resume)

        update: dict = {
            "stage": stage,
            "resume_stage": None,
            "steps": state["steps"] + 1,
            "conversation": [*conversation, *output.delta.messages],
        }

        if output.tool_call is not None:
            update.update(await self._apply_delta(state, StateDelta(evidence=output.delta.evidence)))
            update["pending_tool_call"] = output.tool_call
            return update

        delta = StateDelta(evidence=output.delta.evidence).combine(
            extract_delta(output.raw_output, worker.expected_shapes)
        )
        update.update(await self._apply_delta(state, delta))

        settled = self.coordinator.is_settled({**state, **update}, stage)
        if not settled:
            # Attempts are consecutive: entering from another stage starts the count over
            previous = state["stage_attempts"].get(stage, 0) if stage is state["stage"] else 0
            attempts = dict(state["stage_attempts"])
            attempts[stage] = previous + 1
            update["stage_attempts"] = attempts
            logger.info("Stage %s produced no usable data (attempt %d)", stage.value, attempts[stage])

        await _emit(config, "stage_finished", stage=stage.value, settled=settled, failed=output.failed)
        return update

    async def _tool_node(self, state: AnalysisState, config: RunnableConfig) -> dict:
        call = state["pending_tool_call"]
        stage = state["stage"]
        await _emit(config, "tool_call", stage=stage.value, tool=call.name)

        documents, message = await self.workers[stage].invoke_tool(call, self.request_timeout)

        update: dict = {
            "conversation": [*state["conversation"], message],
            "pending_tool_call": None,
            "resume_stage": stage,
            "steps": state["steps"] + 1,
        }
        update.update(await self._apply_delta(state, StateDelta(evidence=tuple(documents))))
        return update

    async def _finish_node(self, state: AnalysisState, config: RunnableConfig) -> dict:
        degraded = state["decision"].degraded
        await self.repository.mark_complete(
            state["request"].analysis_id,
            degraded,
            forced_stages=state["forced_stages"],
            steps=state["steps"],
        )
        await _emit(config, "complete", degraded=degraded, steps=state["steps"])
        return {"stage": Stage.COMPLETE, "degraded": degraded}

    # ------------------------------------------------------------------
    # Write-through merge
    # ------------------------------------------------------------------

    async def _apply_delta(self, state: AnalysisState, delta: StateDelta) -> dict:
        """Persist the delta's records, then return the matching state update."""
        analysis_id = state["request"].analysis_id
        update: dict = {}

        if delta.evidence:
            seen = {_evidence_key(doc) for doc in state["evidence"]}
            fresh = []
            for doc in delta.evidence:
                key = _evidence_key(doc)
                if key not in seen:
                    seen.add(key)
                    fresh.append(doc)
            if fresh:
                await self.repository.save_evidence(analysis_id, fresh)
                update["evidence"] = [*state["evidence"], *fresh]

        if delta.skill_gaps is not None:
            await self.repository.save_skill_gaps(analysis_id, delta.skill_gaps)
            update["skill_gaps"] = list(delta.skill_gaps)

        if delta.insights is not None:
            await self.repository.save_insight(analysis_id, delta.insights)
            update["insights"] = delta.insights

        if delta.plan is not None:
            await self.repository.save_plan(analysis_id, delta.plan)
            update["plan"] = delta.plan

        return update


def _configurable(config: RunnableConfig | None) -> dict:
    return (config or {}).get("configurable") or {}


async def _emit(config: RunnableConfig, event: str, **payload) -> None:
    on_event = _configurable(config).get("on_event")
    if on_event is None:
        return
    try:
        await on_event({"event": event, **payload})
    except Exception as exc:
        logger.error("Progress callback failed for %s: %s", event, exc)


def build_orchestrator(
    repository,
    settings: Settings | None = None,
    *,
    text_client=None,
    search_client=None,
) -> Orchestrator:
    """Wire workers, tools and clients from settings. Clients can be injected for tests."""
    settings = settings or default_settings
    search_client = search_client or SearchClient(timeout=settings.request_timeout)
    tools = build_search_tools(search_client, settings.search_max_results)
    temperatures = settings.temperatures

    def client(temperature: float):
        return text_client or TextGenerationClient(
            model=settings.model,
            temperature=temperature,
            max_tokens=settings.max_tokens,
            timeout=settings.request_timeout,
        )

    window = settings.conversation_window
    workers: dict[Stage, StageWorker] = {
        Stage.RESEARCH: ResearchWorker(
            client(temperatures.research),
            tools,
            window,
            search_client=search_client,
            max_results=settings.search_max_results,
        ),
        Stage.SKILL_ANALYSIS: SkillAnalysisWorker(client(temperatures.skill_analysis), tools, window),
        Stage.INSIGHT: InsightWorker(client(temperatures.insight), tools, window),
        Stage.PLANNING: PlanningWorker(client(temperatures.planning), tools, window),
    }
    return Orchestrator(
        workers,
        repository,
        Coordinator(settings.stage_attempt_threshold),
        max_steps=settings.max_steps,
        request_timeout=settings.request_timeout,
    )
