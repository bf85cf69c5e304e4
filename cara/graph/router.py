import logging
from enum import Enum

from langchain_core.messages import AIMessage
from pydantic import BaseModel, ConfigDict

from cara.graph.state import (
    EMPTY_DELTA,
    WORK_STAGES,
    AnalysisState,
    Document,
    Milestone,
    Plan,
    Priority,
    Resource,
    Stage,
    StateDelta,
    message_text,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_EVIDENCE = "Limited information available for this career transition."


class RoutingHint(str, Enum):
    RESEARCH = "research"
    SKILL_ANALYSIS = "skill_analysis"
    INSIGHT = "insight"
    PLANNING = "planning"
    COMPLETE = "complete"

    @property
    def stage(self) -> Stage:
        return Stage(self.value)


# Checked in this order; phrases are matched case-insensitively as substrings
_HINT_SYNONYMS: tuple[tuple[RoutingHint, tuple[str, ...]], ...] = (
    (RoutingHint.RESEARCH, ("researchagent", "research agent", "research stage", "need more research")),
    (RoutingHint.SKILL_ANALYSIS, ("skillanalysisagent", "skill analysis", "skill gap", "analyze skills")),
    (RoutingHint.INSIGHT, ("insightagent", "insight agent", "insight stage", "analyze insights", "extract insights")),
    (RoutingHint.PLANNING, ("planningagent", "planning agent", "ready for planning", "development plan", "create plan")),
    (RoutingHint.COMPLETE, ("analysis is complete", "analysis complete")),
)


def classify_hints(text: str) -> list[RoutingHint]:
    """Every routing hint mentioned in `text`, in table order."""
    lowered = (text or "").lower()
    return [hint for hint, phrases in _HINT_SYNONYMS if any(p in lowered for p in phrases)]


def classify_hint(text: str) -> RoutingHint | None:
    hints = classify_hints(text)
    return hints[0] if hints else None


class Action(str, Enum):
    INVOKE = "invoke"
    TOOL_CALL = "tool_call"
    COMPLETE = "complete"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    action: Action
    stage: Stage | None = None
    resume: bool = False
    forced_stage: Stage | None = None
    seed: StateDelta = EMPTY_DELTA
    degraded: bool = False
    reason: str = ""


def _latest_assistant_text(state: AnalysisState) -> str:
    for message in reversed(state["conversation"]):
        if isinstance(message, AIMessage):
            return message_text(message)
    return ""


def plan_from_skill_gaps(skill_gaps) -> Plan | None:
    """Minimal plan with one milestone per top skill gap (up to four)."""
    milestones = []
    for order, gap in enumerate(list(skill_gaps or [])[:4], start=1):
        weeks = {"High": 6, "Medium": 4}.get(gap.gap_level.value, 2)
        milestones.append(
            Milestone(
                title=f"Develop {gap.skill_name}",
                description=gap.context_summary
                or f"Build your {gap.skill_name} skills to the required level",
                priority=Priority(gap.gap_level.value),
                duration_weeks=weeks,
                order=order,
                resources=(
                    Resource(title=f"Learn {gap.skill_name}", url="https://www.coursera.org/", kind="website"),
                ),
            )
        )
    return Plan(milestones=tuple(milestones)) if milestones else None


class Coordinator:
    """Decides the next action from shared state. Holds no per-run state."""

    def __init__(self, attempt_threshold: int = 5) -> None:
        if attempt_threshold < 1:
            raise ValueError("attempt_threshold must be at least 1")
        self.attempt_threshold = attempt_threshold

    @staticmethod
    def has_data(state: AnalysisState, stage: Stage) -> bool:
        if stage is Stage.RESEARCH:
            return bool(state["evidence"])
        if stage is Stage.SKILL_ANALYSIS:
            return bool(state["skill_gaps"])
        if stage is Stage.INSIGHT:
            return state["insights"] is not None
        if stage is Stage.PLANNING:
            return state["plan"] is not None
        return False

    def is_settled(self, state: AnalysisState, stage: Stage) -> bool:
        return self.has_data(state, stage) or stage in state["forced_stages"]

    def prerequisites_met(self, state: AnalysisState, stage: Stage) -> bool:
        index = WORK_STAGES.index(stage)
        return index == 0 or self.is_settled(state, WORK_STAGES[index - 1])

    def is_complete(self, state: AnalysisState) -> bool:
        return all(self.is_settled(state, stage) for stage in WORK_STAGES)

    def decide(self, state: AnalysisState) -> Decision:
        if state.get("pending_tool_call") is not None:
            return Decision(action=Action.TOOL_CALL, stage=state["stage"], reason="tool call pending")

        resume = state.get("resume_stage")
        if resume is not None:
            return Decision(action=Action.INVOKE, stage=resume, resume=True, reason="tool result returned")

        current = state["stage"]
        if (
            current in WORK_STAGES
            and not self.is_settled(state, current)
            and state["stage_attempts"].get(current, 0) >= self.attempt_threshold
        ):
            return self._force_advance(state, current)

        return self._route(state)

    def _placeholder(self, state: AnalysisState, stage: Stage) -> StateDelta:
        if stage is Stage.RESEARCH:
            return StateDelta(
                evidence=(Document(title="Placeholder", body=PLACEHOLDER_EVIDENCE, url=""),)
            )
        if stage is Stage.PLANNING:
            plan = plan_from_skill_gaps(state["skill_gaps"])
            if plan is not None:
                return StateDelta(plan=plan)
        return EMPTY_DELTA

    def _force_advance(self, state: AnalysisState, stage: Stage) -> Decision:
        seed = self._placeholder(state, stage)
        logger.warning(
            "Stage %s produced no data after %d attempts; forcing progression",
            stage.value,
            state["stage_attempts"].get(stage, 0),
        )
        projected: AnalysisState = {
            **state,
            "evidence": [*state["evidence"], *seed.evidence],
            "plan": seed.plan if seed.plan is not None else state["plan"],
            "forced_stages": [*state["forced_stages"], stage],
        }
        decision = self._route(projected)
        return decision.model_copy(
            update={"forced_stage": stage, "seed": seed, "reason": f"forced past {stage.value}"}
        )

    def _route(self, state: AnalysisState) -> Decision:
        unsettled = [stage for stage in WORK_STAGES if not self.is_settled(state, stage)]
        if not unsettled:
            return Decision(action=Action.COMPLETE, reason="all stages settled")

        for hint in classify_hints(_latest_assistant_text(state)):
            if hint is RoutingHint.COMPLETE:
                logger.info("Ignoring completion hint; %s still unsettled", unsettled[0].value)
                continue
            stage = hint.stage
            if stage in unsettled and self.prerequisites_met(state, stage):
                return Decision(action=Action.INVOKE, stage=stage, reason=f"hint: {hint.value}")

        return Decision(action=Action.INVOKE, stage=unsettled[0], reason="default order")
