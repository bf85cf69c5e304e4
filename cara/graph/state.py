import uuid
from enum import Enum
from typing import Any, TypedDict

from langchain_core.messages import BaseMessage
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class Stage(str, Enum):
    INIT = "init"
    RESEARCH = "research"
    SKILL_ANALYSIS = "skill_analysis"
    INSIGHT = "insight"
    PLANNING = "planning"
    COMPLETE = "complete"


# Stages that produce data, in pipeline order
WORK_STAGES: tuple[Stage, ...] = (
    Stage.RESEARCH,
    Stage.SKILL_ANALYSIS,
    Stage.INSIGHT,
    Stage.PLANNING,
)


class GapLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class Priority(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


class _Record(BaseModel):
    """Immutable record, serialised camelCase on the wire."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class Document(_Record):
    title: str = ""
    body: str
    url: str = ""


class SkillGap(_Record):
    skill_name: str = Field(min_length=1)
    gap_level: GapLevel = GapLevel.MEDIUM
    confidence_score: int = Field(default=70, ge=0, le=100)
    mention_count: int = Field(default=1, ge=0)
    context_summary: str = ""


class Insight(_Record):
    key_observations: tuple[str, ...] = ()
    common_challenges: tuple[str, ...] = ()
    success_rate: int | None = Field(default=None, ge=0, le=100)
    timeframe: str | None = None


class Resource(_Record):
    title: str
    url: str = ""
    kind: str = "website"


class Milestone(_Record):
    title: str = Field(min_length=1)
    description: str = ""
    priority: Priority = Priority.MEDIUM
    duration_weeks: int = Field(default=2, gt=0)
    order: int = Field(ge=1)
    resources: tuple[Resource, ...] = Field(min_length=1)


class Plan(_Record):
    milestones: tuple[Milestone, ...] = Field(min_length=1)

    @model_validator(mode="after")
    def _orders_are_contiguous(self) -> "Plan":
        orders = [m.order for m in self.milestones]
        if orders != list(range(1, len(orders) + 1)):
            raise ValueError(f"milestone order must be 1..{len(orders)}, got {orders}")
        return self


class AnalysisRequest(_Record):
    source_role: str = Field(min_length=1)
    target_role: str = Field(min_length=1)
    known_skills: frozenset[str] = frozenset()
    analysis_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @field_validator("source_role", "target_role")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("role must not be blank")
        return value


class ToolCall(_Record):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class StateDelta(BaseModel):
    """Proposed change to shared state. Only the orchestrator applies it."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    messages: tuple[BaseMessage, ...] = ()
    evidence: tuple[Document, ...] = ()
    skill_gaps: tuple[SkillGap, ...] | None = None
    insights: Insight | None = None
    plan: Plan | None = None

    def is_empty(self) -> bool:
        # Messages alone carry no analysis data
        return (
            not self.evidence
            and self.skill_gaps is None
            and self.insights is None
            and self.plan is None
        )

    def combine(self, other: "StateDelta") -> "StateDelta":
        return StateDelta(
            messages=self.messages + other.messages,
            evidence=self.evidence + other.evidence,
            skill_gaps=other.skill_gaps if other.skill_gaps is not None else self.skill_gaps,
            insights=other.insights if other.insights is not None else self.insights,
            plan=other.plan if other.plan is not None else self.plan,
        )


EMPTY_DELTA = StateDelta()


class AnalysisState(TypedDict):
    request: AnalysisRequest
    # Index 0 is always the single system message for the active role
    conversation: list[BaseMessage]
    stage: Stage
    evidence: list[Document]
    skill_gaps: list[SkillGap] | None
    insights: Insight | None
    plan: Plan | None
    stage_attempts: dict[Stage, int]
    forced_stages: list[Stage]
    pending_tool_call: ToolCall | None
    resume_stage: Stage | None
    decision: Any
    steps: int
    degraded: bool


class AnalysisResult(_Record):
    analysis_id: str
    skill_gaps: tuple[SkillGap, ...] = ()
    insights: Insight | None = None
    plan: Plan | None = None
    evidence: tuple[Document, ...] = ()
    degraded: bool = False
    forced_stages: tuple[Stage, ...] = ()
    steps: int = 0


def initial_state(request: AnalysisRequest, conversation: list[BaseMessage]) -> AnalysisState:
    return {
        "request": request,
        "conversation": conversation,
        "stage": Stage.INIT,
        "evidence": [],
        "skill_gaps": None,
        "insights": None,
        "plan": None,
        "stage_attempts": {stage: 0 for stage in WORK_STAGES},
        "forced_stages": [],
        "pending_tool_call": None,
        "resume_stage": None,
        "decision": None,
        "steps": 0,
        "degraded": False,
    }


def message_text(message: BaseMessage) -> str:
    """Flatten message content, which may be a list of content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)
