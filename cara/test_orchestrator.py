"""End-to-end orchestration runs against scripted model output and a real SQLite store."""
import asyncio
import json

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from cara.database import AnalysisRepository, PersistenceError
from cara.fakes import PROSE, STORIES, ScriptedTextGenerator, StaticSearchClient, stage_of
from cara.graph.agents import FAILED_STAGE_OUTPUT, InsightWorker, SkillAnalysisWorker, conversation_window
from cara.graph.graph import build_orchestrator
from cara.graph.router import PLACEHOLDER_EVIDENCE
from cara.graph.state import AnalysisRequest, Stage, ToolCall, initial_state

RESEARCH_JSON = json.dumps(
    {
        "stories": [
            {"title": "Platform lead turned PM", "body": "Led a platform launch, then moved to PM.", "url": ""},
        ]
    }
)
SKILLS_REPLY = (
    "Based on the evidence, these are the gaps:\n```json\n"
    + json.dumps(
        [
            {"skillName": "Product Strategy", "gapLevel": "High", "confidenceScore": 80,
             "mentionCount": 3, "contextSummary": "Owning a roadmap."},
            {"skillName": "User Research", "gapLevel": "Medium", "confidenceScore": 60,
             "mentionCount": 2, "contextSummary": "Talking to customers."},
        ]
    )
    + "\n```"
)
INSIGHT_JSON = json.dumps(
    {
        "keyObservations": ["Internal transfers are the most common path"],
        "commonChallenges": ["Letting go of hands-on coding"],
        "successRate": 65,
        "timeframe": "6-12 months",
    }
)
PLAN_JSON = json.dumps(
    {
        "milestones": [
            {"title": "Learn product discovery", "priority": "High", "durationWeeks": 4, "order": 1,
             "resources": [{"title": "Inspired", "url": "https://example.com/inspired", "kind": "book"}]},
            {"title": "Shadow a PM", "priority": "Medium", "durationWeeks": 6, "order": 2},
        ]
    }
)

WELL_FORMED = {
    Stage.RESEARCH: RESEARCH_JSON,
    Stage.SKILL_ANALYSIS: SKILLS_REPLY,
    Stage.INSIGHT: INSIGHT_JSON,
    Stage.PLANNING: PLAN_JSON,
}


def request(analysis_id: str = "analysis-1") -> AnalysisRequest:
    return AnalysisRequest(
        source_role="Backend Engineer",
        target_role="Product Manager",
        known_skills=frozenset({"Python", "SQL"}),
        analysis_id=analysis_id,
    )


class RecordingRepository(AnalysisRepository):
    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.calls: list[str] = []

    async def clear_analysis(self, analysis_id):
        self.calls.append("clear_analysis")
        await super().clear_analysis(analysis_id)

    async def start_analysis(self, request):
        self.calls.append("start_analysis")
        await super().start_analysis(request)

    async def save_evidence(self, analysis_id, documents):
        self.calls.append("save_evidence")
        await super().save_evidence(analysis_id, documents)

    async def save_skill_gaps(self, analysis_id, skill_gaps):
        self.calls.append("save_skill_gaps")
        await super().save_skill_gaps(analysis_id, skill_gaps)


def orchestrator_for(repository, settings, scripts, documents=STORIES):
    text_client = ScriptedTextGenerator(scripts)
    search_client = StaticSearchClient(documents)
    orchestrator = build_orchestrator(
        repository, settings, text_client=text_client, search_client=search_client
    )
    return orchestrator, text_client, search_client


def test_well_formed_run_completes(repository, test_settings):
    orchestrator, text_client, search_client = orchestrator_for(repository, test_settings, WELL_FORMED)

    result = asyncio.run(orchestrator.run(request()))

    assert not result.degraded
    assert result.forced_stages == ()
    assert [g.skill_name for g in result.skill_gaps] == ["Product Strategy", "User Research"]
    assert result.insights.success_rate == 65
    assert [m.order for m in result.plan.milestones] == [1, 2]
    assert result.steps == 4
    # Fallback search documents plus the story from the research output
    assert len(result.evidence) == len(STORIES) + 1
    assert search_client.queries == ["Backend Engineer to Product Manager transition stories"]

    stored = asyncio.run(repository.load_result("analysis-1"))
    assert stored.skill_gaps == result.skill_gaps
    assert stored.insights == result.insights
    assert stored.plan == result.plan
    assert not stored.degraded


def test_unparsable_skill_analysis_is_forced_past(repository, test_settings):
    scripts = {**WELL_FORMED, Stage.SKILL_ANALYSIS: PROSE}
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, scripts)

    result = asyncio.run(orchestrator.run(request()))

    assert len(text_client.calls_for(Stage.SKILL_ANALYSIS)) == test_settings.stage_attempt_threshold
    assert result.forced_stages == (Stage.SKILL_ANALYSIS,)
    assert result.skill_gaps == ()
    assert result.insights is not None
    assert result.plan is not None
    assert not result.degraded


def test_step_cap_returns_degraded_result(repository, test_settings):
    settings = test_settings.model_copy(update={"max_steps": 10})
    orchestrator, _, _ = orchestrator_for(repository, settings, {}, documents=[])

    result = asyncio.run(orchestrator.run(request()))

    assert result.degraded
    assert result.steps == 10
    assert result.skill_gaps == ()
    assert result.insights is None
    assert result.plan is None
    assert [doc.body for doc in result.evidence] == [PLACEHOLDER_EVIDENCE]
    assert asyncio.run(repository.load_result("analysis-1")).degraded


def test_rerun_with_same_id_replaces_previous_data(session_factory, repository, test_settings):
    recording = RecordingRepository(session_factory)
    first, _, _ = orchestrator_for(recording, test_settings, WELL_FORMED)
    asyncio.run(first.run(request("shared")))

    second_skills = "```json\n" + json.dumps([{"skillName": "Pricing"}]) + "\n```"
    second_stories = [STORIES[0].model_copy(update={"url": "https://example.com/other"})]
    second, _, _ = orchestrator_for(
        recording, test_settings, {**WELL_FORMED, Stage.SKILL_ANALYSIS: second_skills}, second_stories
    )
    recording.calls.clear()
    asyncio.run(second.run(request("shared")))

    assert recording.calls[:2] == ["clear_analysis", "start_analysis"]
    stored = asyncio.run(repository.load_result("shared"))
    assert [g.skill_name for g in stored.skill_gaps] == ["Pricing"]
    assert "https://example.com/story-1" not in {doc.url for doc in stored.evidence}
    assert len(stored.plan.milestones) == 2


def test_tool_round_trip_does_not_consume_attempts(repository, test_settings):
    call = ToolCall(
        id="toolu_1",
        name="career_transition_search",
        arguments={"query": "first year", "current_role": "Backend Engineer", "target_role": "Product Manager"},
    )
    scripts = {**WELL_FORMED, Stage.RESEARCH: [call, RESEARCH_JSON]}
    orchestrator, text_client, search_client = orchestrator_for(repository, test_settings, scripts)

    result = asyncio.run(orchestrator.run(request()))

    assert not result.degraded
    # invoke -> tool -> resume, then one step per remaining stage
    assert result.steps == 6
    assert len(search_client.queries) == 2
    assert "first year" in search_client.queries[1]

    resumed = text_client.calls_for(Stage.RESEARCH)[1]
    assert isinstance(resumed[-1], ToolMessage)
    assert resumed[-1].tool_call_id == "toolu_1"


def test_endless_tool_calls_stop_at_step_cap_without_forcing(repository, test_settings):
    call = ToolCall(id="toolu_x", name="career_transition_search",
                    arguments={"query": "q", "current_role": "a", "target_role": "b"})
    settings = test_settings.model_copy(update={"max_steps": 12, "stage_attempt_threshold": 2})
    orchestrator, _, _ = orchestrator_for(repository, settings, {Stage.RESEARCH: call}, documents=[])

    result = asyncio.run(orchestrator.run(request()))

    assert result.degraded
    assert result.steps == 12
    assert result.forced_stages == ()


def test_client_errors_become_failed_stage_output(repository, test_settings):
    scripts = {**WELL_FORMED, Stage.INSIGHT: RuntimeError("connection reset")}
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, scripts)

    result = asyncio.run(orchestrator.run(request()))

    assert result.forced_stages == (Stage.INSIGHT,)
    assert result.insights is None
    assert result.plan is not None
    assert not result.degraded


def test_worker_returns_sentinel_on_error():
    worker = SkillAnalysisWorker(ScriptedTextGenerator({Stage.SKILL_ANALYSIS: TimeoutError()}))
    state = initial_state(request(), [SystemMessage(content=worker.system_prompt), HumanMessage(content="go")])

    output = asyncio.run(worker.run(state))

    assert output.failed
    assert output.raw_output == FAILED_STAGE_OUTPUT
    assert output.tool_call is None
    assert output.delta.is_empty()


def test_persistence_failure_propagates(session_factory, test_settings):
    class BrokenRepository(AnalysisRepository):
        async def save_skill_gaps(self, analysis_id, skill_gaps):
            raise PersistenceError("disk full")

    broken = BrokenRepository(session_factory)
    orchestrator, _, _ = orchestrator_for(broken, test_settings, WELL_FORMED)

    with pytest.raises(PersistenceError):
        asyncio.run(orchestrator.run(request()))


def test_cancellation_completes_degraded(repository, test_settings):
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, WELL_FORMED)
    events = []

    async def scenario():
        cancel = asyncio.Event()

        async def on_event(event):
            events.append(event)
            if event["event"] == "stage_finished":
                cancel.set()

        return await orchestrator.run(request(), cancel_event=cancel, on_event=on_event)

    result = asyncio.run(scenario())

    assert result.degraded
    assert result.steps == 1
    assert len(result.evidence) > 0
    assert events[-1]["event"] == "complete"
    assert len(text_client.calls) == 1


def test_conversation_keeps_one_system_message(repository, test_settings):
    scripts = {**WELL_FORMED, Stage.SKILL_ANALYSIS: [PROSE, SKILLS_REPLY]}
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, scripts)

    asyncio.run(orchestrator.run(request()))

    expected = [Stage.RESEARCH, Stage.SKILL_ANALYSIS, Stage.SKILL_ANALYSIS, Stage.INSIGHT, Stage.PLANNING]
    assert [stage for stage, _, _ in text_client.calls] == expected
    for stage, conversation, _ in text_client.calls:
        assert isinstance(conversation[0], SystemMessage)
        assert stage_of(conversation[0]) is stage
        assert sum(isinstance(m, SystemMessage) for m in conversation) == 1
        # System message plus a bounded window plus the new instruction
        assert len(conversation) <= 1 + test_settings.conversation_window + 2


def test_planning_prompt_embeds_gaps_not_evidence(repository, test_settings):
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, WELL_FORMED)
    asyncio.run(orchestrator.run(request()))

    instruction = text_client.calls_for(Stage.PLANNING)[0][-1].content
    assert "Product Strategy" in instruction
    assert STORIES[0].body not in instruction


def test_tools_are_bound_per_stage(repository, test_settings):
    orchestrator, text_client, _ = orchestrator_for(repository, test_settings, WELL_FORMED)
    asyncio.run(orchestrator.run(request()))

    bound = {stage: [tool.name for tool in tools] for stage, _, tools in text_client.calls}
    assert bound == {
        Stage.RESEARCH: ["career_transition_search"],
        Stage.SKILL_ANALYSIS: ["skill_gap_search"],
        Stage.INSIGHT: [],
        Stage.PLANNING: ["learning_resource_search"],
    }


def test_independent_runs_execute_concurrently(repository, test_settings):
    orchestrator, _, _ = orchestrator_for(repository, test_settings, WELL_FORMED)

    async def scenario():
        return await asyncio.gather(orchestrator.run(request("run-a")), orchestrator.run(request("run-b")))

    first, second = asyncio.run(scenario())

    assert first.analysis_id == "run-a" and second.analysis_id == "run-b"
    assert not first.degraded and not second.degraded
    assert asyncio.run(repository.load_result("run-a")).plan is not None
    assert asyncio.run(repository.load_result("run-b")).plan is not None


def test_conversation_window_keeps_tool_pairs():
    messages = [
        SystemMessage(content="s"),
        HumanMessage(content="h1"),
        HumanMessage(content="h2"),
        ToolMessage(content="[]", tool_call_id="t"),
    ]
    window = conversation_window(messages, 1)
    assert window[0].content == "s"
    assert [m.content for m in window[1:]] == ["h2", "[]"]


def test_run_finishing_on_the_last_allowed_step_is_not_degraded(repository, test_settings):
    settings = test_settings.model_copy(update={"max_steps": 4})
    orchestrator, _, _ = orchestrator_for(repository, settings, WELL_FORMED)

    result = asyncio.run(orchestrator.run(request()))

    assert result.steps == 4
    assert result.plan is not None
    assert not result.degraded
    assert not asyncio.run(repository.load_result("analysis-1")).degraded


def test_failing_fallback_search_does_not_abort_the_run(repository, test_settings):
    class FailingSearchClient(StaticSearchClient):
        async def search(self, query, max_results=5):
            raise ConnectionError("search down")

    orchestrator = build_orchestrator(
        repository,
        test_settings,
        text_client=ScriptedTextGenerator(WELL_FORMED),
        search_client=FailingSearchClient([]),
    )

    result = asyncio.run(orchestrator.run(request()))

    assert not result.degraded
    assert [doc.title for doc in result.evidence] == ["Platform lead turned PM"]
    assert result.plan is not None


def test_tool_call_from_a_worker_without_tools_is_ignored():
    call = ToolCall(id="toolu_2", name="skill_gap_search", arguments={"query": "q"})
    worker = InsightWorker(ScriptedTextGenerator({Stage.INSIGHT: call}))
    state = initial_state(request(), [SystemMessage(content=worker.system_prompt), HumanMessage(content="go")])

    output = asyncio.run(worker.run(state))

    assert output.tool_call is None
    assert not output.failed
    reply = output.delta.messages[-1]
    assert isinstance(reply, AIMessage)
    assert not reply.tool_calls


def test_stage_attempts_restart_after_another_stage_runs(repository, test_settings):
    # Research yields only skill gaps and hands off to insight, which sends it back
    research_first = (
        "```json\n"
        + json.dumps({"skillGaps": [{"skillName": "Roadmapping", "gapLevel": "High"}]})
        + "\n```\nHanding over to the insight agent."
    )
    scripts = {
        **WELL_FORMED,
        Stage.RESEARCH: [research_first, PROSE],
        Stage.INSIGHT: "Not enough stories yet, back to the research agent.",
    }
    settings = test_settings.model_copy(update={"stage_attempt_threshold": 2})
    orchestrator, text_client, _ = orchestrator_for(repository, settings, scripts, documents=[])

    result = asyncio.run(orchestrator.run(request()))

    stages = [stage for stage, _, _ in text_client.calls]
    assert stages[:4] == [Stage.RESEARCH, Stage.INSIGHT, Stage.RESEARCH, Stage.RESEARCH]
    assert len(text_client.calls_for(Stage.RESEARCH)) == 3
    assert result.forced_stages == (Stage.RESEARCH, Stage.INSIGHT)
    assert [g.skill_name for g in result.skill_gaps] == ["Roadmapping"]
    assert result.plan is not None
