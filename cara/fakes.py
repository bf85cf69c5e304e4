"""In-memory stand-ins for the model and search clients, used by the tests."""
from langchain_core.messages import AIMessage, SystemMessage

from cara.graph.state import Document, Stage, ToolCall, message_text
from cara.services.text_generation import Completion

_AGENT_NAMES = {
    "Research Agent": Stage.RESEARCH,
    "Skill Analysis Agent": Stage.SKILL_ANALYSIS,
    "Insight Agent": Stage.INSIGHT,
    "Planning Agent": Stage.PLANNING,
}

PROSE = "Happy to help with that. Let me think about the bigger picture first."


def stage_of(system: SystemMessage) -> Stage | None:
    text = message_text(system)
    for name, stage in _AGENT_NAMES.items():
        if text.startswith(f"You are the {name}"):
            return stage
    return None


class ScriptedTextGenerator:
    """
    Fake TextGenerationClient answering per stage (read from the system prompt).

    A script is a single reply or a list of replies; the last reply of a list
    repeats once the others are used up. A reply is text, a ToolCall, or an
    exception to raise.
    """

    def __init__(self, scripts: dict | None = None, default=PROSE) -> None:
        self.scripts = {stage: list(s) if isinstance(s, list) else s for stage, s in (scripts or {}).items()}
        self.default = default
        self.calls: list[tuple[Stage | None, list, list]] = []

    def calls_for(self, stage: Stage) -> list:
        return [conversation for s, conversation, _ in self.calls if s is stage]

    async def send(self, conversation, tools=None) -> Completion:
        stage = stage_of(conversation[0])
        self.calls.append((stage, list(conversation), list(tools or [])))

        script = self.scripts.get(stage, self.default)
        if isinstance(script, list):
            reply = script.pop(0) if len(script) > 1 else script[0]
        else:
            reply = script

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, ToolCall):
            message = AIMessage(
                content="",
                tool_calls=[{"id": reply.id, "name": reply.name, "args": reply.arguments}],
            )
            return Completion(content="", tool_call=reply, message=message)
        return Completion(content=reply, tool_call=None, message=AIMessage(content=reply))


class StaticSearchClient:
    def __init__(self, documents=()) -> None:
        self.documents = list(documents)
        self.queries: list[str] = []

    async def search(self, query: str, max_results: int = 5) -> list[Document]:
        self.queries.append(query)
        return self.documents[:max_results]


STORIES = [
    Document(
        title="From APIs to roadmaps",
        body="A backend engineer moved into product management after leading an internal platform launch.",
        url="https://example.com/story-1",
    ),
    Document(
        title="Learning to say no",
        body="Prioritisation was the hardest skill to build; stakeholder interviews helped most.",
        url="https://example.com/story-2",
    ),
    Document(
        title="Shadowing the PM team",
        body="Six months of shadowing product reviews made the move possible within the same company.",
        url="https://example.com/story-3",
    ),
]
