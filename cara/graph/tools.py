import logging

from langchain_core.tools import BaseTool, StructuredTool
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class CareerTransitionSearchInput(BaseModel):
    query: str = Field(description="What to look for, e.g. 'first year challenges'")
    current_role: str = Field(description="The role the person is leaving")
    target_role: str = Field(description="The role the person wants to move into")


class SkillGapSearchInput(BaseModel):
    skill_name: str = Field(description="Skill to research")
    target_role: str = Field(description="Role the skill is needed for")


class LearningResourceSearchInput(BaseModel):
    skill_name: str = Field(description="Skill to find learning material for")
    resource_type: str = Field(default="course", description="course, book, tutorial, project, ...")


def build_search_tools(search_client, max_results: int = 5) -> dict[str, BaseTool]:
    """Search tools bound to `search_client`, keyed by tool name."""

    async def _run(query: str) -> list[dict]:
        documents = await search_client.search(query, max_results)
        logger.info("Tool search %r returned %d documents", query, len(documents))
        return [doc.model_dump() for doc in documents]

    async def career_transition_search(query: str, current_role: str, target_role: str) -> list[dict]:
        return await _run(f"{current_role} to {target_role} career transition {query}")

    async def skill_gap_search(skill_name: str, target_role: str) -> list[dict]:
        return await _run(f"{skill_name} skills required for {target_role}")

    async def learning_resource_search(skill_name: str, resource_type: str = "course") -> list[dict]:
        return await _run(f"best {resource_type} to learn {skill_name}")

    tools = [
        StructuredTool.from_function(
            coroutine=career_transition_search,
            name="career_transition_search",
            description="Search for real stories and advice from people who made a specific career transition.",
            args_schema=CareerTransitionSearchInput,
        ),
        StructuredTool.from_function(
            coroutine=skill_gap_search,
            name="skill_gap_search",
            description="Search for how a specific skill is used and assessed in the target role.",
            args_schema=SkillGapSearchInput,
        ),
        StructuredTool.from_function(
            coroutine=learning_resource_search,
            name="learning_resource_search",
            description="Search for courses, books and projects that teach a specific skill.",
            args_schema=LearningResourceSearchInput,
        ),
    ]
    return {tool.name: tool for tool in tools}
