import datetime
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, delete, select, update
from sqlalchemy.dialects.sqlite import JSON
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from cara.config import settings
from cara.graph.state import (
    AnalysisRequest,
    AnalysisResult,
    Document,
    Insight,
    Milestone,
    Plan,
    Resource,
    SkillGap,
    Stage,
)

DATABASE_URL = settings.database_url


def make_engine(url: str = DATABASE_URL, **kwargs) -> AsyncEngine:
    return create_async_engine(url, echo=False, **kwargs)


engine = make_engine()
AsyncSessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    pass


class AnalysisRun(Base):
    __tablename__ = "analysis_runs"

    analysis_id: Mapped[str] = mapped_column(String, primary_key=True)
    source_role: Mapped[str] = mapped_column(String)
    target_role: Mapped[str] = mapped_column(String)
    known_skills: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String, default="running")  # running|complete
    degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    forced_stages: Mapped[list] = mapped_column(JSON, default=list)
    steps: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_now)
    completed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime, nullable=True)


class EvidenceRow(Base):
    __tablename__ = "evidence_documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    analysis_id: Mapped[str] = mapped_column(String, index=True)
    title: Mapped[str] = mapped_column(String, default="")
    body: Mapped[str] = mapped_column(Text)
    url: Mapped[str] = mapped_column(String, default="")


class SkillGapRow(Base):
    __tablename__ = "skill_gaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    analysis_id: Mapped[str] = mapped_column(String, index=True)
    skill_name: Mapped[str] = mapped_column(String)
    gap_level: Mapped[str] = mapped_column(String)  # Low|Medium|High
    confidence_score: Mapped[int] = mapped_column(Integer)
    mention_count: Mapped[int] = mapped_column(Integer)
    context_summary: Mapped[str] = mapped_column(Text, default="")


class InsightRow(Base):
    __tablename__ = "insights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    analysis_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    key_observations: Mapped[list] = mapped_column(JSON, default=list)
    common_challenges: Mapped[list] = mapped_column(JSON, default=list)
    success_rate: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeframe: Mapped[str | None] = mapped_column(String, nullable=True)


class PlanRow(Base):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    analysis_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime, default=_now)


class MilestoneRow(Base):
    __tablename__ = "milestones"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    plan_id: Mapped[int] = mapped_column(Integer, ForeignKey("plans.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str] = mapped_column(Text, default="")
    priority: Mapped[str] = mapped_column(String)  # Low|Medium|High
    duration_weeks: Mapped[int] = mapped_column(Integer)
    sort_order: Mapped[int] = mapped_column(Integer)
    progress: Mapped[int] = mapped_column(Integer, default=0)


class ResourceRow(Base):
    __tablename__ = "resources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    milestone_id: Mapped[int] = mapped_column(Integer, ForeignKey("milestones.id"), index=True)
    title: Mapped[str] = mapped_column(String)
    url: Mapped[str] = mapped_column(String, default="")
    kind: Mapped[str] = mapped_column(String, default="website")


async def create_tables(bind: AsyncEngine | None = None) -> None:
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class PersistenceError(RuntimeError):
    """The store could not be read or written. Always propagated to the caller."""


class Repository(Protocol):
    async def clear_analysis(self, analysis_id: str) -> None: ...

    async def start_analysis(self, request: AnalysisRequest) -> None: ...

    async def save_evidence(self, analysis_id: str, documents: Iterable[Document]) -> None: ...

    async def save_skill_gaps(self, analysis_id: str, skill_gaps: Iterable[SkillGap]) -> None: ...

    async def save_insight(self, analysis_id: str, insight: Insight) -> None: ...

    async def save_plan(self, analysis_id: str, plan: Plan) -> None: ...

    async def mark_complete(
        self,
        analysis_id: str,
        degraded: bool,
        forced_stages: Iterable[Stage] = (),
        steps: int = 0,
    ) -> None: ...


class AnalysisRepository:
    """SQLAlchemy-backed store. Every method runs in its own transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    @staticmethod
    async def _delete_plan(session: AsyncSession, analysis_id: str) -> None:
        plan_ids = select(PlanRow.id).where(PlanRow.analysis_id == analysis_id)
        milestone_ids = select(MilestoneRow.id).where(MilestoneRow.plan_id.in_(plan_ids))
        await session.execute(delete(ResourceRow).where(ResourceRow.milestone_id.in_(milestone_ids)))
        await session.execute(delete(MilestoneRow).where(MilestoneRow.plan_id.in_(plan_ids)))
        await session.execute(delete(PlanRow).where(PlanRow.analysis_id == analysis_id))

    async def clear_analysis(self, analysis_id: str) -> None:
        async with self._transaction() as session:
            await self._delete_plan(session, analysis_id)
            await session.execute(delete(InsightRow).where(InsightRow.analysis_id == analysis_id))
            await session.execute(delete(SkillGapRow).where(SkillGapRow.analysis_id == analysis_id))
            await session.execute(delete(EvidenceRow).where(EvidenceRow.analysis_id == analysis_id))
            await session.execute(delete(AnalysisRun).where(AnalysisRun.analysis_id == analysis_id))

    async def start_analysis(self, request: AnalysisRequest) -> None:
        async with self._transaction() as session:
            await session.merge(
                AnalysisRun(
                    analysis_id=request.analysis_id,
                    source_role=request.source_role,
                    target_role=request.target_role,
                    known_skills=sorted(request.known_skills),
                    status="running",
                    degraded=False,
                    forced_stages=[],
                    steps=0,
                )
            )

    async def save_evidence(self, analysis_id: str, documents: Iterable[Document]) -> None:
        async with self._transaction() as session:
            session.add_all(
                EvidenceRow(analysis_id=analysis_id, title=doc.title, body=doc.body, url=doc.url)
                for doc in documents
            )

    async def save_skill_gaps(self, analysis_id: str, skill_gaps: Iterable[SkillGap]) -> None:
        async with self._transaction() as session:
            await session.execute(delete(SkillGapRow).where(SkillGapRow.analysis_id == analysis_id))
            session.add_all(
                SkillGapRow(
                    analysis_id=analysis_id,
                    skill_name=gap.skill_name,
                    gap_level=gap.gap_level.value,
                    confidence_score=gap.confidence_score,
                    mention_count=gap.mention_count,
                    context_summary=gap.context_summary,
                )
                for gap in skill_gaps
            )

    async def save_insight(self, analysis_id: str, insight: Insight) -> None:
        async with self._transaction() as session:
            await session.execute(delete(InsightRow).where(InsightRow.analysis_id == analysis_id))
            session.add(
                InsightRow(
                    analysis_id=analysis_id,
                    key_observations=list(insight.key_observations),
                    common_challenges=list(insight.common_challenges),
                    success_rate=insight.success_rate,
                    timeframe=insight.timeframe,
                )
            )

    async def save_plan(self, analysis_id: str, plan: Plan) -> None:
        # Plan, milestones and resources become visible together or not at all
        async with self._transaction() as session:
            await self._delete_plan(session, analysis_id)
            plan_row = PlanRow(analysis_id=analysis_id)
            session.add(plan_row)
            await session.flush()
            for milestone in plan.milestones:
                milestone_row = MilestoneRow(
                    plan_id=plan_row.id,
                    title=milestone.title,
                    description=milestone.description,
                    priority=milestone.priority.value,
                    duration_weeks=milestone.duration_weeks,
                    sort_order=milestone.order,
                    progress=0,
                )
                session.add(milestone_row)
                await session.flush()
                session.add_all(
                    ResourceRow(milestone_id=milestone_row.id, title=r.title, url=r.url, kind=r.kind)
                    for r in milestone.resources
                )

    async def mark_complete(
        self,
        analysis_id: str,
        degraded: bool,
        forced_stages: Iterable[Stage] = (),
        steps: int = 0,
    ) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(AnalysisRun)
                .where(AnalysisRun.analysis_id == analysis_id)
                .values(
                    status="complete",
                    degraded=degraded,
                    forced_stages=[Stage(s).value for s in forced_stages],
                    steps=steps,
                    completed_at=_now(),
                )
            )

    async def load_result(self, analysis_id: str) -> AnalysisResult | None:
        async with self._transaction() as session:
            run = await session.get(AnalysisRun, analysis_id)
            if run is None:
                return None

            evidence = (
                await session.scalars(
                    select(EvidenceRow).where(EvidenceRow.analysis_id == analysis_id).order_by(EvidenceRow.id)
                )
            ).all()
            gaps = (
                await session.scalars(
                    select(SkillGapRow).where(SkillGapRow.analysis_id == analysis_id).order_by(SkillGapRow.id)
                )
            ).all()
            insight = await session.scalar(select(InsightRow).where(InsightRow.analysis_id == analysis_id))
            plan = await self._load_plan(session, analysis_id)

            return AnalysisResult(
                analysis_id=analysis_id,
                evidence=tuple(Document(title=e.title, body=e.body, url=e.url) for e in evidence),
                skill_gaps=tuple(
                    SkillGap(
                        skill_name=g.skill_name,
                        gap_level=g.gap_level,
                        confidence_score=g.confidence_score,
                        mention_count=g.mention_count,
                        context_summary=g.context_summary,
                    )
                    for g in gaps
                ),
                insights=None
                if insight is None
                else Insight(
                    key_observations=tuple(insight.key_observations),
                    common_challenges=tuple(insight.common_challenges),
                    success_rate=insight.success_rate,
                    timeframe=insight.timeframe,
                ),
                plan=plan,
                degraded=run.degraded,
                forced_stages=tuple(Stage(s) for s in run.forced_stages or []),
                steps=run.steps,
            )

    @staticmethod
    async def _load_plan(session: AsyncSession, analysis_id: str) -> Plan | None:
        plan_row = await session.scalar(select(PlanRow).where(PlanRow.analysis_id == analysis_id))
        if plan_row is None:
            return None
        milestone_rows = (
            await session.scalars(
                select(MilestoneRow).where(MilestoneRow.plan_id == plan_row.id).order_by(MilestoneRow.sort_order)
            )
        ).all()
        milestones = []
        for m in milestone_rows:
            resources = (
                await session.scalars(
                    select(ResourceRow).where(ResourceRow.milestone_id == m.id).order_by(ResourceRow.id)
                )
            ).all()
            milestones.append(
                Milestone(
                    title=m.title,
                    description=m.description,
                    priority=m.priority,
                    duration_weeks=m.duration_weeks,
                    order=m.sort_order,
                    resources=tuple(Resource(title=r.title, url=r.url, kind=r.kind) for r in resources),
                )
            )
        return Plan(milestones=tuple(milestones)) if milestones else None
