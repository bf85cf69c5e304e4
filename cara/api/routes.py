import logging

from fastapi import APIRouter, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from cara.database import AnalysisRepository, PersistenceError
from cara.graph.graph import Orchestrator, build_orchestrator
from cara.graph.state import AnalysisRequest

logger = logging.getLogger(__name__)

router = APIRouter()


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    source_role: str = Field(min_length=1)
    target_role: str = Field(min_length=1)
    known_skills: list[str] = []
    analysis_id: str | None = None


# ---------------------------------------------------------------------------
# Dependencies (created lazily, cached on app.state)
# ---------------------------------------------------------------------------

def get_repository(request: Request) -> AnalysisRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        repository = request.app.state.repository = AnalysisRepository()
    return repository


def get_orchestrator(
    request: Request, repository: AnalysisRepository = Depends(get_repository)
) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = request.app.state.orchestrator = build_orchestrator(repository)
    return orchestrator


# ---------------------------------------------------------------------------
# POST /analyses
# ---------------------------------------------------------------------------

@router.post("/analyses")
async def create_analysis(
    body: AnalyzeRequest,
    request: Request,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    fields = {
        "source_role": body.source_role,
        "target_role": body.target_role,
        "known_skills": frozenset(s.strip() for s in body.known_skills if s.strip()),
    }
    if body.analysis_id:
        fields["analysis_id"] = body.analysis_id
    try:
        analysis_request = AnalysisRequest(**fields)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    analysis_id = analysis_request.analysis_id
    ws_manager = request.app.state.ws_manager

    async def on_event(event: dict) -> None:
        await ws_manager.broadcast(analysis_id, {"analysisId": analysis_id, **event})

    try:
        result = await orchestrator.run(analysis_request, on_event=on_event)
    except PersistenceError as exc:
        logger.error("Analysis %s aborted, storage unavailable: %s", analysis_id, exc)
        raise HTTPException(status_code=503, detail="Analysis storage is unavailable") from exc

    return result.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# GET /analyses/{analysis_id}
# ---------------------------------------------------------------------------

@router.get("/analyses/{analysis_id}")
async def get_analysis(analysis_id: str, repository: AnalysisRepository = Depends(get_repository)):
    try:
        result = await repository.load_result(analysis_id)
    except PersistenceError as exc:
        logger.error("Could not load analysis %s: %s", analysis_id, exc)
        raise HTTPException(status_code=503, detail="Analysis storage is unavailable") from exc
    if result is None:
        raise HTTPException(status_code=404, detail="Analysis not found")
    return result.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# WS /ws/{analysis_id}
# ---------------------------------------------------------------------------

@router.websocket("/ws/{analysis_id}")
async def websocket_endpoint(analysis_id: str, websocket: WebSocket):
    ws_manager = websocket.app.state.ws_manager
    await ws_manager.connect(analysis_id, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        ws_manager.disconnect(analysis_id, websocket)
