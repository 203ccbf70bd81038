"""Similarity analysis API router.

Endpoints:
- POST   /analysis                            -- start a background analysis run
- GET    /analysis/state                      -- current run state snapshot
- GET    /analysis/progress                   -- SSE stream of run progress
- POST   /analysis/cancel                     -- cancel the run in flight
- DELETE /analysis                            -- clear results back to idle
- GET    /analysis/groups                     -- groups from the last run
- GET    /analysis/groups/by-photo/{photo_id} -- the group containing a photo
- GET    /analysis/similarity                 -- recorded score for a photo pair
"""

from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sse_starlette.sse import EventSourceResponse

from photosieve.dependencies import get_similarity_service
from photosieve.models.pipeline import (
    AnalyzeRequest,
    AnalyzeResponse,
    PipelineRunState,
    RunProgress,
)
from photosieve.models.similarity import SimilarityGroup, SimilarityScore
from photosieve.services.similarity_service import (
    ALREADY_RUNNING_MESSAGE,
    MIN_PHOTOS_MESSAGE,
    AnalysisInProgressError,
    SimilarityService,
)

router = APIRouter(prefix="/analysis", tags=["analysis"])


@router.post("", status_code=202, response_model=AnalyzeResponse)
async def start_analysis(
    request: AnalyzeRequest,
    background_tasks: BackgroundTasks,
    service: SimilarityService = Depends(get_similarity_service),
) -> AnalyzeResponse:
    """Trigger a background analysis run.

    The run is claimed before the response is sent, so a second request
    arriving before the background task starts still gets 409.  Returns
    202 Accepted immediately.  Monitor progress via the
    ``/analysis/progress`` SSE endpoint.
    """
    if len(request.photos) < 2:
        raise HTTPException(status_code=422, detail=MIN_PHOTOS_MESSAGE)

    try:
        run = service.start(request.photos, request.options)
    except AnalysisInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(service.execute, run)

    return AnalyzeResponse(
        status="started",
        message="Similarity analysis started",
        photo_count=len(request.photos),
    )


@router.get("/state", response_model=PipelineRunState)
def get_state(
    service: SimilarityService = Depends(get_similarity_service),
) -> PipelineRunState:
    return service.state


def _progress(service: SimilarityService) -> RunProgress:
    state = service.state
    return RunProgress(
        run_id=state.run_id,
        status=state.status,
        progress=state.progress,
        error=state.error,
        groups_found=len(state.all_groups),
    )


@router.get("/progress")
async def analysis_progress(
    service: SimilarityService = Depends(get_similarity_service),
) -> EventSourceResponse:
    """Stream run progress via Server-Sent Events.

    Yields progress events every 0.5s until no run is in flight, then
    closes the connection.
    """

    async def event_generator():
        while True:
            progress = _progress(service)
            yield {
                "event": "progress",
                "data": json.dumps(progress.model_dump()),
            }
            if progress.status != "running":
                break
            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())


@router.post("/cancel")
def cancel_analysis(
    service: SimilarityService = Depends(get_similarity_service),
) -> dict:
    if not service.cancel():
        raise HTTPException(status_code=409, detail="No analysis is running")
    return {"status": "cancelling", "message": "Cancellation requested"}


@router.delete("", status_code=204)
def clear_analysis(
    service: SimilarityService = Depends(get_similarity_service),
) -> None:
    """Reset the analysis state to idle.  Refused while a run is in flight."""
    if not service.clear():
        raise HTTPException(status_code=409, detail=ALREADY_RUNNING_MESSAGE)


@router.get("/groups", response_model=list[SimilarityGroup])
def list_groups(
    filtered: bool = Query(
        True, description="Only groups at or above the confidence threshold"
    ),
    service: SimilarityService = Depends(get_similarity_service),
) -> list[SimilarityGroup]:
    state = service.state
    return state.filtered_groups if filtered else state.all_groups


@router.get("/groups/by-photo/{photo_id}", response_model=SimilarityGroup)
def get_group_for_photo(
    photo_id: str,
    service: SimilarityService = Depends(get_similarity_service),
) -> SimilarityGroup:
    group = service.get_group_for_photo(photo_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Photo is not in any group")
    return group


@router.get("/similarity", response_model=SimilarityScore)
def get_similarity(
    photo_a: str = Query(..., description="First photo id"),
    photo_b: str = Query(..., description="Second photo id"),
    service: SimilarityService = Depends(get_similarity_service),
) -> SimilarityScore:
    """Return the score recorded for a pair in the last completed run."""
    score = service.get_similarity_score(photo_a, photo_b)
    if score is None:
        raise HTTPException(status_code=404, detail="No score recorded for this pair")
    return score
