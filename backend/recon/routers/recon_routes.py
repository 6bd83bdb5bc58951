# backend/recon/routers/recon_routes.py
"""
API routes for the recon pipeline

Collaborator failures are reported in the body as {"success": false, "error": ...};
missing records are 404 and illegal status changes 409.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from recon.errors import EntityNotFound, InvalidStatusTransition, ReconError
from recon.schemas import (
    DomainRequest,
    DomainResponse,
    JobResponse,
    PretextRequest,
    PretextReview,
    PromptCreate,
    QueueSourcesRequest,
    QueueStatsResponse,
    SourceResponse,
    TargetResponse,
)
from recon.services.pipeline_coordinator import PipelineCoordinator
from recon.services.stage_queue import Stage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["recon"])


def get_coordinator(request: Request) -> PipelineCoordinator:
    return request.app.state.coordinator


def _stage_or_400(stage: str) -> Stage:
    try:
        return Stage(stage)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown stage: {stage}"
        )


# ============================================
# DOMAINS
# ============================================

@router.post("/domain")
async def add_domain(
    body: DomainRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """Add a domain and queue its DNS lookups"""
    try:
        return await coordinator.add_domain(body.domain)
    except ReconError as e:
        logger.error(f"Failed to add domain {body.domain}: {e}")
        return {"success": False, "error": str(e)}


@router.get("/domains")
async def list_domains(coordinator: PipelineCoordinator = Depends(get_coordinator)):
    domains = await coordinator.store.list_domains()
    return {
        "success": True,
        "domains": [DomainResponse.model_validate(d).model_dump() for d in domains]
    }


@router.post("/domain/related")
async def related_domains(
    body: DomainRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """Find domains federated with this one via Microsoft Autodiscover"""
    try:
        return await coordinator.relate_domain(body.domain)
    except ReconError as e:
        logger.error(f"Autodiscover error for {body.domain}: {e}")
        return {"success": False, "domain": body.domain, "error": str(e)}


# ============================================
# RECON
# ============================================

@router.post("/recon/start")
async def start_recon(
    body: DomainRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    """Run contact discovery for a domain and queue its sources for scraping"""
    if not coordinator.hunter.configured:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Hunter API key not configured"
        )

    try:
        results = await coordinator.run_recon(body.domain)
    except ReconError as e:
        return {"success": False, "domain": body.domain, "error": str(e)}

    return {"success": True, "domain": body.domain, "results": results}


@router.get("/targets")
async def list_targets(
    domain: Optional[str] = None,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    targets = await coordinator.store.list_targets(domain)
    return {
        "success": True,
        "targets": [TargetResponse.model_validate(t).model_dump(mode="json") for t in targets]
    }


@router.get("/targets/{email}/sources")
async def list_target_sources(
    email: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    if await coordinator.store.get_target(email) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Target {email} not found")

    sources = await coordinator.store.list_sources_for_target(email)
    return {
        "success": True,
        "sources": [SourceResponse.model_validate(s).model_dump(mode="json") for s in sources]
    }


# ============================================
# SOURCES & QUEUES
# ============================================

@router.post("/sources/queue")
async def queue_sources(
    body: QueueSourcesRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    try:
        return await coordinator.queue_sources_for_targets(body.targetEmails or None)
    except ReconError as e:
        logger.error(f"Error queuing sources for targets: {e}")
        return {"success": False, "error": str(e)}


@router.post("/sources/{source_id}/rescrape")
async def rescrape_source(
    source_id: int,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    try:
        return await coordinator.rescrape_source(source_id)
    except EntityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/queue/{stage}")
async def clear_queue(
    stage: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    cleared = await coordinator.clear_queue(_stage_or_400(stage))
    return {"success": True, "stage": stage, "cleared": cleared}


@router.get("/queue/{stage}", response_model=QueueStatsResponse)
async def queue_stats(
    stage: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    stage_enum = _stage_or_400(stage)
    return QueueStatsResponse(
        stage=stage,
        counts=await coordinator.queue_stats(stage_enum),
        active=coordinator.queue.active_jobs(stage_enum)
    )


# ============================================
# PROFILES & PRETEXTS
# ============================================

@router.post("/prompts")
async def create_prompt(
    body: PromptCreate,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    prompt_id = await coordinator.store.upsert_prompt(body.name, body.template, body.dos, body.donts)
    return {"success": True, "id": prompt_id, "name": body.name}


@router.post("/targets/{email}/profile", response_model=JobResponse)
async def generate_profile(
    email: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    try:
        handle = await coordinator.request_profile(email)
    except EntityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobResponse(jobId=handle.id, stage=handle.stage, created=handle.created)


@router.post("/targets/{email}/pretexts", response_model=JobResponse)
async def generate_pretext(
    email: str,
    body: PretextRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    try:
        handle = await coordinator.request_pretext(email, body.promptName)
    except EntityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return JobResponse(jobId=handle.id, stage=handle.stage, created=handle.created)


@router.post("/pretexts/{pretext_id}/review")
async def review_pretext(
    pretext_id: int,
    body: PretextReview,
    coordinator: PipelineCoordinator = Depends(get_coordinator)
):
    try:
        new_status = await coordinator.review_pretext(pretext_id, body.approved)
    except EntityNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransition as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return {"success": True, "id": pretext_id, "status": new_status}
