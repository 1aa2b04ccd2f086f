"""
services/attribution/router.py
Attribution API: start a broadcast, inspect it, record a professional's answer.

Professionals answer through the signed link they received by email; the
token carries their id, so the response endpoint needs no session.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status

from services.orchestration.orchestrator import Orchestrator, get_orchestrator
from shared.schemas.schemas import (
    AttributionStartRequest,
    AttributionStatusResponse,
    ProfessionalResponseRequest,
    ProfessionalResponseResult,
    StartAttributionResult,
)
from shared.utils.security import verify_response_token

router = APIRouter(prefix="/attributions", tags=["Attributions"])


@router.post("", response_model=StartAttributionResult, status_code=status.HTTP_202_ACCEPTED)
async def start_attribution(
    data: AttributionStartRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Match professionals around the service location and broadcast the
    mission. Re-posting for the same booking resumes the active round
    instead of starting a second one.
    """
    return await orchestrator.start_attribution(data)


@router.get("/{attribution_id}", response_model=AttributionStatusResponse)
async def get_attribution(
    attribution_id: UUID,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    return await orchestrator.get_attribution_status(attribution_id)


@router.post("/{attribution_id}/responses", response_model=ProfessionalResponseResult)
async def respond_to_attribution(
    attribution_id: UUID,
    data: ProfessionalResponseRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """First accept wins; later accepts come back SUPERSEDED."""
    professional_id = verify_response_token(data.token, attribution_id)
    return await orchestrator.record_professional_response(
        attribution_id, professional_id, data.accepted
    )
