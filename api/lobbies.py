"""
Read-only HTTP surface

Lobby state is only mutated over the WebSocket; these routes list what
exists for lobby pickers.
"""
from typing import List

from fastapi import APIRouter, Request

from schemas import CampaignSummary
from services.campaign_library import list_campaigns

router = APIRouter(tags=["lobbies"])


@router.get("/lobbies", response_model=List[str])
def get_lobbies(request: Request):
    """Names of every lobby created since startup"""
    return request.app.state.registry.names()


@router.get("/campaigns", response_model=List[CampaignSummary])
def get_campaigns():
    """
    Predefined campaigns a GM can load

    Example response:
        [{"key": "embers_of_argeth", "title": "...", "summary": "..."}]
    """
    return list_campaigns()
