"""
Commission schedule API endpoints.

The global schedule and per-agent override schedules. PUT replaces a whole
schedule; an empty agent schedule removes the override.
"""

import logging
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from core.database import get_db
from models import CommissionTier
from services.commission_tier_service import CommissionTierService, TierInput

logger = logging.getLogger(__name__)

router = APIRouter()


class TierModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    min_monthly_revenue: int = Field(..., ge=0, description="Kopecks")
    commission_rate: Decimal = Field(..., ge=0, le=1, description="Fraction, e.g. 0.07")


class ScheduleRequest(BaseModel):
    tiers: List[TierModel]


class ScheduleResponse(BaseModel):
    tiers: List[TierModel]


def _to_inputs(request: ScheduleRequest) -> List[TierInput]:
    return [TierInput(t.min_monthly_revenue, t.commission_rate) for t in request.tiers]


def _to_response(rows: List[CommissionTier]) -> ScheduleResponse:
    return ScheduleResponse(tiers=[TierModel.model_validate(row) for row in rows])


@router.get("/global", response_model=ScheduleResponse)
def get_global_schedule(db: Session = Depends(get_db)):
    return _to_response(CommissionTierService.get_global_tiers(db))


@router.put("/global", response_model=ScheduleResponse)
def set_global_schedule(request: ScheduleRequest, db: Session = Depends(get_db)):
    return _to_response(CommissionTierService.set_global_tiers(db, _to_inputs(request)))


@router.get("/agents/{agent_id}", response_model=ScheduleResponse)
def get_agent_schedule(agent_id: int, db: Session = Depends(get_db)):
    """Agent override schedule; empty when the agent uses the global schedule."""
    return _to_response(CommissionTierService.get_agent_tiers(db, agent_id))


@router.put("/agents/{agent_id}", response_model=ScheduleResponse)
def set_agent_schedule(agent_id: int, request: ScheduleRequest, db: Session = Depends(get_db)):
    return _to_response(CommissionTierService.set_agent_tiers(db, agent_id, _to_inputs(request)))
