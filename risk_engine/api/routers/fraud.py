from typing import Optional

from fastapi import APIRouter, Depends, Query

from risk_engine.api.dependencies import get_fraud_analyzer
from risk_engine.api.deps import require_admin, require_service_or_admin
from risk_engine.domain.schemas import (
    CurrentUser,
    FraudAnalysisRequest,
    FraudScore,
    FraudScoreListResponse,
    RiskLevel,
)
from risk_engine.services.fraud_analyzer import FraudAnalyzer

router = APIRouter(prefix="/v1/fraud", tags=["Fraud"])


@router.post("/analyze", response_model=FraudScore)
async def analyze_booking(
    body:     FraudAnalysisRequest,
    analyzer: FraudAnalyzer = Depends(get_fraud_analyzer),
    _caller:  CurrentUser = Depends(require_service_or_admin),
) -> FraudScore:
    """Score a booking at creation time. Called inline by the booking workflow."""
    return await analyzer.analyze_fraud_risk(
        booking_id = body.booking_id,
        user_id    = body.user_id,
        user_type  = body.user_type,
        booking    = body.booking,
        session    = body.session,
    )


@router.get("/scores", response_model=FraudScoreListResponse)
async def list_fraud_scores(
    booking_id: Optional[str] = None,
    user_id:    Optional[str] = None,
    risk_level: Optional[RiskLevel] = None,
    limit:      int = Query(50, ge=1, le=500),
    analyzer:   FraudAnalyzer = Depends(get_fraud_analyzer),
    _admin:     CurrentUser = Depends(require_admin),
) -> FraudScoreListResponse:
    return await analyzer.overview(
        booking_id=booking_id, user_id=user_id, risk_level=risk_level, limit=limit
    )
