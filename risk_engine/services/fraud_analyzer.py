"""
fraud_analyzer.py
-----------------
Fraud analysis entry point: analyze_fraud_risk().

Called inline by the booking-creation workflow, so it never retries and
never schedules background work.

Flow:
  1. Collectors in parallel  → asyncio.gather(return_exceptions=True)
                               a failed collector = failed checks, no signal
  2. Evaluators              → pure, one FraudSignal per crossed threshold
  3. Score aggregator        → total, risk level, confidence, actions
  4. Audit record            → FraudScoreRepository.save (errors logged only)
  5. Session snapshot        → SessionStore.record_session (errors logged only)
  6. Action dispatcher       → admin notifications, block the booking
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional

from risk_engine.core.clock import Clock
from risk_engine.domain.ports import FraudScoreRepository, SessionStore
from risk_engine.domain.rules import RuleRegistry
from risk_engine.domain.schemas import (
    BookingData,
    FraudAnalysisRequest,
    FraudScore,
    FraudScoreListResponse,
    FraudScoreStats,
    RiskLevel,
    SessionContext,
    SessionSnapshot,
    UserType,
)
from risk_engine.services.action_dispatcher import ActionDispatcher
from risk_engine.services.score_aggregator import (
    calculate_confidence,
    calculate_fraud_score,
    determine_actions,
    determine_risk_level,
)
from risk_engine.services.signal_collectors import COLLECTOR_RULES, SignalCollectors
from risk_engine.services.signal_evaluators import evaluate_all

logger = logging.getLogger(__name__)


class FraudAnalyzer:

    def __init__(
        self,
        collectors: SignalCollectors,
        scores:     FraudScoreRepository,
        sessions:   SessionStore,
        dispatcher: ActionDispatcher,
        registry:   RuleRegistry,
        clock:      Clock,
    ):
        self.collectors = collectors
        self.scores     = scores
        self.sessions   = sessions
        self.dispatcher = dispatcher
        self.registry   = registry
        self.clock      = clock

    # ------------------------------------------------------------------ #
    #  Entry point                                                       #
    # ------------------------------------------------------------------ #

    async def analyze_fraud_risk(
        self,
        booking_id: str,
        user_id:    str,
        user_type:  UserType,
        booking:    BookingData,
        session:    Optional[SessionContext] = None,
    ) -> FraudScore:
        start_time = time.perf_counter()
        request    = FraudAnalysisRequest(
            booking_id = booking_id,
            user_id    = user_id,
            user_type  = user_type,
            booking    = booking,
            session    = session or SessionContext(),
        )

        # ══════════════════════════════════════════════════════════════
        # STEP 1: Collect evidence in parallel
        # ══════════════════════════════════════════════════════════════
        plan = self.collectors.plan(request)
        raw_results = await asyncio.gather(*plan.values(), return_exceptions=True)

        evidence:      list = []
        failed_checks: list[str] = []
        for name, result in zip(plan.keys(), raw_results):
            collected = self._safe_result(result, name, request)
            if collected is None:
                failed_checks.extend(COLLECTOR_RULES[name])
            else:
                evidence.extend(collected)

        # ══════════════════════════════════════════════════════════════
        # STEP 2/3: Evaluate and aggregate
        # ══════════════════════════════════════════════════════════════
        signals     = evaluate_all(evidence, self.registry)
        total_score = calculate_fraud_score(signals)
        risk_level  = determine_risk_level(total_score)
        confidence  = calculate_confidence(
            signals,
            total_checks = len(self.registry.fraud_rules),
            failed       = len(failed_checks),
        )
        actions = determine_actions(total_score, risk_level)
        now     = self.clock.now()

        score = FraudScore(
            booking_id         = booking_id,
            user_id            = user_id,
            user_type          = user_type,
            signals            = signals,
            total_score        = total_score,
            risk_level         = risk_level,
            confidence         = confidence,
            actions            = actions,
            analyzed_at        = now,
            model_version      = self.registry.version,
            data_points        = len(signals),
            failed_checks      = failed_checks,
            processing_time_ms = int((time.perf_counter() - start_time) * 1000),
        )

        # ══════════════════════════════════════════════════════════════
        # STEP 4/5/6: Audit, session snapshot, actions
        # ══════════════════════════════════════════════════════════════
        try:
            await self.scores.save(score)
        except Exception as e:
            logger.error(f"[FraudAnalyzer] Audit save failed for booking {booking_id}: {e}")

        try:
            await self.sessions.record_session(user_id, SessionSnapshot(
                location           = request.session.location,
                device_fingerprint = request.session.device_fingerprint,
                user_agent         = request.session.user_agent,
                recorded_at        = now,
            ))
        except Exception as e:
            logger.error(f"[FraudAnalyzer] Session snapshot failed for user {user_id}: {e}")

        await self.dispatcher.dispatch_fraud_score(score)

        logger.info(
            f"[FraudAnalyzer] booking={booking_id} user={user_id} "
            f"score={total_score} level={risk_level.value} confidence={confidence:.2f} "
            f"signals={[s.type for s in signals]} failed={failed_checks} "
            f"ms={score.processing_time_ms}"
        )
        return score

    # ------------------------------------------------------------------ #
    #  Admin reads                                                       #
    # ------------------------------------------------------------------ #

    async def list_fraud_scores(
        self,
        booking_id: Optional[str] = None,
        user_id:    Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        limit:      int = 50,
    ) -> list[FraudScore]:
        return await self.scores.list_scores(
            booking_id=booking_id, user_id=user_id, risk_level=risk_level, limit=limit
        )

    async def fraud_score_stats(self) -> FraudScoreStats:
        return await self.scores.stats(self.clock.now() - timedelta(hours=24))

    async def overview(
        self,
        booking_id: Optional[str] = None,
        user_id:    Optional[str] = None,
        risk_level: Optional[RiskLevel] = None,
        limit:      int = 50,
    ) -> FraudScoreListResponse:
        scores, stats = await asyncio.gather(
            self.list_fraud_scores(booking_id, user_id, risk_level, limit),
            self.fraud_score_stats(),
        )
        return FraudScoreListResponse(
            fraud_scores = scores,
            stats        = stats,
            rules        = self.registry.describe_fraud_rules(),
        )

    # ------------------------------------------------------------------ #
    #  Utilities                                                         #
    # ------------------------------------------------------------------ #

    def _safe_result(self, result, collector: str, request: FraudAnalysisRequest):
        """
        Extract a collector result from gather.
        None when the collector raised; the caller records failed checks.
        """
        if isinstance(result, Exception):
            logger.error(
                f"[FraudAnalyzer] Collector '{collector}' failed | "
                f"user={request.user_id} booking={request.booking_id} "
                f"rules={list(COLLECTOR_RULES[collector])}: {result}"
            )
            return None
        return result
