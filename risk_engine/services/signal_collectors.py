"""
signal_collectors.py
--------------------
Evidence collectors of the fraud analysis.

Each collector reads one category of evidence through the SignalSource /
SessionStore ports and returns typed evidence payloads. They never write
and never decide: thresholds live in the evaluators.

Collectors run concurrently inside FraudAnalyzer (asyncio.gather with
return_exceptions=True). A collector that raises is reported by the
analyzer as a failed check for every rule listed in COLLECTOR_RULES.

Categories:
  booking_velocity    → rapid_bookings, velocity_anomaly
  account_age         → new_user_high_value
  payment_failures    → multiple_failed_payments
  payment_methods     → payment_method_cycling
  chargebacks         → chargeback_history
  session_drift       → impossible_travel, device_fingerprint_mismatch
  session_flags       → vpn_or_proxy, suspicious_user_agent
  message_similarity  → copy_paste_messages
  profile_interaction → no_profile_interaction
"""

import logging
import math
import re
from datetime import timedelta
from decimal import Decimal
from typing import Awaitable, Optional, Sequence

from risk_engine.core.clock import Clock
from risk_engine.domain.evidence import (
    ChargebackHistoryEvidence,
    CopyPasteMessagesEvidence,
    FailedPaymentsEvidence,
    FingerprintMismatchEvidence,
    GeoPoint,
    ImpossibleTravelEvidence,
    NewUserHighValueEvidence,
    PaymentMethodCyclingEvidence,
    ProfileInteractionEvidence,
    RapidBookingsEvidence,
    SuspiciousUserAgentEvidence,
    VelocityAnomalyEvidence,
    VpnProxyEvidence,
)
from risk_engine.domain.ports import SessionStore, SignalSource
from risk_engine.domain.schemas import FraudAnalysisRequest, SessionSnapshot

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------ #
#  Windows                                                           #
# ------------------------------------------------------------------ #
RAPID_WINDOW_MINUTES   = 60
RECENT_WINDOW_HOURS    = 24
BASELINE_WINDOW_DAYS   = 30
MESSAGE_SAMPLE_SIZE    = 10

EARTH_RADIUS_MILES     = 3959.0

# Emulators and automation frameworks seen in user agents
AUTOMATION_KEYWORDS = (
    "bluestacks", "nox", "ldplayer", "memu", "genymotion",
    "android_x86", "emulator", "headless", "selenium",
    "puppeteer", "playwright", "phantomjs", "webdriver",
)

COLLECTOR_RULES: dict[str, tuple[str, ...]] = {
    "booking_velocity":    ("rapid_bookings", "velocity_anomaly"),
    "account_age":         ("new_user_high_value",),
    "payment_failures":    ("multiple_failed_payments",),
    "payment_methods":     ("payment_method_cycling",),
    "chargebacks":         ("chargeback_history",),
    "session_drift":       ("impossible_travel", "device_fingerprint_mismatch"),
    "session_flags":       ("vpn_or_proxy", "suspicious_user_agent"),
    "message_similarity":  ("copy_paste_messages",),
    "profile_interaction": ("no_profile_interaction",),
}

_WHITESPACE = re.compile(r"\s+")


# ─────────────────────────────────────────────────────────────────────
# Pure helpers
# ─────────────────────────────────────────────────────────────────────

def haversine_miles(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance in miles."""
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def fingerprint_similarity(current: dict[str, str], previous: dict[str, str]) -> tuple[float, list[str]]:
    """Share of attribute keys whose values match, and the keys that changed."""
    keys = sorted(set(current) | set(previous))
    if not keys:
        return 1.0, []
    changed = [k for k in keys if current.get(k) != previous.get(k)]
    return (len(keys) - len(changed)) / len(keys), changed


def _normalize(message: str) -> str:
    return _WHITESPACE.sub(" ", message.strip().lower())


def message_similarity(messages: Sequence[str]) -> float:
    """Fraction of identical pairs among the messages (after normalization)."""
    if len(messages) < 2:
        return 0.0
    normalized  = [_normalize(m) for m in messages]
    identical   = 0
    comparisons = 0
    for i in range(len(normalized) - 1):
        for j in range(i + 1, len(normalized)):
            comparisons += 1
            if normalized[i] == normalized[j]:
                identical += 1
    return identical / comparisons


def match_automation_keywords(user_agent: str) -> list[str]:
    ua = (user_agent or "").lower()
    return [kw for kw in AUTOMATION_KEYWORDS if kw in ua]


# ─────────────────────────────────────────────────────────────────────
# Collectors
# ─────────────────────────────────────────────────────────────────────

class SignalCollectors:
    """
    Reads evidence for one analysis request.

    `plan()` returns one coroutine per category, keyed by the category
    name used in COLLECTOR_RULES.
    """

    def __init__(self, source: SignalSource, sessions: SessionStore, clock: Clock):
        self.source   = source
        self.sessions = sessions
        self.clock    = clock

    def plan(self, request: FraudAnalysisRequest) -> dict[str, Awaitable[list]]:
        return {
            "booking_velocity":    self.collect_booking_velocity(request.user_id),
            "account_age":         self.collect_account_age(request.user_id, request.booking.total_price),
            "payment_failures":    self.collect_payment_failures(request.user_id),
            "payment_methods":     self.collect_payment_methods(request.user_id),
            "chargebacks":         self.collect_chargebacks(request.user_id),
            "session_drift":       self.collect_session_drift(request),
            "session_flags":       self.collect_session_flags(request),
            "message_similarity":  self.collect_message_similarity(request.user_id),
            "profile_interaction": self.collect_profile_interaction(request.user_id, request.booking_id),
        }

    # ------------------------------------------------------------------ #
    #  Booking velocity                                                  #
    # ------------------------------------------------------------------ #

    async def collect_booking_velocity(self, user_id: str) -> list:
        now = self.clock.now()
        last_hour = await self.source.count_bookings_since(
            user_id, now - timedelta(minutes=RAPID_WINDOW_MINUTES)
        )
        last_day = await self.source.count_bookings_since(
            user_id, now - timedelta(hours=RECENT_WINDOW_HOURS)
        )
        last_month = await self.source.count_bookings_since(
            user_id, now - timedelta(days=BASELINE_WINDOW_DAYS)
        )

        # Baseline excludes the last day so a burst does not inflate it
        prior    = max(0, last_month - last_day)
        baseline = prior / (BASELINE_WINDOW_DAYS - 1)
        ratio    = last_day / baseline if baseline > 0 else 0.0

        return [
            RapidBookingsEvidence(recent_bookings=last_hour, window_minutes=RAPID_WINDOW_MINUTES),
            VelocityAnomalyEvidence(
                recent_bookings  = last_day,
                baseline_per_day = round(baseline, 4),
                ratio            = round(ratio, 4),
            ),
        ]

    async def collect_account_age(self, user_id: str, booking_value: Decimal) -> list:
        user = await self.source.get_user(user_id)
        if user is None:
            return []
        age_hours = max(0.0, (self.clock.now() - user.created_at).total_seconds() / 3600)
        return [NewUserHighValueEvidence(account_age_hours=age_hours, booking_value=booking_value)]

    # ------------------------------------------------------------------ #
    #  Payments                                                          #
    # ------------------------------------------------------------------ #

    async def collect_payment_failures(self, user_id: str) -> list:
        since  = self.clock.now() - timedelta(hours=RECENT_WINDOW_HOURS)
        failed = await self.source.count_failed_payments_since(user_id, since)
        return [FailedPaymentsEvidence(failed_payments=failed, window_hours=RECENT_WINDOW_HOURS)]

    async def collect_payment_methods(self, user_id: str) -> list:
        since   = self.clock.now() - timedelta(hours=RECENT_WINDOW_HOURS)
        methods = await self.source.count_payment_methods_since(user_id, since)
        return [PaymentMethodCyclingEvidence(payment_methods=methods, window_hours=RECENT_WINDOW_HOURS)]

    async def collect_chargebacks(self, user_id: str) -> list:
        count = await self.source.count_chargebacks(user_id)
        return [ChargebackHistoryEvidence(chargebacks=count)]

    # ------------------------------------------------------------------ #
    #  Session                                                           #
    # ------------------------------------------------------------------ #

    async def collect_session_drift(self, request: FraudAnalysisRequest) -> list:
        previous: Optional[SessionSnapshot] = await self.sessions.last_session(request.user_id)
        if previous is None:
            return []

        session  = request.session
        evidence = []

        if previous.location is not None and session.location is not None:
            hours = max(0.0, (self.clock.now() - previous.recorded_at).total_seconds() / 3600)
            evidence.append(ImpossibleTravelEvidence(
                distance_miles = round(haversine_miles(previous.location, session.location), 2),
                hours_elapsed  = round(hours, 4),
                from_location  = previous.location,
                to_location    = session.location,
            ))

        if previous.device_fingerprint and session.device_fingerprint:
            similarity, changed = fingerprint_similarity(
                session.device_fingerprint, previous.device_fingerprint
            )
            evidence.append(FingerprintMismatchEvidence(
                fingerprint_similarity = round(similarity, 4),
                changed_attributes     = changed,
            ))

        return evidence

    async def collect_session_flags(self, request: FraudAnalysisRequest) -> list:
        session  = request.session
        evidence = [VpnProxyEvidence(vpn_probability=session.vpn_probability)]
        if session.user_agent:
            evidence.append(SuspiciousUserAgentEvidence(
                user_agent       = session.user_agent[:512],
                matched_keywords = match_automation_keywords(session.user_agent),
            ))
        return evidence

    # ------------------------------------------------------------------ #
    #  Communication and research                                        #
    # ------------------------------------------------------------------ #

    async def collect_message_similarity(self, user_id: str) -> list:
        messages = await self.source.recent_messages(user_id, MESSAGE_SAMPLE_SIZE)
        return [CopyPasteMessagesEvidence(
            message_similarity = round(message_similarity(messages), 4),
            message_count      = len(messages),
        )]

    async def collect_profile_interaction(self, user_id: str, booking_id: str) -> list:
        profile_views, listing_views = await self.source.count_profile_views(
            user_id, booking_id, self.clock.now()
        )
        return [ProfileInteractionEvidence(profile_views=profile_views, listing_views=listing_views)]
