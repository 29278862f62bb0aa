"""
container.py
------------
Wires the services to their production adapters.

Built once per process (FastAPI lifespan or the monitor job) and handed
down explicitly; no service reaches for a global collaborator.
"""

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from risk_engine.core.clock import Clock, system_clock
from risk_engine.core.config import settings
from risk_engine.domain.rules import RuleRegistry, rule_registry
from risk_engine.infrastructure.cache.session_store import RedisSessionStore
from risk_engine.infrastructure.database.audit_repository import FraudScoreAuditRepository
from risk_engine.infrastructure.database.booking_repository import SqlBookingRepository
from risk_engine.infrastructure.database.case_repository import SqlCaseRepository
from risk_engine.infrastructure.database.signal_repository import SqlSignalSource
from risk_engine.infrastructure.messaging.notification_queue import RedisNotificationQueue
from risk_engine.infrastructure.payments.stripe_gateway import StripeRefundGateway
from risk_engine.services.action_dispatcher import ActionDispatcher
from risk_engine.services.case_manager import CaseManager
from risk_engine.services.fraud_analyzer import FraudAnalyzer
from risk_engine.services.signal_collectors import SignalCollectors
from risk_engine.services.trigger_monitor import TriggerMonitor


@dataclass
class ServiceContainer:
    fraud_analyzer:  FraudAnalyzer
    case_manager:    CaseManager
    trigger_monitor: TriggerMonitor


def build_services(
    redis_client:    Redis,
    session_factory: async_sessionmaker[AsyncSession],
    clock:           Clock = system_clock,
    registry:        RuleRegistry = rule_registry,
) -> ServiceContainer:
    bookings   = SqlBookingRepository(session_factory)
    sessions   = RedisSessionStore(redis_client)
    dispatcher = ActionDispatcher(RedisNotificationQueue(redis_client), bookings, clock)

    case_manager = CaseManager(
        cases      = SqlCaseRepository(session_factory),
        payments   = StripeRefundGateway(),
        dispatcher = dispatcher,
        clock      = clock,
    )

    return ServiceContainer(
        fraud_analyzer  = FraudAnalyzer(
            collectors = SignalCollectors(SqlSignalSource(session_factory), sessions, clock),
            scores     = FraudScoreAuditRepository(session_factory),
            sessions   = sessions,
            dispatcher = dispatcher,
            registry   = registry,
            clock      = clock,
        ),
        case_manager    = case_manager,
        trigger_monitor = TriggerMonitor(
            bookings       = bookings,
            case_manager   = case_manager,
            registry       = registry,
            clock          = clock,
            concurrency    = settings.MONITOR_CONCURRENCY,
            lookback_hours = settings.LATE_CANCELLATION_LOOKBACK_HOURS,
            stale_minutes  = settings.PROCESSING_STALE_MINUTES,
        ),
    )
