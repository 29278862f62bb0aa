"""
dependencies.py
---------------
Service providers for the FastAPI routers.

The lifespan in main.py builds one ServiceContainer and stores it on
app.state; these functions hand its pieces to the routers. Tests replace
them through app.dependency_overrides:

    app.dependency_overrides[get_case_manager] = lambda: fake_case_manager
"""

from fastapi import Request

from risk_engine.core.exceptions import RiskEngineException
from risk_engine.services.case_manager import CaseManager
from risk_engine.services.container import ServiceContainer
from risk_engine.services.fraud_analyzer import FraudAnalyzer
from risk_engine.services.trigger_monitor import TriggerMonitor


def get_services(request: Request) -> ServiceContainer:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RiskEngineException("Services are not initialised.")
    return services


def get_fraud_analyzer(request: Request) -> FraudAnalyzer:
    return get_services(request).fraud_analyzer


def get_case_manager(request: Request) -> CaseManager:
    return get_services(request).case_manager


def get_trigger_monitor(request: Request) -> TriggerMonitor:
    return get_services(request).trigger_monitor
