"""
exceptions.py
-------------
Custom exceptions of the Risk & Refund Engine.

All of them inherit from RiskEngineException so a single global handler
in main.py can turn them into JSON responses.

Usage in main.py:
    from fastapi import Request
    from fastapi.responses import JSONResponse
    from risk_engine.core.exceptions import RiskEngineException

    @app.exception_handler(RiskEngineException)
    async def risk_exception_handler(request: Request, exc: RiskEngineException):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})
"""


class RiskEngineException(Exception):
    """Base of every engine exception."""
    status_code: int = 500
    message: str = "Internal error in the risk engine."

    def __init__(self, message: str | None = None):
        self.message = message or self.__class__.message
        super().__init__(self.message)


# ─────────────────────────────────────────────────────────────────────
# Rule registry
# ─────────────────────────────────────────────────────────────────────

class UnknownRuleException(RiskEngineException):
    """A fraud rule or refund trigger key is not in the registry."""
    status_code = 500
    message = "Unknown rule requested from the registry."


# ─────────────────────────────────────────────────────────────────────
# Refund cases
# ─────────────────────────────────────────────────────────────────────

class CaseNotFoundException(RiskEngineException):
    status_code = 404
    message = "Auto-refund case not found."


class InvalidCaseTransitionException(RiskEngineException):
    """
    The case is not in a status that allows the requested transition,
    or another worker won the conditional update first.
    """
    status_code = 409
    message = "The refund case cannot make this transition from its current status."


# ─────────────────────────────────────────────────────────────────────
# Collaborators
# ─────────────────────────────────────────────────────────────────────

class RefundGatewayException(RiskEngineException):
    """The payment collaborator rejected or failed the refund call."""
    status_code = 502
    message = "The payment provider could not process the refund."


class PersistenceUnavailableException(RiskEngineException):
    """PostgreSQL is not reachable or the write was rejected."""
    status_code = 503
    message = "Service temporarily unavailable. Try again shortly."


class CacheUnavailableException(RiskEngineException):
    """Redis is not reachable. Session signals degrade to no evidence."""
    status_code = 503
    message = "Service temporarily unavailable. Try again shortly."
