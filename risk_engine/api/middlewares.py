"""
middlewares.py
--------------
HTTP middlewares of the Risk & Refund Engine.

  1. SecurityHeadersMiddleware → security headers on every response
  2. setup_cors()              → CORS for the admin console

Registration order in main.py matters:
  1. CORS            → first, so preflight requests pass
  2. SecurityHeaders → second, applies to every response
"""

import logging
from typing import Callable

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# 1. Security Headers Middleware
# ─────────────────────────────────────────────────────────────────────

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Adds security headers to every response.

      - X-Content-Type-Options    → no MIME sniffing
      - X-Frame-Options           → no clickjacking
      - Strict-Transport-Security → HTTPS only
      - Content-Security-Policy   → same-origin content only
      - Referrer-Policy           → no referrer to other domains
      - Cache-Control             → responses carry fraud and refund data
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = (
            "no-store, no-cache, must-revalidate, private"
        )
        response.headers["Server"] = "risk-engine"

        return response


# ─────────────────────────────────────────────────────────────────────
# 2. CORS
# ─────────────────────────────────────────────────────────────────────

def setup_cors(app: FastAPI, allowed_origins: list[str]) -> None:
    """
    Allowed methods:
      - GET     → case and score listings, health
      - POST    → analysis, monitor pass, case decisions
      - OPTIONS → browser preflight
    """
    app.add_middleware(
        CORSMiddleware,
        allow_origins     = allowed_origins,
        allow_credentials = True,
        allow_methods     = ["GET", "POST", "OPTIONS"],
        allow_headers     = [
            "Content-Type",
            "Authorization",
            "X-Request-ID",
        ],
    )
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")
