"""KeyGate request gate — FastAPI dependencies.

Provides:
  - get_service()       — returns the KeyGateService owned by app.state
  - extract_api_key()   — candidate key from the request
  - require_admission() — authenticate + admit; short-circuits the handler

Key extraction precedence:
  1. ?apiKey=<key>              (query parameter)
  2. {"api_key": "<key>"}       (JSON object body)
  3. X-API-Key: <key>           (header)

Outcome → HTTP mapping:
  ADMITTED           → handler runs
  UNAUTHENTICATED    → 401 "API key is invalid"
  TOO_MANY_REQUESTS  → 429 "Too Many Requests"
"""

from __future__ import annotations

from typing import Any

from fastapi import Depends, HTTPException, Request

from keygate.constants import API_KEY_HEADER
from keygate.service import GateResult, KeyGateService
from keygate.utils.logger import get_logger, mask_key

logger = get_logger(__name__)


def get_service(request: Request) -> KeyGateService:
    """FastAPI dependency: the service built during lifespan startup.

    Raises:
        HTTPException(503): Startup has not completed.
    """
    service = getattr(request.app.state, "service", None)
    if service is None or not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail="KeyGate is starting up. Try again shortly.",
        )
    return service


async def extract_api_key(request: Request) -> Any:
    """Return the candidate API key, or None if the request carries none.

    A body value is returned as sent (it may not be a string); the gate
    rejects anything that is not an issued key.
    """
    return (
        request.query_params.get("apiKey")
        or await _body_api_key(request)
        or request.headers.get(API_KEY_HEADER)
    )


async def _body_api_key(request: Request) -> Any:
    content_type = request.headers.get("content-type", "")
    if not content_type.startswith("application/json"):
        return None
    try:
        body = await request.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("api_key")
    return None


async def require_admission(
    request: Request,
    service: KeyGateService = Depends(get_service),
) -> str:
    """FastAPI dependency: authenticate the caller and count the request.

    Returns:
        The admitted API key.

    Raises:
        HTTPException(401): Key absent or never issued.
        HTTPException(429): Key's quota is exhausted.
    """
    candidate = await extract_api_key(request)
    result = await service.gate(candidate)

    if result is GateResult.UNAUTHENTICATED:
        logger.warning(
            "Authentication failed",
            path=str(request.url.path),
            method=request.method,
            key_present=bool(candidate),
        )
        raise HTTPException(status_code=401, detail="API key is invalid")

    if result is GateResult.TOO_MANY_REQUESTS:
        logger.info(
            "Request rejected: quota exhausted",
            path=str(request.url.path),
            key=mask_key(candidate),
        )
        raise HTTPException(status_code=429, detail="Too Many Requests")

    assert candidate is not None
    return candidate
