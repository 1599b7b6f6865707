"""Key management endpoints.

Provides:
  GET  /generate-api-key/{email}   — issue (or re-issue) the key for an email
  POST /authenticate-api-key       — check a key without consuming quota
  GET  /request-count/{api_key}    — consumed request count for a key

None of these routes consume quota. Issuance is capped per client address by
the shared slowapi limiter (see limiter.py).
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from keygate.auth.limiter import issuance_rate, limiter
from keygate.auth.middleware import get_service
from keygate.errors import InvalidEmailError, PersistenceError
from keygate.service import KeyGateService
from keygate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["api-keys"])


# ─── Request / Response Models ────────────────────────────────────────────────


class AuthenticateKeyRequest(BaseModel):
    """Request body for POST /authenticate-api-key.

    api_key is left untyped: a non-string value is an invalid key (401), not a
    malformed request.
    """

    api_key: Optional[Any] = None


class IssuedKeyResponse(BaseModel):
    api_key: str


class RequestCountResponse(BaseModel):
    api_key: str
    request_count: int


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.get("/generate-api-key/{email}", response_model=IssuedKeyResponse)
@limiter.limit(issuance_rate)
async def generate_api_key(
    email: str,
    request: Request,
    service: KeyGateService = Depends(get_service),
) -> IssuedKeyResponse:
    """Issue the API key bound to email (idempotent per email).

    Raises:
        HTTP 400: Malformed email address.
        HTTP 500: Key could not be durably recorded; no key is returned.
    """
    try:
        key = await service.issue(email)
    except InvalidEmailError as exc:
        raise HTTPException(status_code=400, detail=exc.message) from exc
    except PersistenceError as exc:
        logger.error("Key issuance failed", error=exc.message)
        raise HTTPException(
            status_code=500,
            detail="Could not record API key. Try again later.",
        ) from exc

    return IssuedKeyResponse(api_key=key)


@router.post("/authenticate-api-key")
async def authenticate_api_key(
    body: Optional[AuthenticateKeyRequest] = None,
    service: KeyGateService = Depends(get_service),
) -> dict[str, str]:
    """Report whether a key was issued. Does not count against its quota.

    Raises:
        HTTP 400: api_key missing from the body.
        HTTP 401: api_key is not a string or was never issued.
    """
    api_key = body.api_key if body is not None else None
    if not api_key:
        raise HTTPException(status_code=400, detail="API key is missing in request body")
    if not service.authenticate(api_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return {"status": "API key valid"}


@router.get("/request-count/{api_key}", response_model=RequestCountResponse)
async def request_count(
    api_key: str,
    service: KeyGateService = Depends(get_service),
) -> RequestCountResponse:
    """Return the consumed request count for api_key (0 if unknown)."""
    return RequestCountResponse(api_key=api_key, request_count=service.count_for(api_key))
