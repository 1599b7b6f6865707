"""Health endpoint for KeyGate.

  GET /health — 503 until lifespan startup completes, 200 afterwards.

Suitable for container health probes.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {"status": "ok", "keys_issued": 3, "max_requests": 10}

    Response body (503):
        {"detail": {"status": "starting", "message": "..."}}
    """
    service = getattr(request.app.state, "service", None)
    if not getattr(request.app.state, "ready", False) or service is None:
        raise HTTPException(
            status_code=503,
            detail={
                "status": "starting",
                "message": "KeyGate is starting up. Loading key store...",
            },
        )

    return {
        "status": "ok",
        "keys_issued": len(service.keys),
        "max_requests": service.max_requests,
    }
