"""Admin API endpoints with simple token auth."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

if TYPE_CHECKING:
    from teletherapy.containers import AppContainer

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_admin_token(request: Request) -> str:
    container: AppContainer = request.app.state.container
    return container.settings.admin_token


async def require_admin(
    x_admin_token: str | None = Header(default=None),
    admin_token: str = Depends(_get_admin_token),
) -> None:
    """Ensure requests include a valid admin token."""
    if not x_admin_token or x_admin_token != admin_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)


@router.get("/health", dependencies=[Depends(require_admin)])
async def admin_health() -> dict[str, str]:
    """Admin health check endpoint."""
    return {"status": "ok"}


@router.get("/audit", dependencies=[Depends(require_admin)])
async def invariant_audit(request: Request) -> dict[str, object]:
    """Run an on-demand invariant scan over all sessions."""
    container: AppContainer = request.app.state.container
    violations = await run_in_threadpool(container.invariant_auditor.scan)
    return {
        "healthy": not violations,
        "violations": [violation.to_dict() for violation in violations],
    }
