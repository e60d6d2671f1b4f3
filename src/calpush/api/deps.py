"""FastAPI dependencies: the runtime container and the authenticated user.

Authentication happens upstream (a reverse proxy or session gateway); by the
time a request reaches calpush the user id travels in a trusted header whose
name is configurable (``server.user_header``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import Depends, HTTPException, Request

from calpush.runtime import CalpushRuntime

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = logging.getLogger(__name__)


def get_runtime() -> CalpushRuntime:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("CalpushRuntime not initialized")


def wire_runtime(app: FastAPI, runtime: CalpushRuntime) -> None:
    """Make *runtime* the value of every ``get_runtime`` dependency."""
    app.state.runtime = runtime
    app.dependency_overrides[get_runtime] = lambda: runtime


def get_current_user(
    request: Request,
    runtime: CalpushRuntime = Depends(get_runtime),
) -> str:
    """Return the authenticated user id, or answer 401."""
    header = runtime.config.server.user_header
    user_id = (request.headers.get(header) or "").strip()
    if not user_id:
        logger.info("Rejecting %s %s: missing %s", request.method, request.url.path, header)
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user_id
