"""
app/api/dependencies.py

Shared FastAPI dependencies for request validation.

Authentication happens upstream; the gateway forwards the authenticated
actor and its capabilities as headers.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import Header, HTTPException, status


@dataclass(frozen=True)
class Actor:
    actor_id: str
    capabilities: frozenset[str]


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_capabilities: str | None = Header(default=None),
) -> Actor:
    """
    Read the acting user from ``X-Actor-Id`` and ``X-Capabilities``.

    Capabilities are comma-separated; blanks are ignored.
    """

    actor_id = (x_actor_id or "").strip()
    if not actor_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Actor-Id header is required.",
        )

    capabilities = frozenset(
        part.strip() for part in (x_capabilities or "").split(",") if part.strip()
    )
    return Actor(actor_id=actor_id, capabilities=capabilities)
