from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Actor:
    """Snapshot of whoever triggered an operation, stored as-is on the job."""

    user_id: str
    username: str
    email: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


SYSTEM_ACTOR = Actor(user_id="system", username="scheduler")


def actor_from_args(
    user_id: Optional[str] = None,
    username: Optional[str] = None,
    email: Optional[str] = None,
) -> Actor:
    if not user_id and not username:
        return SYSTEM_ACTOR
    return Actor(user_id=str(user_id or username), username=str(username or user_id), email=email or None)


def auth_or_error(client_token: Optional[str], expected: str) -> Optional[Dict[str, Any]]:
    """Enforce a shared-secret layer between MCP clients and the scheduled jobs server.

    Client calls must pass the configured SCHEDULED_JOBS_MCP_CLIENT_TOKEN as the
    tool arg `_client_token`.
    """

    if not client_token or client_token != expected:
        return {
            "ok": False,
            "error": "unauthorized",
            "message": "Unauthorized scheduled jobs MCP client.",
            "hint": "Missing/invalid _client_token.",
        }

    return None
