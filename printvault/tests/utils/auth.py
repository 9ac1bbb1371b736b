from __future__ import annotations

from uuid import uuid4


def auth_headers(user_id: str | None = None, *, role: str = "user") -> dict[str, str]:
    # Mirror the identity headers the gateway forwards to the API.
    return {"X-User-Id": user_id or f"user-{uuid4().hex[:8]}", "X-Role": role}


def admin_headers() -> dict[str, str]:
    return auth_headers("admin-1", role="admin")
