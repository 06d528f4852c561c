import logging

import httpx

from loan_service.core.errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)

BLOCKED_STATUS = "BLOCKED"


class HttpUserDirectory:
    """User-management service client."""

    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def validate(self, user_id: int, token: str | None = None) -> bool:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        try:
            resp = await self._http.get(f"{self._base_url}/api/users/{user_id}", headers=headers)
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("user", f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            raise CollaboratorUnavailable("user", f"HTTP {resp.status_code}")

        try:
            status = str(resp.json().get("status") or "").upper()
        except (ValueError, AttributeError, TypeError) as exc:
            raise CollaboratorUnavailable("user", f"unreadable response: {exc}") from exc
        if status == BLOCKED_STATUS:
            logger.info("User %s is blocked", user_id)
            return False
        return True
