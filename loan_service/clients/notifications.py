import httpx

from loan_service.clients.base import NotificationPriority
from loan_service.core.errors import CollaboratorUnavailable


class HttpNotifier:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def notify(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> None:
        payload = {
            "userId": user_id,
            "type": type,
            "title": title,
            "message": message,
            "priority": NotificationPriority(priority).value,
        }
        try:
            resp = await self._http.post(f"{self._base_url}/api/notifications", json=payload)
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("notification", f"{exc.__class__.__name__}: {exc}") from exc

        if resp.is_error:
            raise CollaboratorUnavailable("notification", f"HTTP {resp.status_code}")
