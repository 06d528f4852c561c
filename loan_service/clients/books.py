import httpx

from loan_service.core.errors import CollaboratorUnavailable


class HttpBookInventory:
    """Book-catalog service client: availability lookups and copy-count adjustments."""

    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def is_available(self, book_id: int) -> bool:
        try:
            resp = await self._http.get(f"{self._base_url}/api/books/{book_id}/availability")
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("book", f"{type(exc).__name__}: {exc}") from exc

        if resp.status_code == 404:
            return False
        if resp.status_code != 200:
            raise CollaboratorUnavailable("book", f"HTTP {resp.status_code}")

        try:
            data = resp.json()
            copies = data.get("availableCopies")
            if copies is not None:
                return bool(data.get("available", True)) and int(copies) > 0
            return bool(data.get("available"))
        except (ValueError, AttributeError, TypeError) as exc:
            raise CollaboratorUnavailable("book", f"unreadable response: {exc}") from exc

    async def adjust_copies(self, book_id: int, delta: int) -> None:
        try:
            resp = await self._http.patch(
                f"{self._base_url}/api/books/{book_id}/copies",
                params={"change": delta},
            )
        except httpx.HTTPError as exc:
            raise CollaboratorUnavailable("book", f"{type(exc).__name__}: {exc}") from exc

        if resp.is_error:
            raise CollaboratorUnavailable("book", f"HTTP {resp.status_code}")
