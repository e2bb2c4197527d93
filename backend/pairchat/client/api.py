from typing import Any, Dict, List, Optional

import httpx

from pairchat.utils.security import SESSION_COOKIE


class ApiError(Exception):

    def __init__(self, status_code: int, message: str, kind: Optional[str] = None) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message
        self.kind = kind


class ChatApiClient:
    """Thin async wrapper over the REST endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        *,
        prefix: str = "/api",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._prefix = prefix
        self._client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)

    @property
    def session_token(self) -> Optional[str]:
        auth = self._client.headers.get("Authorization", "")
        if auth.startswith("Bearer "):
            return auth[len("Bearer "):]
        return self._client.cookies.get(SESSION_COOKIE)

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._client.request(method, f"{self._prefix}{path}", **kwargs)
        if response.is_error:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            raise ApiError(response.status_code, payload.get("message") or response.reason_phrase, payload.get("kind"))
        return response.json()

    async def signup(self, full_name: str, email: str, password: str) -> Dict[str, Any]:
        return await self._request("POST", "/auth/signup", json={"fullName": full_name, "email": email, "password": password})

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        return await self._request("POST", "/auth/login", json={"email": email, "password": password})

    async def logout(self) -> Dict[str, Any]:
        return await self._request("POST", "/auth/logout")

    async def get_messages(self, peer_id: str, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        return await self._request("GET", f"/messages/{peer_id}", params={"page": page, "limit": limit})

    async def send_message(
        self,
        peer_id: str,
        text: Optional[str] = None,
        image: Optional[str] = None,
        client_message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {"text": text, "image": image, "clientMessageId": client_message_id}
        return await self._request("POST", f"/messages/send/{peer_id}", json=body)

    async def mark_read(self, message_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/messages/{message_id}/read")

    async def mark_all_read(self, peer_id: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/messages/{peer_id}/read-all")

    async def search(self, query: str) -> List[Dict[str, Any]]:
        return await self._request("GET", "/messages/search", params={"query": query})

    async def sidebar(self) -> List[Dict[str, Any]]:
        return await self._request("GET", "/users/sidebar")
