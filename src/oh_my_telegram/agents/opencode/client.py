from __future__ import annotations

from typing import Any, Optional

import httpx


class OpenCodeProtocolError(Exception):
    """Raised when the OpenCode server answers with an unexpected payload."""


class OpenCodeClient:
    """Async client for the subset of the OpenCode server API the bot relies on.

    Every call accepts an optional ``directory`` which scopes the request to a
    project on the server side.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth: Optional[tuple[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=auth,
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "OpenCodeClient":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()

    def _dir_params(self, directory: Optional[str]) -> dict[str, Any]:
        return {"directory": directory} if directory else {}

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> Any:
        response = await self._client.request(method, path, params=params, json=json)
        response.raise_for_status()
        if response.content:
            return response.json()
        return None

    async def _request_list(
        self, method: str, path: str, *, params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        payload = await self._request(method, path, params=params)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise OpenCodeProtocolError(
                f"{method} {path} returned {type(payload).__name__}, expected a list"
            )
        return [item for item in payload if isinstance(item, dict)]

    async def _request_object(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        payload = await self._request(method, path, params=params, json=json)
        if not isinstance(payload, dict):
            raise OpenCodeProtocolError(
                f"{method} {path} returned {type(payload).__name__}, expected an object"
            )
        return payload

    async def config(self, directory: Optional[str] = None) -> dict[str, Any]:
        return await self._request_object(
            "GET", "/config", params=self._dir_params(directory)
        )

    async def health(self) -> dict[str, Any]:
        return await self._request_object("GET", "/global/health")

    async def list_sessions(
        self,
        directory: Optional[str] = None,
        *,
        roots: bool = False,
        search: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params = self._dir_params(directory)
        if roots:
            params["roots"] = "true"
        if search:
            params["search"] = search
        if limit is not None:
            params["limit"] = limit
        return await self._request_list("GET", "/session", params=params)

    async def get_session(
        self, session_id: str, *, directory: Optional[str] = None
    ) -> dict[str, Any]:
        return await self._request_object(
            "GET", f"/session/{session_id}", params=self._dir_params(directory)
        )

    async def create_session(
        self,
        *,
        title: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if title:
            payload["title"] = title
        session = await self._request_object(
            "POST", "/session", params=self._dir_params(directory), json=payload
        )
        if not isinstance(session.get("id"), str) or not session["id"]:
            raise OpenCodeProtocolError("session create returned no id")
        return session

    async def session_children(
        self, session_id: str, *, directory: Optional[str] = None
    ) -> list[dict[str, Any]]:
        return await self._request_list(
            "GET",
            f"/session/{session_id}/children",
            params=self._dir_params(directory),
        )

    async def delete_session(
        self, session_id: str, *, directory: Optional[str] = None
    ) -> Any:
        return await self._request(
            "DELETE", f"/session/{session_id}", params=self._dir_params(directory)
        )

    async def send_message(
        self,
        session_id: str,
        *,
        message: str,
        agent: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "parts": [{"type": "text", "text": message}],
        }
        if agent:
            payload["agent"] = agent
        return await self._request(
            "POST",
            f"/session/{session_id}/message",
            params=self._dir_params(directory),
            json=payload,
        )

    async def list_permissions(
        self, directory: Optional[str] = None
    ) -> list[dict[str, Any]]:
        return await self._request_list(
            "GET", "/permission", params=self._dir_params(directory)
        )

    async def respond_permission(
        self,
        *,
        request_id: str,
        reply: str,
        message: Optional[str] = None,
        directory: Optional[str] = None,
    ) -> Any:
        payload: dict[str, Any] = {"reply": reply}
        if message:
            payload["message"] = message
        return await self._request(
            "POST",
            f"/permission/{request_id}/reply",
            params=self._dir_params(directory),
            json=payload,
        )

    async def list_questions(
        self, directory: Optional[str] = None
    ) -> list[dict[str, Any]]:
        return await self._request_list(
            "GET", "/question", params=self._dir_params(directory)
        )

    async def reply_question(
        self,
        *,
        request_id: str,
        answers: list[list[str]],
        directory: Optional[str] = None,
    ) -> Any:
        return await self._request(
            "POST",
            f"/question/{request_id}/reply",
            params=self._dir_params(directory),
            json={"answers": answers},
        )

    async def reject_question(
        self, *, request_id: str, directory: Optional[str] = None
    ) -> Any:
        return await self._request(
            "POST",
            f"/question/{request_id}/reject",
            params=self._dir_params(directory),
        )


__all__ = ["OpenCodeClient", "OpenCodeProtocolError"]
