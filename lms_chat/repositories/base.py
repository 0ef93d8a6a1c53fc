from typing import Any, Dict, Type

import httpx

from lms_chat.exceptions import ChatApiError


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"{response.status_code} {response.reason_phrase}".strip()


class ApiRepository:
    """Shared request/envelope handling for the LMS REST backend.

    Every response is ``{"success": bool, "data": ..., "message"?: str}``;
    transport errors, non-2xx statuses and ``success: false`` bodies are all
    raised as ``ChatApiError`` (or the subclass passed as ``error_cls``).
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _call(
        self,
        method: str,
        path: str,
        error_cls: Type[ChatApiError] = ChatApiError,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise error_cls(_error_message(exc.response), status_code=exc.response.status_code) from exc
        except httpx.HTTPError as exc:
            raise error_cls(f"{method} {path} failed: {exc!r}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise error_cls(f"{method} {path} returned invalid JSON", status_code=response.status_code) from exc
        if not isinstance(body, dict):
            return {"success": True, "data": body}
        if body.get("success") is False:
            raise error_cls(body.get("message") or "request rejected", status_code=response.status_code)
        return body
