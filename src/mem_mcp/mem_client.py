import json
import logging
from typing import Any, Literal

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.mem.ai"

# v0 is the legacy API generation
AUTH_SCHEMES = {"v2": "Bearer", "v0": "ApiAccessToken"}


class MemAPIError(Exception):
    """Base class for failures talking to the Mem API."""


class AuthError(MemAPIError):
    def __init__(self):
        super().__init__("MEM_API_KEY is not configured")


class UpstreamHTTPError(MemAPIError):
    def __init__(self, status: int, status_text: str, body_text: str):
        self.status = status
        self.status_text = status_text
        self.body_text = body_text
        super().__init__(f"Mem API error: {status} {status_text} - {body_text}")


class UpstreamFormatError(MemAPIError):
    def __init__(self, raw_text: str, reason: str = "a non-JSON response"):
        self.raw_text = raw_text
        super().__init__(f"Mem API returned {reason}: {raw_text[:200]}")


class UpstreamConnectionError(MemAPIError):
    pass


class MemClient:
    """Async HTTP client for one generation of the Mem REST API."""

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        generation: Literal["v2", "v0"] = "v2",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.generation = generation
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/{self.generation}",
                timeout=httpx.Timeout(self.timeout),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def call(
        self,
        path: str,
        method: str = "GET",
        body: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """Issue one request and decode its JSON body.

        An empty body on success decodes to ``{}``. There are no retries.

        Raises:
            AuthError: no API key is configured
            UpstreamHTTPError: the API answered with a non-2xx status
            UpstreamFormatError: a non-empty body is not valid JSON
            UpstreamConnectionError: the request never got a response
        """
        if not self.api_key:
            raise AuthError()

        headers = {
            "Authorization": f"{AUTH_SCHEMES[self.generation]} {self.api_key}",
        }
        content = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            content = json.dumps(body)

        client = await self._get_client()
        logger.debug("Mem API %s %s/%s%s", method, self.base_url, self.generation, path)
        try:
            response = await client.request(
                method, path, headers=headers, content=content, params=params
            )
        except httpx.RequestError as e:
            logger.error("Request to %s failed: %s", path, e)
            raise UpstreamConnectionError(f"Request to Mem API failed: {e}") from e

        text = response.text
        if not response.is_success:
            raise UpstreamHTTPError(response.status_code, response.reason_phrase, text)
        if not text.strip():
            return {}
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise UpstreamFormatError(text) from e


def _compact(data: dict) -> dict:
    # Unset optional fields are left out rather than sent as null or []
    return {k: v for k, v in data.items() if v is not None and v != []}


class MemAPI:
    """Typed wrapper over the Mem endpoints the tools use."""

    def __init__(self, v2: MemClient, v0: MemClient):
        self.v2 = v2
        self.v0 = v0

    @classmethod
    def from_settings(cls, settings) -> "MemAPI":
        def client(generation):
            return MemClient(
                api_key=settings.mem_api_key,
                base_url=settings.mem_api_base_url,
                generation=generation,
                timeout=settings.mem_request_timeout,
            )

        return cls(v2=client("v2"), v0=client("v0"))

    @property
    def configured(self) -> bool:
        return self.v2.configured

    async def close(self) -> None:
        await self.v2.close()
        await self.v0.close()

    async def _request(
        self,
        client: MemClient,
        path: str,
        method: str = "GET",
        body: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        data = await client.call(path, method, body, params)
        if not isinstance(data, dict):
            raise UpstreamFormatError(
                json.dumps(data), reason="a response that is not a JSON object"
            )
        return data

    async def mem_it(
        self,
        input: str,
        instructions: str | None = None,
        context: str | None = None,
    ) -> dict:
        body = _compact(
            {"input": input, "instructions": instructions, "context": context}
        )
        return await self._request(self.v2, "/mem-it", "POST", body)

    async def create_note(
        self,
        content: str,
        collection_ids: list[str] | None = None,
        collection_titles: list[str] | None = None,
    ) -> dict:
        body = _compact(
            {
                "content": content,
                "collection_ids": collection_ids,
                "collection_titles": collection_titles,
            }
        )
        return await self._request(self.v2, "/notes", "POST", body)

    async def get_note(self, note_id: str) -> dict:
        return await self._request(self.v2, f"/notes/{note_id}")

    async def list_notes(
        self,
        limit: int | None = None,
        page: str | None = None,
        order_by: str | None = None,
        collection_id: str | None = None,
    ) -> dict:
        params = _compact(
            {
                "limit": limit,
                "page": page,
                "order_by": order_by,
                "collection_id": collection_id,
            }
        )
        return await self._request(self.v2, "/notes", params=params)

    async def search_notes(
        self, query: str, collection_ids: list[str] | None = None
    ) -> dict:
        body = _compact({"query": query, "filter_by_collection_ids": collection_ids})
        return await self._request(self.v2, "/notes/search", "POST", body)

    async def list_collections(
        self, limit: int | None = None, page: str | None = None
    ) -> dict:
        params = _compact({"limit": limit, "page": page})
        return await self._request(self.v2, "/collections", params=params)

    async def search_collections(self, query: str) -> dict:
        return await self._request(self.v2, "/collections/search", "POST", {"query": query})

    async def append_to_note(self, note_id: str, content: str) -> dict:
        return await self._request(self.v0, f"/mems/{note_id}/append", "POST", {"content": content})
