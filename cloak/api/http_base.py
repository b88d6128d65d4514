from __future__ import annotations

from typing import Any, Optional, Type

import httpx

from cloak import config
from cloak.api.errors import ServiceError


class ServiceClient:
    """
    Thin async JSON client shared by the indexer, relay, prover and RPC clients.

    Every failure (transport error, timeout, non-2xx, non-JSON body) is
    raised as `error_cls` carrying the service's own message.
    """

    error_cls: Type[ServiceError] = ServiceError

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = config.HTTP_TIMEOUT_SEC,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._url(path)
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise self.error_cls(f"{self.error_cls.service} timed out: {method} {url}") from e
        except httpx.HTTPError as e:
            raise self.error_cls(f"{self.error_cls.service} unreachable: {method} {url}: {e}") from e

        if response.status_code >= 400:
            raise self.error_cls(
                f"{self.error_cls.service} returned {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise self.error_cls(
                f"{self.error_cls.service} returned a non-JSON body", status_code=response.status_code
            ) from e


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body)[:500]
    return str(body)[:500]
