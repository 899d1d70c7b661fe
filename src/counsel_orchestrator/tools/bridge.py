"""HTTP bridge to sibling research apps (imbib, imprint, impart, implore)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class SiblingBridgeError(RuntimeError):
    """Raised when a sibling app is unreachable or answers with an error status."""


class SiblingBridge:
    """Thin async client that resolves app names to localhost base URLs."""

    def __init__(
        self,
        *,
        base_urls: dict[str, str],
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_urls = {name: url.rstrip("/") for name, url in base_urls.items()}
        self.timeout_s = timeout_s
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def get(
        self,
        path: str,
        *,
        app: str,
        params: dict[str, str] | None = None,
    ) -> str:
        return await self._send("GET", path, app=app, params=params)

    async def post(self, path: str, *, app: str, body: dict[str, Any]) -> str:
        return await self._send("POST", path, app=app, body=body)

    async def _send(
        self,
        method: str,
        path: str,
        *,
        app: str,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> str:
        base_url = self.base_urls.get(app)
        if base_url is None:
            raise SiblingBridgeError(f"No base URL configured for app '{app}'")
        url = f"{base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                params=params,
                json=body,
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise SiblingBridgeError(f"{app} is not reachable at {base_url}: {exc}") from exc

        if response.status_code >= 400:
            raise SiblingBridgeError(
                f"{app} {method} {path} failed with status {response.status_code}: "
                f"{response.text[:400]}"
            )
        logger.debug(
            "sibling_request app=%s method=%s path=%s status=%d",
            app,
            method,
            path,
            response.status_code,
        )
        return response.text
