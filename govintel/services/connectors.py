from __future__ import annotations

from typing import Any, Protocol

import httpx

from govintel.core.errors import FetchError


class SourceConnector(Protocol):
    async def fetch(self, source: str, run_type: str, params: dict[str, Any]) -> list[dict[str, Any]]: ...


class HttpSourceConnector:
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self._client = client

    async def fetch(self, source: str, run_type: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        url = f"{self.base_url}/sources/{source}/fetch"
        payload = {"run_type": run_type, "params": params}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=self.headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=payload, headers=self.headers)
        except httpx.TimeoutException as exc:
            raise FetchError(f"fetch timed out for source={source}") from exc
        except httpx.HTTPError as exc:
            raise FetchError(f"fetch failed for source={source}: {exc}") from exc

        if response.status_code in {401, 403}:
            raise FetchError(f"credentials rejected for source={source}", fatal=True)
        if response.status_code == 404:
            raise FetchError(f"source={source} is not configured on the connector", fatal=True)
        if response.status_code >= 400:
            raise FetchError(f"fetch for source={source} returned status {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise FetchError(f"fetch for source={source} returned invalid JSON") from exc

        records = body.get("records") if isinstance(body, dict) else body
        if not isinstance(records, list):
            raise FetchError(f"fetch for source={source} returned no record list")
        return records
