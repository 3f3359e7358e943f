"""JSON-over-HTTP base client shared by provider adapters."""

from __future__ import annotations

import json
from typing import Any

import requests

from pipeline.failures import ProviderHTTPError, ProviderResponseError
from pipeline.resilience import ResiliencePolicy


class JsonHttpClient:
    """Send JSON requests and surface every non-2xx response as ``ProviderHTTPError``."""

    def __init__(
        self,
        *,
        provider: str,
        base_url: str,
        headers: dict[str, str],
        max_attempts: int,
        request_timeout_seconds: float = 30.0,
        session: requests.Session | None = None,
    ) -> None:
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json", **headers})
        self._request_timeout_seconds = request_timeout_seconds
        self._resilience = ResiliencePolicy(name=provider, max_attempts=max_attempts)

    def get(self, path_or_url: str) -> dict[str, Any]:
        return self.request("GET", path_or_url)

    def post(self, path_or_url: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("POST", path_or_url, body)

    def put(self, path_or_url: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.request("PUT", path_or_url, body)

    def request(
        self,
        method: str,
        path_or_url: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute one call; 204 and empty bodies decode to ``{}``."""
        url = self.url_for(path_or_url)

        def _operation() -> requests.Response:
            response = self._session.request(
                method,
                url,
                json=body,
                timeout=self._request_timeout_seconds,
            )
            if not 200 <= response.status_code < 300:
                raise ProviderHTTPError(self.provider, response.status_code, response.text)
            return response

        response = self._resilience.execute(_operation)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            payload = response.json()
        except json.JSONDecodeError as exc:
            raise ProviderResponseError(
                f"{self.provider} returned non-JSON body for {method} {url}"
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderResponseError(
                f"{self.provider} returned {type(payload).__name__} for {method} {url}"
            )
        return payload

    def url_for(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self.base_url}/{path_or_url.lstrip('/')}"
