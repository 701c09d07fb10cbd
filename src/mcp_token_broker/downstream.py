"""Minimal ``requests`` client for the downstream resource API."""

from __future__ import annotations

import logging
from typing import Any

import requests

logger = logging.getLogger("mcp-token-broker.downstream")


class DownstreamApiError(RuntimeError):
    """Non-success response from the downstream API."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class DownstreamApiClient:
    """Issues JSON requests against ``base_url`` with an auth hook attached.

    Args:
        base_url: Root URL of the resource API.
        auth: ``requests`` auth hook, typically from
            :meth:`CredentialForwarder.auth_for`.
        timeout: Seconds before a call is abandoned.
    """

    def __init__(
        self,
        base_url: str,
        *,
        auth: requests.auth.AuthBase | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        kwargs.setdefault("auth", self.auth)
        headers = {"Accept": "application/json", **kwargs.pop("headers", {})}
        resp = requests.request(method, self._url(path), headers=headers, **kwargs)
        if not resp.ok:
            logger.warning(
                "Downstream API %s %s returned status=%s", method, path, resp.status_code
            )
        return resp

    def _json(self, resp: requests.Response, method: str, path: str) -> Any:
        if not resp.ok:
            raise DownstreamApiError(
                resp.status_code, f"{method} {path} failed with status {resp.status_code}"
            )
        try:
            return resp.json()
        except ValueError:
            raise DownstreamApiError(resp.status_code, f"{method} {path} returned non-JSON") from None

    def get_json(self, path: str, **kwargs: Any) -> Any:
        return self._json(self.request("GET", path, **kwargs), "GET", path)

    def post_json(self, path: str, payload: Any, **kwargs: Any) -> Any:
        return self._json(self.request("POST", path, json=payload, **kwargs), "POST", path)
