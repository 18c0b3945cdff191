"""httpx-backed requester for ``http_request`` nodes."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from flowpilot import constants
from flowpilot.capabilities.base import HttpRequester, HttpResult

LOG = logging.getLogger(__name__)


class HttpxRequester(HttpRequester):
    """Sends node-defined requests; failures come back as data."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None) -> None:
        self.timeout = timeout if timeout is not None else constants.HTTP_NODE_TIMEOUT
        self.transport = transport

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ) -> HttpResult:
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = str(body)

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOG.warning("HTTP node request %s %s failed: %s", method, url, exc)
            return HttpResult(error=str(exc) or exc.__class__.__name__)

        return HttpResult(status=response.status_code, body=_decode_body(response))


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
