from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol
from urllib.parse import urljoin

import requests

from .errors import TransientTransportError
from .results import HttpResponse

log = logging.getLogger(__name__)


class Transport(Protocol):
    def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        ...


class RequestsTransport:
    """Transport over a requests.Session.

    Connection failures and timeouts are raised as TransientTransportError;
    every HTTP status, error or not, comes back as an HttpResponse.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        *,
        base_url: str = "",
        token: Optional[str] = None,
        default_headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/") + "/" if base_url else ""
        self._headers = {"Accept": "application/json"}
        if token:
            self._headers["Authorization"] = f"Bearer {token}"
        if default_headers:
            self._headers.update(default_headers)

    def _url(self, url: str) -> str:
        if self._base_url and "://" not in url:
            return urljoin(self._base_url, url.lstrip("/"))
        return url

    def send(
        self,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        full_url = self._url(url)
        merged = dict(self._headers)
        if headers:
            merged.update(headers)

        try:
            resp = self._session.request(method, full_url, json=json, headers=merged, timeout=timeout)
        except (requests.ConnectionError, requests.Timeout) as exc:
            raise TransientTransportError(full_url, str(exc)) from exc

        log.debug("%s %s -> %s", method, full_url, resp.status_code)
        return HttpResponse(
            status_code=resp.status_code,
            headers=dict(resp.headers),
            body=_decode(resp),
            text=resp.text,
            method=method.upper(),
            url=full_url,
        )

    def close(self) -> None:
        self._session.close()


def _decode(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return None
