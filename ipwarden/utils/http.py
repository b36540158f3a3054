"""HTTP client used by feed updaters.

One ``HttpRequestMaker`` is built at startup and handed to whatever needs
it; tests construct their own with ``disable_live_requests=True``.
"""
from __future__ import annotations

import json
import logging
import threading
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import urlsplit

import requests

from .. import __version__
from ..core.errors import Cancelled

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def is_local_url(url: str) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    return host.startswith(LOCAL_HOSTS)


class HttpRequestMaker:
    """Makes GET or JSON POST requests and counts them by destination."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30,
        user_agent: Optional[str] = None,
        disable_live_requests: bool = False,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent or f"ipwarden/{__version__}"
        self.disable_live_requests = disable_live_requests
        self._lock = threading.Lock()
        self._live_request_count = 0
        self._local_request_count = 0

    @property
    def live_request_count(self) -> int:
        with self._lock:
            return self._live_request_count

    @property
    def local_request_count(self) -> int:
        with self._lock:
            return self._local_request_count

    def _count(self, url: str) -> None:
        local = is_local_url(url)
        if not local and self.disable_live_requests:
            raise RuntimeError(f"Live requests have been disabled, cannot process url {url}")
        with self._lock:
            if local:
                self._local_request_count += 1
            else:
                self._live_request_count += 1

    def make_request(
        self,
        url: str,
        post_json: Union[str, Mapping[str, Any], None] = None,
        headers: Optional[Mapping[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bytes:
        """GET ``url``, or POST ``post_json`` to it, and return the response body.

        Raises ``requests.RequestException`` on transport or HTTP status errors.
        """
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Request to {url} cancelled")
        self._count(url)

        request_headers: Dict[str, str] = {"User-Agent": self.user_agent}
        if self.disable_live_requests:
            request_headers["Cache-Control"] = "no-cache"
        for key, value in (headers or {}).items():
            request_headers[key] = str(value)

        if post_json is None or (isinstance(post_json, str) and not post_json.strip()):
            logger.debug(f"GET {url}")
            response = self.session.get(url, headers=request_headers, timeout=self.timeout)
        else:
            body = post_json if isinstance(post_json, str) else json.dumps(post_json)
            request_headers["Content-Type"] = "application/json"
            logger.debug(f"POST {url} ({len(body)} bytes)")
            response = self.session.post(url, data=body.encode("utf-8"), headers=request_headers,
                                         timeout=self.timeout)
        response.raise_for_status()

        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Request to {url} cancelled")
        return response.content

    def close(self) -> None:
        self.session.close()
