# shieldcsp/scanner/fetcher.py
"""
HTTP header fetcher.

Connects to the target origin and retrieves its response headers so the
analyzers can grade them. Redirects are followed by hand so every hop is
recorded and the hop cap is enforced here rather than inside requests.

Request strategy:
    1. HEAD (no body)
    2. If HEAD raises anything other than a timeout, switch to GET for the
       rest of the chain (some origins reject HEAD); redirects, the hop cap
       and the recorded chain apply to GET the same way
    3. If HEAD returns zero headers, read the headers from a GET of the
       same URL and keep the HEAD status

Failure modes (all returned as FetchResult(success=False), never raised):
    - "request timeout after <timeout_ms>ms"
    - "too many redirects (max: <n>)"
    - the underlying network error text
"""

from __future__ import annotations

import logging
from typing import Dict, Optional
from urllib.parse import urljoin

import requests

from shieldcsp.scanner.base import FetchResult

logger = logging.getLogger(__name__)

USER_AGENT = "ShieldCSP-Scanner/1.0"
HEADERS = {"User-Agent": USER_AGENT}

DEFAULT_TIMEOUT_MS = 10000
DEFAULT_MAX_REDIRECTS = 5

REDIRECT_STATUSES = (301, 302, 303, 307, 308)


def normalize_url(url: str) -> str:
    """Prefix a bare hostname with https://."""
    u = (url or "").strip()
    if not u.startswith("http://") and not u.startswith("https://"):
        u = f"https://{u}"
    return u


def _collect_headers(response) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in response.headers.items()}


class _Timeout(Exception):
    """Internal marker so the redirect loop can bail out with one message."""


class HeaderFetcher:
    """
    Fetches security-relevant response headers from a URL.

    A requests.Session can be injected (tests pass a fake); otherwise one
    session is created per fetcher and reused for every hop.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        follow_redirects: bool = True,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        verify_tls: bool = True,
    ):
        self.session = session or requests.Session()
        self.timeout_ms = timeout_ms
        self.follow_redirects = follow_redirects
        self.max_redirects = max_redirects
        self.verify_tls = verify_tls

    def fetch(
        self,
        url: str,
        timeout_ms: Optional[int] = None,
        follow_redirects: Optional[bool] = None,
        max_redirects: Optional[int] = None,
    ) -> FetchResult:
        timeout_ms = self.timeout_ms if timeout_ms is None else timeout_ms
        follow = self.follow_redirects if follow_redirects is None else follow_redirects
        max_hops = self.max_redirects if max_redirects is None else max_redirects

        current_url = url
        redirect_chain = []
        method = "HEAD"

        try:
            current_url = normalize_url(url)
            hops = 0

            while True:
                try:
                    response = self._request(method, current_url, timeout_ms)
                except _Timeout:
                    return self._timeout_result(timeout_ms, current_url, redirect_chain)
                except requests.RequestException as e:
                    if method == "GET":
                        raise
                    # HEAD rejected outright; GET takes over for the rest of the chain
                    logger.debug("HEAD failed for %s (%s), retrying with GET", current_url, e)
                    method = "GET"
                    continue

                if follow and response.status_code in REDIRECT_STATUSES:
                    location = response.headers.get("location")
                    if location:
                        if hops >= max_hops:
                            return FetchResult(
                                success=False,
                                error=f"too many redirects (max: {max_hops})",
                                final_url=current_url,
                                redirect_chain=redirect_chain,
                                status_code=response.status_code,
                            )
                        redirect_chain.append(current_url)
                        current_url = urljoin(current_url, location)
                        hops += 1
                        continue

                headers = _collect_headers(response)
                status_code = response.status_code

                if not headers and method == "HEAD":
                    # Some origins answer HEAD with a bare status line
                    try:
                        get_response = self._request("GET", current_url, timeout_ms)
                    except _Timeout:
                        return self._timeout_result(timeout_ms, current_url, redirect_chain)
                    headers = _collect_headers(get_response)

                return FetchResult(
                    success=True,
                    headers=headers,
                    status_code=status_code,
                    final_url=current_url,
                    redirect_chain=redirect_chain,
                )

        except Exception as e:
            logger.debug("Header fetch failed for %s: %s", current_url, e)
            return FetchResult(
                success=False,
                error=str(e) or "Failed to fetch headers",
                final_url=current_url,
                redirect_chain=redirect_chain,
            )

    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, timeout_ms: int):
        try:
            response = self.session.request(
                method,
                url,
                headers=HEADERS,
                timeout=timeout_ms / 1000.0,
                allow_redirects=False,
                stream=(method == "GET"),
                verify=self.verify_tls,
            )
        except requests.Timeout as e:
            raise _Timeout() from e
        # Only headers are needed; never read the body
        close = getattr(response, "close", None)
        if close:
            close()
        return response

    @staticmethod
    def _timeout_result(timeout_ms: int, url: str, redirect_chain) -> FetchResult:
        return FetchResult(
            success=False,
            error=f"request timeout after {timeout_ms}ms",
            final_url=url,
            redirect_chain=redirect_chain,
        )
