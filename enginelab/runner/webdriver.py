"""
Minimal W3C WebDriver client.

Only what a measurement run needs: open a session, navigate, count elements
for a CSS selector, and close the session so the browser exits cleanly.
<https://www.w3.org/TR/webdriver/>
"""

import logging
import socket
import time
from typing import Any, Callable, Dict, Optional

import httpx

from enginelab.core.exceptions import WebDriverError
from enginelab.core.utils import poll_until

logger = logging.getLogger(__name__)


def free_port() -> int:
    """Pick an unused localhost TCP port for a WebDriver endpoint."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class WebDriverClient:
    """
    Synchronous WebDriver client over httpx.

    Usage:
        with WebDriverClient("http://127.0.0.1:4444") as driver:
            driver.wait_until_ready(timeout=30)
            driver.new_session({"acceptInsecureCerts": True})
            driver.navigate("https://servo.org/")
            driver.delete_session()
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)
        self.session_id: Optional[str] = None

    def __enter__(self) -> "WebDriverClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ==========================================================================
    # Endpoint lifecycle
    # ==========================================================================

    def is_ready(self) -> bool:
        """Whether the endpoint accepts new sessions."""
        try:
            response = self._client.get("/status")
        except httpx.TransportError:
            return False
        if response.status_code != 200:
            return False
        try:
            body = response.json()
        except ValueError:
            return False
        value = body.get("value") if isinstance(body, dict) else None
        if not isinstance(value, dict):
            return False
        return bool(value.get("ready", True))

    def wait_until_ready(
        self,
        timeout: float,
        interval: float = 0.25,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not poll_until(self.is_ready, timeout=timeout, interval=interval, sleep=sleep):
            raise WebDriverError(f"WebDriver endpoint {self.base_url} not ready after {timeout:.0f}s")

    # ==========================================================================
    # Session commands
    # ==========================================================================

    def new_session(self, capabilities: Dict[str, Any]) -> str:
        value = self._request("POST", "/session", {"capabilities": {"alwaysMatch": capabilities}})
        session_id = value.get("sessionId") if isinstance(value, dict) else None
        if not session_id:
            raise WebDriverError(f"New session response has no sessionId: {value!r}")
        self.session_id = session_id
        logger.debug(f"WebDriver session {session_id} started")
        return session_id

    def navigate(self, url: str) -> None:
        self._request("POST", self._session_path("url"), {"url": url})

    def find_elements(self, css_selector: str) -> int:
        """Number of elements currently matching a CSS selector."""
        value = self._request(
            "POST",
            self._session_path("elements"),
            {"using": "css selector", "value": css_selector},
        )
        if not isinstance(value, list):
            raise WebDriverError(f"Find elements returned {value!r}")
        return len(value)

    def delete_session(self) -> None:
        if self.session_id is None:
            return
        self._request("DELETE", self._session_path())
        logger.debug(f"WebDriver session {self.session_id} deleted")
        self.session_id = None

    # ==========================================================================
    # Transport
    # ==========================================================================

    def _session_path(self, command: str = "") -> str:
        if self.session_id is None:
            raise WebDriverError("No active WebDriver session")
        path = f"/session/{self.session_id}"
        return f"{path}/{command}" if command else path

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
        try:
            response = self._client.request(method, path, json=payload)
        except httpx.HTTPError as e:
            raise WebDriverError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        value = body.get("value") if isinstance(body, dict) else None

        if response.status_code >= 400:
            if isinstance(value, dict):
                detail = f"{value.get('error', 'error')}: {value.get('message', '')}".strip()
            else:
                detail = response.text
            raise WebDriverError(f"{method} {path} returned {response.status_code}: {detail}")

        return value
