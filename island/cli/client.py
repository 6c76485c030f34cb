"""HTTP client for the Claude Island API over its Unix socket."""

import os
from typing import Optional

import httpx

from ..editor_bridge import default_runtime_dir

API_TIMEOUT = 2  # seconds
BASE_URL = "http://island"


def default_socket_path() -> str:
    return os.environ.get("CLAUDE_ISLAND_SOCKET") or os.path.join(default_runtime_dir(), "claude-island.sock")


class IslandClient:
    """Client for the Claude Island API."""

    def __init__(self, socket_path: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        """
        Initialize client.

        Args:
            socket_path: Server socket (default: $CLAUDE_ISLAND_SOCKET or the runtime dir)
            transport: Override transport (tests)
        """
        self.socket_path = socket_path or default_socket_path()
        self._transport = transport

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Server not reachable
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        transport = self._transport or httpx.HTTPTransport(uds=self.socket_path)
        try:
            with httpx.Client(
                transport=transport,
                base_url=BASE_URL,
                timeout=timeout if timeout is not None else API_TIMEOUT,
            ) as client:
                response = client.request(method, path, json=data)
        except httpx.TransportError:
            return None, False, True

        if response.status_code in (200, 201):
            return response.json(), True, False
        return None, False, False

    def send_hook(self, payload: dict) -> tuple[bool, bool]:
        """
        Forward a lifecycle event.

        Returns:
            Tuple of (success, unavailable)
        """
        _, success, unavailable = self._request("POST", "/hooks/claude", payload)
        return success, unavailable

    def list_sessions(self) -> Optional[list]:
        data, success, _ = self._request("GET", "/sessions")
        if success and data:
            return data.get("sessions", [])
        return None

    def get_session(self, session_id: str) -> Optional[dict]:
        data, success, _ = self._request("GET", f"/sessions/{session_id}")
        return data if success else None

    def approve(self, session_id: str, always: bool = False) -> tuple[bool, bool]:
        data, success, unavailable = self._request(
            "POST", f"/sessions/{session_id}/approve", {"always": always}, timeout=10
        )
        return bool(success and data and data.get("success")), unavailable

    def deny(self, session_id: str, message: Optional[str] = None) -> tuple[bool, bool]:
        data, success, unavailable = self._request(
            "POST", f"/sessions/{session_id}/deny", {"message": message}, timeout=10
        )
        return bool(success and data and data.get("success")), unavailable

    def send_input(self, session_id: str, text: str) -> tuple[bool, bool]:
        data, success, unavailable = self._request(
            "POST", f"/sessions/{session_id}/input", {"text": text}, timeout=10
        )
        return bool(success and data and data.get("success")), unavailable
