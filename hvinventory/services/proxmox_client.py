"""Minimal Proxmox VE / Datacenter Manager REST client."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from ..core.config import settings
from ..core.models import Credential, CredentialKind

logger = logging.getLogger(__name__)


class ProxmoxAPIError(RuntimeError):
    """Raised when a Proxmox API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, path: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.path = path


class ProxmoxAuthenticationError(ProxmoxAPIError):
    """Raised when credentials or tokens are rejected (HTTP 401)."""


class ProxmoxClient:
    """One authenticated REST session against a Proxmox endpoint.

    TLS verification is a property of this client instance only; nothing
    process-wide is touched, so other connections keep their own policy.
    """

    token_scheme = "PVEAPIToken"
    ticket_cookie = "PVEAuthCookie"

    def __init__(
        self,
        address: str,
        port: int,
        credential: Credential,
        *,
        verify_tls: Optional[bool] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.address = address.strip()
        self.port = port
        self._credential = credential
        self._verify_tls = settings.proxmox_verify_tls if verify_tls is None else verify_tls
        host = self.address
        if ":" in host and not host.startswith("["):
            host = f"[{host}]"
        self.base_url = f"https://{host}:{port}/api2/json"
        self._client = httpx.Client(
            base_url=self.base_url,
            verify=self._verify_tls,
            timeout=settings.proxmox_timeout_seconds if timeout is None else timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def __enter__(self) -> "ProxmoxClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self) -> None:
        """Authenticate with an API token header or a ticket/CSRF pair."""

        if self._credential.kind == CredentialKind.TOKEN:
            # No round trip: a bad token surfaces as HTTP 401 on the first call
            self._client.headers["Authorization"] = self._token_header()
            logger.info("Using API token %s for %s", self._token_id(), self.address)
        else:
            self._login_with_ticket()

    def _token_id(self) -> str:
        username = self._credential.username.strip()
        return username.split("=", 1)[0]

    def _token_header(self) -> str:
        username = self._credential.username.strip()
        secret = self._credential.reveal().strip()
        if "=" in username and not secret:
            # Full "user@realm!name=secret" string pasted into the id field
            return f"{self.token_scheme}={username}"
        return f"{self.token_scheme}={username}={secret}"

    def _login_with_ticket(self) -> None:
        username = self._credential.username.strip()
        response = self._request(
            "POST",
            "/access/ticket",
            data={"username": username, "password": self._credential.reveal()},
        )
        data = response.get("data") or {}
        ticket = data.get("ticket")
        csrf = data.get("CSRFPreventionToken")
        if not ticket or not csrf:
            raise ProxmoxAuthenticationError(
                "Login response did not include a ticket and CSRF token",
                path="/access/ticket",
            )
        self._client.cookies.set(self.ticket_cookie, ticket)
        self._client.headers["CSRFPreventionToken"] = csrf
        logger.info("Obtained session ticket from %s for %s", self.address, username)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def get(self, path: str, **params: Any) -> Any:
        """GET ``path`` and return the unwrapped ``data`` member."""

        payload = self._request("GET", path, params=params or None)
        return payload.get("data")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        logger.debug("Proxmox %s %s%s", method, self.base_url, path)
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ProxmoxAPIError(f"{method} {path} failed: {exc}", path=path) from exc

        if response.status_code == 401:
            raise ProxmoxAuthenticationError(
                f"{method} {path} was rejected with HTTP 401: {response.reason_phrase}",
                status_code=401,
                path=path,
            )
        if response.status_code >= 400:
            raise ProxmoxAPIError(
                f"{method} {path} failed with HTTP {response.status_code}: {response.reason_phrase}",
                status_code=response.status_code,
                path=path,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProxmoxAPIError(f"{method} {path} returned invalid JSON", path=path) from exc
        if not isinstance(payload, dict):
            raise ProxmoxAPIError(f"{method} {path} returned an unexpected payload", path=path)
        return payload


def quote_segment(value: Any) -> str:
    """Escape a value for use as a single URL path segment."""
    return quote(str(value), safe="")
