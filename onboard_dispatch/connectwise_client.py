"""ConnectWise Manage (PSA) ticket helpers."""
from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from .config import ConnectWiseConfig


class ConnectWiseError(RuntimeError):
    """Base exception for ConnectWise Manage operations."""


class ConnectWiseConfigurationError(ConnectWiseError):
    """Raised when ConnectWise credentials are missing."""


class ConnectWiseConnectionError(ConnectWiseError):
    """Raised when ConnectWise Manage cannot be reached."""


class ConnectWiseTimeoutError(ConnectWiseConnectionError):
    """Raised when a ConnectWise Manage request times out."""


class ConnectWiseApiError(ConnectWiseError):
    """Raised when the ConnectWise REST API returns an error."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


class ConnectWiseClient:
    """Minimal ConnectWise Manage REST client for ticket notes."""

    def __init__(self, config: ConnectWiseConfig) -> None:
        if not config.has_credentials:
            raise ConnectWiseConfigurationError(
                "ConnectWise credentials are not configured. "
                "Provide company_id, public_key, private_key, and client_id."
            )
        self._config = config
        self._session = requests.Session()
        self._session.auth = (f"{config.company_id}+{config.public_key}", config.private_key)
        self._session.headers.update(
            {
                "clientId": str(config.client_id),
                "Accept": "application/json",
            }
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._session.request(
                method,
                self._config.base_url + path,
                timeout=self._config.timeout,
                **kwargs,
            )
        except requests.Timeout as exc:
            raise ConnectWiseTimeoutError(f"ConnectWise request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise ConnectWiseConnectionError(f"Unable to reach ConnectWise: {exc}") from exc
        if response.status_code >= 400:
            try:
                payload = response.json()
                message = payload.get("message") or response.text
            except ValueError:
                message = response.text or "Unknown ConnectWise error."
            raise ConnectWiseApiError(response.status_code, str(message))
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def add_ticket_note(
        self,
        ticket_id: str,
        text: str,
        internal: Optional[bool] = None,
    ) -> Dict[str, Any]:
        internal_note = self._config.internal_note if internal is None else internal
        payload = {
            "text": text,
            "detailDescriptionFlag": not internal_note,
            "internalAnalysisFlag": internal_note,
            "resolutionFlag": False,
        }
        return self._request("POST", f"/service/tickets/{ticket_id}/notes", json=payload)


__all__ = [
    "ConnectWiseApiError",
    "ConnectWiseClient",
    "ConnectWiseConfigurationError",
    "ConnectWiseConnectionError",
    "ConnectWiseError",
    "ConnectWiseTimeoutError",
]
