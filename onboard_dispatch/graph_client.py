"""Microsoft Graph helper utilities."""
from __future__ import annotations

import re
import threading
from typing import Any, Dict, List, Optional

import msal
import requests

from .config import GraphConfig


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
GROUP_SELECT = (
    "id,displayName,mail,mailEnabled,securityEnabled,groupTypes,"
    "onPremisesSyncEnabled,membershipRule"
)
_GUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class GraphClientError(RuntimeError):
    """Base exception for Microsoft Graph client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when the Microsoft Graph integration is not configured."""


class GraphConnectionError(GraphClientError):
    """Raised when Microsoft Graph cannot be reached."""


class GraphTimeoutError(GraphConnectionError):
    """Raised when a Microsoft Graph request times out."""


class GraphApiError(GraphClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


def is_guid(value: str) -> bool:
    return bool(_GUID_PATTERN.match((value or "").strip()))


def _escape(value: str) -> str:
    return value.replace("'", "''")


class GraphClient:
    """Lightweight Microsoft Graph client bound to one customer tenant."""

    def __init__(self, config: GraphConfig, tenant_id: Optional[str] = None) -> None:
        tenant = (tenant_id or config.tenant_id or "").strip()
        if not config.has_credentials or not tenant:
            raise GraphConfigurationError(
                "Microsoft Graph credentials are not configured. "
                "Provide client_id, client_secret, and a tenant id."
            )

        self._config = config
        self.tenant_id = tenant
        self._authority = f"https://login.microsoftonline.com/{tenant}"
        self._app = msal.ConfidentialClientApplication(
            client_id=config.client_id,
            client_credential=config.client_secret,
            authority=self._authority,
        )
        self._token_lock = threading.Lock()
        self._session = requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        try:
            with self._token_lock:
                result = self._app.acquire_token_silent(GRAPH_SCOPE, account=None)
                if not result:
                    result = self._app.acquire_token_for_client(scopes=GRAPH_SCOPE)
        except requests.Timeout as exc:
            raise GraphTimeoutError(f"Token request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise GraphConnectionError(f"Unable to reach the token endpoint: {exc}") from exc

        if "access_token" not in result:
            raise GraphApiError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", "Unable to acquire Graph token."),
            )
        return str(result["access_token"])

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = path if path.startswith("https://") else GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=self._config.timeout,
                headers=headers,
                **kwargs,
            )
        except requests.Timeout as exc:
            raise GraphTimeoutError(f"Microsoft Graph request timed out: {exc}") from exc
        except requests.RequestException as exc:
            raise GraphConnectionError(f"Unable to reach Microsoft Graph: {exc}") from exc
        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except ValueError:
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise GraphApiError(response.status_code, code, message)

        if not response.content:
            return {}
        return response.json()

    def _paged(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        result = self._request("GET", path, params=params)
        items.extend(result.get("value", []))
        next_link = result.get("@odata.nextLink")
        while next_link:
            result = self._request("GET", next_link)
            items.extend(result.get("value", []))
            next_link = result.get("@odata.nextLink")
        return items

    # ------------------------------------------------------------------ #
    # Users                                                              #
    # ------------------------------------------------------------------ #
    def find_user(self, query: str, select: Optional[str] = None) -> Optional[Dict[str, Any]]:
        cleaned = (query or "").strip()
        if not cleaned:
            return None
        escaped = _escape(cleaned)
        filters = [
            f"userPrincipalName eq '{escaped}'",
            f"mail eq '{escaped}'",
        ]
        params = {"$filter": " or ".join(filters)}
        if select:
            params["$select"] = select
        result = self._request("GET", "/users", params=params)
        values = result.get("value") or []
        return values[0] if values else None

    def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/users", json=payload)

    def update_user(self, user_id: str, **fields: Any) -> Dict[str, Any]:
        payload = {key: value for key, value in fields.items() if value is not None}
        if not payload:
            return {}
        return self._request("PATCH", f"/users/{user_id}", json=payload)

    def set_manager(self, user_id: str, manager_id: str) -> None:
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/users/{manager_id}"}
        self._request("PUT", f"/users/{user_id}/manager/$ref", json=payload)

    def get_user_groups(self, user_id: str) -> List[Dict[str, Any]]:
        """Return the groups ``user_id`` is a direct member of."""

        entries = self._paged(
            f"/users/{user_id}/memberOf/microsoft.graph.group",
            params={"$select": GROUP_SELECT},
        )
        return [entry for entry in entries if entry.get("id")]

    # ------------------------------------------------------------------ #
    # Group helpers                                                      #
    # ------------------------------------------------------------------ #
    def get_group(self, group_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/groups/{group_id}", params={"$select": GROUP_SELECT})

    def find_group(self, name_or_id: str) -> Optional[Dict[str, Any]]:
        """Resolve a group by object id or exact display name / mail address."""

        cleaned = (name_or_id or "").strip()
        if not cleaned:
            return None
        if is_guid(cleaned):
            try:
                return self.get_group(cleaned)
            except GraphApiError as exc:
                if exc.status_code == 404:
                    return None
                raise
        escaped = _escape(cleaned)
        filters = [f"displayName eq '{escaped}'"]
        if "@" in cleaned:
            filters.append(f"mail eq '{escaped}'")
        result = self._request(
            "GET",
            "/groups",
            params={"$filter": " or ".join(filters), "$select": GROUP_SELECT},
        )
        values = result.get("value") or []
        return values[0] if values else None

    def add_user_to_group(self, user_id: str, group_id: str) -> None:
        payload = {"@odata.id": f"{GRAPH_BASE_URL}/directoryObjects/{user_id}"}
        self._request("POST", f"/groups/{group_id}/members/$ref", json=payload)

    # ------------------------------------------------------------------ #
    # Licensing                                                          #
    # ------------------------------------------------------------------ #
    def list_subscribed_skus(self) -> List[Dict[str, Any]]:
        result = self._request(
            "GET",
            "/subscribedSkus",
            params={
                "$select": "id,skuId,skuPartNumber,capabilityStatus,prepaidUnits,appliesTo,"
                "consumedUnits",
            },
        )
        return result.get("value", [])

    def assign_license(self, user_id: str, sku_id: str) -> Dict[str, Any]:
        payload = {
            "addLicenses": [{"skuId": sku_id, "disabledPlans": []}],
            "removeLicenses": [],
        }
        return self._request("POST", f"/users/{user_id}/assignLicense", json=payload)


__all__ = [
    "GraphApiError",
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "GraphConnectionError",
    "GraphTimeoutError",
    "is_guid",
]
