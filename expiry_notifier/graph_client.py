"""Microsoft Graph helper utilities for directory reads."""
from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import msal
import requests

from .config import GraphConfig
from .models import GraphApiConfig


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
USER_SELECT = (
    "id,displayName,userPrincipalName,accountEnabled,passwordPolicies,"
    "lastPasswordChangeDateTime,createdDateTime,onPremisesSyncEnabled"
)
ENV_CREDENTIAL_OVERRIDES = {
    "tenant_id": "AZURE_TENANT_ID",
    "client_id": "AZURE_CLIENT_ID",
    "client_secret": "AZURE_CLIENT_SECRET",
}

logger = logging.getLogger(__name__)


class GraphClientError(RuntimeError):
    """Base exception for Microsoft Graph client operations."""


class GraphConfigurationError(GraphClientError):
    """Raised when no directory credentials are configured."""


class GraphAuthError(GraphClientError):
    """Raised when the client-credential token exchange is rejected."""

    def __init__(self, error: str, description: str) -> None:
        super().__init__(f"Microsoft Auth Error: {description}")
        self.error = error
        self.description = description


class GraphTimeoutError(GraphClientError):
    """Raised when Graph or the token endpoint does not answer in time. Safe to retry."""


class GraphRequestError(GraphClientError):
    """Raised when the Microsoft Graph API returns an error."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class GroupNotFoundError(GraphClientError):
    """Raised when a group display name matches no group in the tenant."""

    def __init__(self, name: str) -> None:
        super().__init__(f"NOT_FOUND: Group '{name}' does not exist in this tenant.")
        self.name = name


def effective_credentials(graph: GraphApiConfig) -> GraphApiConfig:
    """Apply ``AZURE_*`` process environment overrides on top of stored credentials."""

    values = {
        attribute: os.environ.get(variable) or getattr(graph, attribute)
        for attribute, variable in ENV_CREDENTIAL_OVERRIDES.items()
    }
    return GraphApiConfig(default_expiry_days=graph.default_expiry_days, **values)


class GraphClient:
    """Read-only Microsoft Graph client using the client-credential flow."""

    def __init__(
        self,
        credentials: GraphApiConfig,
        settings: Optional[GraphConfig] = None,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not credentials.has_credentials:
            raise GraphConfigurationError(
                "AUTH_CONFIG_MISSING: Ensure TenantID, ClientID, and Secret are provided "
                "via the environment profile or AZURE_* variables."
            )

        self._credentials = credentials
        self._settings = settings or GraphConfig()
        self._authority = f"https://login.microsoftonline.com/{credentials.tenant_id}"
        self._app: Optional[msal.ConfidentialClientApplication] = None
        self._token_lock = threading.Lock()
        self._session = session or requests.Session()
        self._sleep = sleep

    @property
    def default_expiry_days(self) -> int:
        return self._credentials.default_expiry_days

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _confidential_app(self) -> msal.ConfidentialClientApplication:
        if self._app is None:
            try:
                self._app = msal.ConfidentialClientApplication(
                    client_id=self._credentials.client_id,
                    client_credential=self._credentials.client_secret,
                    authority=self._authority,
                    timeout=self._settings.request_timeout,
                )
            except ValueError as exc:
                raise GraphAuthError("invalid_authority", str(exc)) from exc
        return self._app

    def acquire_token(self) -> str:
        try:
            with self._token_lock:
                logger.info("OAUTH_INIT: Requesting token for %s", self._credentials.tenant_id)
                result = self._confidential_app().acquire_token_for_client(scopes=GRAPH_SCOPE)
        except requests.Timeout as exc:
            raise GraphTimeoutError("Token request to Microsoft identity platform timed out.") from exc
        except requests.RequestException as exc:
            raise GraphAuthError("connection_error", str(exc)) from exc

        if "access_token" not in result:
            error = result.get("error", "token_error")
            description = result.get("error_description", "Unable to acquire Graph token.")
            logger.error("OAUTH_FAILED: %s", description)
            raise GraphAuthError(error, description)
        return str(result["access_token"])

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        if not url.startswith("http"):
            url = GRAPH_BASE_URL + url
        attempts = 0
        while True:
            headers = dict(kwargs.pop("headers", {}) or {})
            headers.setdefault("Authorization", f"Bearer {self.acquire_token()}")
            headers.setdefault("Accept", "application/json")
            try:
                response = self._session.request(
                    method,
                    url,
                    timeout=self._settings.request_timeout,
                    headers=headers,
                    **kwargs,
                )
            except requests.Timeout as exc:
                raise GraphTimeoutError(f"Microsoft Graph request timed out: {url}") from exc
            except requests.RequestException as exc:
                raise GraphRequestError(0, "ConnectionError", str(exc)) from exc

            if response.status_code == 429 and attempts < self._settings.max_retries:
                attempts += 1
                delay = self._retry_after(response)
                logger.warning(
                    "THROTTLED: Microsoft Graph rate limit. Backing off %ss (attempt %s)...",
                    delay,
                    attempts,
                )
                self._sleep(delay)
                kwargs["headers"] = {k: v for k, v in headers.items() if k != "Authorization"}
                continue

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
                raise GraphRequestError(response.status_code, code, message)

            return response.json()

    def _retry_after(self, response: requests.Response) -> int:
        raw = response.headers.get("Retry-After")
        try:
            return max(0, int(str(raw).strip()))
        except (TypeError, ValueError):
            return self._settings.default_retry_after

    def fetch_all(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Collect every page of a Graph collection by following ``@odata.nextLink``."""

        results: List[Dict[str, Any]] = []
        payload = self._request("GET", path, params=params or {})
        results.extend(payload.get("value") or [])
        next_link = payload.get("@odata.nextLink")
        while next_link:
            logger.info("PAGINATION_ACTIVE: Aggregating directory... (%s records)", len(results))
            payload = self._request("GET", next_link)
            results.extend(payload.get("value") or [])
            next_link = payload.get("@odata.nextLink")
        return results

    # ------------------------------------------------------------------ #
    # Directory reads                                                    #
    # ------------------------------------------------------------------ #
    def list_users(self, include_groups: bool = False) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"$select": USER_SELECT, "$top": 999}
        if include_groups:
            # Graph caps expanded pages at 100 rows.
            params["$top"] = 100
            params["$expand"] = "memberOf($select=displayName)"
        return self.fetch_all("/users", params)

    def find_groups(self, name: str) -> List[Dict[str, Any]]:
        escaped = (name or "").replace("'", "''")
        result = self._request(
            "GET",
            "/groups",
            params={"$filter": f"displayName eq '{escaped}'", "$select": "id,displayName"},
        )
        return result.get("value") or []

    def get_group_by_name(self, name: str) -> Dict[str, Any]:
        groups = self.find_groups(name)
        if not groups:
            raise GroupNotFoundError(name)
        return groups[0]

    def list_transitive_members(self, group_id: str, select: str = "id") -> List[Dict[str, Any]]:
        return self.fetch_all(f"/groups/{group_id}/transitiveMembers", {"$select": select})

    def list_transitive_users(self, group_id: str) -> List[Dict[str, Any]]:
        """Nested-group-aware user membership, filtered to user objects."""

        members = self.list_transitive_members(group_id, select=USER_SELECT)
        return [
            member
            for member in members
            if member.get("@odata.type", "#microsoft.graph.user") == "#microsoft.graph.user"
        ]

    def get_manager_email(self, user_id: str) -> Optional[str]:
        try:
            manager = self._request(
                "GET", f"/users/{user_id}/manager", params={"$select": "mail,userPrincipalName"}
            )
        except GraphRequestError as exc:
            if exc.status_code == 404:
                return None
            raise
        return manager.get("mail") or manager.get("userPrincipalName") or None

    def probe(self, path: str) -> None:
        """Issue a one-row read to confirm the application holds the scope for ``path``."""

        self._request("GET", path, params={"$top": 1})


__all__ = [
    "GraphAuthError",
    "GraphClient",
    "GraphClientError",
    "GraphConfigurationError",
    "GraphRequestError",
    "GraphTimeoutError",
    "GroupNotFoundError",
    "USER_SELECT",
    "effective_credentials",
]
