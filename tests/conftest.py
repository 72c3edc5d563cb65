"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import pytest

from expiry_notifier.config import AppConfig, StorageConfig
from expiry_notifier.graph_client import GraphConfigurationError, GroupNotFoundError
from expiry_notifier.mailer import MailDeliveryError, OutboundMessage
from expiry_notifier.models import GraphApiConfig


NOW = datetime(2024, 3, 1, tzinfo=timezone.utc)


def graph_user(
    user_id: str,
    name: str,
    last_set: Optional[str] = "2024-01-01T00:00:00Z",
    created: Optional[str] = "2023-01-01T00:00:00Z",
    **extra: Any,
) -> Dict[str, Any]:
    """Build a raw Graph ``/users`` row."""

    payload: Dict[str, Any] = {
        "id": user_id,
        "displayName": name,
        "userPrincipalName": f"{user_id}@contoso.com",
        "accountEnabled": True,
        "passwordPolicies": None,
        "lastPasswordChangeDateTime": last_set,
        "createdDateTime": created,
        "onPremisesSyncEnabled": None,
    }
    payload.update(extra)
    return payload


class FakeDirectory:
    """In-memory tenant shared by every fake Graph client a test creates."""

    def __init__(
        self,
        users: Iterable[Dict[str, Any]] = (),
        groups: Optional[Dict[str, List[str]]] = None,
    ) -> None:
        self.users = list(users)
        self.groups = groups or {}
        self.managers: Dict[str, str] = {}
        self.token_error: Optional[Exception] = None


class FakeGraphClient:
    def __init__(self, credentials: GraphApiConfig, directory: FakeDirectory) -> None:
        if not credentials.has_credentials:
            raise GraphConfigurationError("AUTH_CONFIG_MISSING")
        self.credentials = credentials
        self.directory = directory

    @property
    def default_expiry_days(self) -> int:
        return self.credentials.default_expiry_days

    def acquire_token(self) -> str:
        if self.directory.token_error:
            raise self.directory.token_error
        return "token"

    def probe(self, path: str) -> None:
        self.acquire_token()

    def list_users(self, include_groups: bool = False) -> List[Dict[str, Any]]:
        return list(self.directory.users)

    def find_groups(self, name: str) -> List[Dict[str, Any]]:
        for group_name in self.directory.groups:
            if group_name.lower() == name.lower():
                return [{"id": f"group-{group_name}", "displayName": group_name}]
        return []

    def get_group_by_name(self, name: str) -> Dict[str, Any]:
        groups = self.find_groups(name)
        if not groups:
            raise GroupNotFoundError(name)
        return groups[0]

    def list_transitive_users(self, group_id: str) -> List[Dict[str, Any]]:
        member_ids = self.directory.groups[group_id[len("group-") :]]
        return [user for user in self.directory.users if user["id"] in member_ids]

    def list_transitive_members(self, group_id: str, select: str = "id") -> List[Dict[str, Any]]:
        return [{"id": user["id"]} for user in self.list_transitive_users(group_id)]

    def get_manager_email(self, user_id: str) -> Optional[str]:
        return self.directory.managers.get(user_id)


class FakeMailer:
    def __init__(self, fail_for: Iterable[str] = ()) -> None:
        self.fail_for = set(fail_for)
        self.sent: List[OutboundMessage] = []
        self.verify_error: Optional[str] = None

    def send(self, outbound: OutboundMessage) -> None:
        if self.fail_for.intersection(outbound.to):
            raise MailDeliveryError(f"{outbound.to[0]}: 550 mailbox unavailable")
        self.sent.append(outbound)

    def verify(self) -> Optional[str]:
        return self.verify_error


@pytest.fixture(autouse=True)
def _clear_azure_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for variable in ("AZURE_TENANT_ID", "AZURE_CLIENT_ID", "AZURE_CLIENT_SECRET", "PORT"):
        monkeypatch.delenv(variable, raising=False)


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(storage=StorageConfig(data_root=tmp_path))


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory(
        users=[
            graph_user("alice", "Alice Archer", last_set="2024-01-01T00:00:00Z"),
            graph_user("bob", "Bob Baker", last_set="2023-11-01T00:00:00Z"),
            graph_user(
                "carol",
                "Carol Chen",
                last_set="2023-06-01T00:00:00Z",
                passwordPolicies="DisablePasswordExpiration",
            ),
        ],
        groups={"Finance": ["alice", "bob"], "Empty": []},
    )


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def app(app_config: AppConfig, directory: FakeDirectory, mailer: FakeMailer):
    from expiry_notifier.web import create_app

    flask_app = create_app(app_config=app_config)
    flask_app.config.update(
        TESTING=True,
        GRAPH_CLIENT_FACTORY=lambda credentials, settings: FakeGraphClient(credentials, directory),
        MAILER_FACTORY=lambda smtp: mailer,
        DELIVERY_SLEEP=lambda seconds: None,
        CLOCK=lambda: NOW,
    )
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def configured_client(app, client):
    """Test client whose active environment holds Graph and SMTP credentials."""

    environment = app.config["_ENVIRONMENT_STORE"].active()
    response = client.post(
        "/api/environments",
        json={
            "action": "update",
            "id": environment.id,
            "graph": {
                "tenantId": "tenant",
                "clientId": "client",
                "clientSecret": "secret",
                "defaultExpiryDays": 90,
            },
            "smtp": {"host": "smtp.contoso.com", "port": 587, "fromEmail": "it@contoso.com"},
        },
    )
    assert response.status_code == 200
    return client
