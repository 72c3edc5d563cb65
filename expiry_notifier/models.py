"""Data models for directory principals, profiles, environments and delivery state."""
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional


ALL_USERS = "All Users"
PROFILE_STATUSES = ("active", "paused", "dryrun")
AUDIT_STATUSES = ("sent", "failed")
DEFAULT_EXPIRY_DAYS = 90
DEFAULT_SUBJECT = "Action Required: Password Expiry Warning"
DEFAULT_BODY = (
    "Hi {{user.displayName}},\n\n"
    "Your password for {{user.userPrincipalName}} is set to expire on {{expiryDate}}.\n\n"
    "Please reset it soon."
)

_PREFERRED_TIME = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ProfileValidationError(ValueError):
    """Raised when a notification profile cannot be saved as given."""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(raw: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (Graph style, trailing ``Z`` allowed) to aware UTC."""

    if not raw:
        return None
    if isinstance(raw, datetime):
        dt = raw
    else:
        text = str(raw).strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _unique_preserve(values: Iterable[Any]) -> List[str]:
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        cleaned = str(value or "").strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


def _split_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return _unique_preserve(value.split(","))
    return _unique_preserve(value)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class DirectoryPrincipal:
    """A directory identity as returned by Microsoft Graph ``/users``."""

    id: str
    display_name: str
    user_principal_name: str
    account_enabled: bool = True
    on_premises_sync_enabled: bool = False
    password_policies: str = ""
    last_password_change: Optional[datetime] = None
    created: Optional[datetime] = None
    groups: List[str] = field(default_factory=list)
    manager_email: Optional[str] = None

    @property
    def is_hybrid(self) -> bool:
        return self.on_premises_sync_enabled is True

    @classmethod
    def from_graph(cls, data: Dict[str, Any]) -> "DirectoryPrincipal":
        groups: List[str] = []
        for entry in data.get("memberOf") or []:
            if isinstance(entry, dict) and entry.get("displayName"):
                groups.append(str(entry["displayName"]))
        groups.extend(str(name) for name in data.get("assignedGroups") or [] if name)
        manager = data.get("manager") or {}
        manager_email = data.get("managerEmail") or (
            (manager.get("mail") or manager.get("userPrincipalName"))
            if isinstance(manager, dict)
            else None
        )
        return cls(
            id=str(data.get("id") or ""),
            display_name=str(data.get("displayName") or ""),
            user_principal_name=str(data.get("userPrincipalName") or ""),
            account_enabled=data.get("accountEnabled") is not False,
            on_premises_sync_enabled=data.get("onPremisesSyncEnabled") is True,
            password_policies=str(data.get("passwordPolicies") or ""),
            last_password_change=parse_timestamp(data.get("lastPasswordChangeDateTime")),
            created=parse_timestamp(data.get("createdDateTime")),
            groups=_unique_preserve(groups),
            manager_email=str(manager_email) if manager_email else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "userPrincipalName": self.user_principal_name,
            "accountEnabled": self.account_enabled,
            "onPremisesSyncEnabled": self.on_premises_sync_enabled,
            "passwordPolicies": self.password_policies or None,
            "lastPasswordChangeDateTime": format_timestamp(self.last_password_change),
            "createdDateTime": format_timestamp(self.created),
            "assignedGroups": list(self.groups),
            "managerEmail": self.manager_email,
        }


@dataclass(frozen=True)
class ExpiryRecord:
    """Point-in-time password expiry snapshot for one principal."""

    last_set: datetime
    never_expires: bool
    expiry_date: Optional[datetime]
    days_remaining: int
    days_since_reset: int

    @property
    def is_expired(self) -> bool:
        return not self.never_expires and self.days_remaining < 0


@dataclass
class RecipientPolicy:
    to_user: bool = True
    to_manager: bool = False
    to_admins: List[str] = field(default_factory=list)
    read_receipt: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RecipientPolicy":
        data = data or {}
        return cls(
            to_user=data.get("toUser", True) is not False,
            to_manager=bool(data.get("toManager", False)),
            to_admins=_split_list(data.get("toAdmins")),
            read_receipt=bool(data.get("readReceipt", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "toUser": self.to_user,
            "toManager": self.to_manager,
            "toAdmins": list(self.to_admins),
            "readReceipt": self.read_receipt,
        }


@dataclass
class NotificationProfile:
    """A reminder policy: which groups, which offsets, which message."""

    id: str
    name: str
    description: str = ""
    subject_line: str = DEFAULT_SUBJECT
    email_template: str = DEFAULT_BODY
    days_before: List[int] = field(default_factory=lambda: [14, 7, 1])
    recipients: RecipientPolicy = field(default_factory=RecipientPolicy)
    assigned_groups: List[str] = field(default_factory=lambda: [ALL_USERS])
    preferred_time: Optional[str] = None
    status: str = "active"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationProfile":
        cadence = data.get("cadence")
        if isinstance(cadence, dict):
            raw_days = cadence.get("daysBefore")
        else:
            raw_days = data.get("daysBefore", cadence)
        if raw_days is None:
            raw_days = [14, 7, 1]
        elif isinstance(raw_days, str):
            raw_days = [part for part in raw_days.split(",") if part.strip()]
        elif not isinstance(raw_days, (list, tuple, set)):
            raw_days = [raw_days]
        try:
            days = [int(str(value).strip()) for value in raw_days]
        except ValueError as exc:
            raise ProfileValidationError(f"Cadence offsets must be whole numbers: {exc}") from exc

        groups = data.get("assignedGroups")
        return cls(
            id=str(data.get("id") or "").strip(),
            name=str(data.get("name") or "").strip(),
            description=str(data.get("description") or ""),
            subject_line=str(data.get("subjectLine") or DEFAULT_SUBJECT),
            email_template=str(data.get("emailTemplate") or DEFAULT_BODY),
            days_before=days,
            recipients=RecipientPolicy.from_dict(data.get("recipients")),
            assigned_groups=_split_list(groups) if groups is not None else [ALL_USERS],
            preferred_time=(str(data.get("preferredTime")).strip() or None)
            if data.get("preferredTime")
            else None,
            status=str(data.get("status") or "active").strip().lower(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "subjectLine": self.subject_line,
            "emailTemplate": self.email_template,
            "cadence": {"daysBefore": list(self.days_before)},
            "recipients": self.recipients.to_dict(),
            "assignedGroups": list(self.assigned_groups),
            "preferredTime": self.preferred_time,
            "status": self.status,
        }

    def validated(self) -> "NotificationProfile":
        """Return a normalized copy, raising :class:`ProfileValidationError` if invalid."""

        from .cadence import validate_cadence

        if not self.name:
            raise ProfileValidationError("Profile name is required.")
        if self.status not in PROFILE_STATUSES:
            raise ProfileValidationError(
                f"Profile status must be one of {', '.join(PROFILE_STATUSES)}."
            )
        if self.preferred_time and not _PREFERRED_TIME.match(self.preferred_time):
            raise ProfileValidationError("Preferred time must use 24-hour HH:MM format.")
        if not self.assigned_groups:
            raise ProfileValidationError("At least one target group is required.")
        return NotificationProfile(
            id=self.id or _new_id(),
            name=self.name,
            description=self.description,
            subject_line=self.subject_line,
            email_template=self.email_template,
            days_before=validate_cadence(self.days_before),
            recipients=self.recipients,
            assigned_groups=list(self.assigned_groups),
            preferred_time=self.preferred_time,
            status=self.status,
        )


@dataclass
class GraphApiConfig:
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""
    default_expiry_days: int = DEFAULT_EXPIRY_DAYS

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "GraphApiConfig":
        data = data or {}
        try:
            days = int(data.get("defaultExpiryDays") or DEFAULT_EXPIRY_DAYS)
        except (TypeError, ValueError):
            days = DEFAULT_EXPIRY_DAYS
        return cls(
            tenant_id=str(data.get("tenantId") or "").strip(),
            client_id=str(data.get("clientId") or "").strip(),
            client_secret=str(data.get("clientSecret") or ""),
            default_expiry_days=days if days > 0 else DEFAULT_EXPIRY_DAYS,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenantId": self.tenant_id,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
            "defaultExpiryDays": self.default_expiry_days,
        }


@dataclass
class SmtpConfig:
    host: str = ""
    port: int = 587
    secure: bool = True
    username: str = ""
    password: str = ""
    from_email: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.host and self.from_email)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SmtpConfig":
        data = data or {}
        try:
            port = int(data.get("port") or 587)
        except (TypeError, ValueError):
            port = 587
        return cls(
            host=str(data.get("host") or "").strip(),
            port=port,
            secure=data.get("secure", True) is not False,
            username=str(data.get("username") or ""),
            password=str(data.get("password") or ""),
            from_email=str(data.get("fromEmail") or "").strip(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "secure": self.secure,
            "username": self.username,
            "password": self.password,
            "fromEmail": self.from_email,
        }


@dataclass
class ValidationResult:
    auth: bool = False
    user_scope: bool = False
    group_scope: bool = False
    timestamp: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ValidationResult":
        data = data or {}
        return cls(
            auth=bool(data.get("auth")),
            user_scope=bool(data.get("userScope")),
            group_scope=bool(data.get("groupScope")),
            timestamp=data.get("timestamp"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "auth": self.auth,
            "userScope": self.user_scope,
            "groupScope": self.group_scope,
            "timestamp": self.timestamp,
        }


@dataclass
class EnvironmentProfile:
    """A named set of Graph and SMTP credentials; one is active at a time."""

    id: str
    name: str
    active: bool = False
    graph: GraphApiConfig = field(default_factory=GraphApiConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    last_validation: ValidationResult = field(default_factory=ValidationResult)

    @classmethod
    def default(cls) -> "EnvironmentProfile":
        return cls(id="default", name="Global Controller", active=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EnvironmentProfile":
        return cls(
            id=str(data.get("id") or _new_id()),
            name=str(data.get("name") or "Unnamed Environment"),
            active=bool(data.get("active")),
            graph=GraphApiConfig.from_dict(data.get("graph")),
            smtp=SmtpConfig.from_dict(data.get("smtp")),
            last_validation=ValidationResult.from_dict(data.get("lastValidation")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "active": self.active,
            "graph": self.graph.to_dict(),
            "smtp": self.smtp.to_dict(),
            "lastValidation": self.last_validation.to_dict(),
        }


@dataclass(frozen=True)
class AuditEntry:
    """One delivery attempt. Never mutated once written."""

    timestamp: str
    recipient: str
    profile_id: str
    status: str
    profile_name: Optional[str] = None
    user_id: Optional[str] = None
    days_remaining: Optional[int] = None
    offset: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuditEntry":
        def _optional_int(value: Any) -> Optional[int]:
            try:
                return int(value) if value is not None else None
            except (TypeError, ValueError):
                return None

        return cls(
            timestamp=str(data.get("timestamp") or ""),
            recipient=str(data.get("recipient") or ""),
            profile_id=str(data.get("profileId") or ""),
            status=str(data.get("status") or "failed"),
            profile_name=data.get("profileName"),
            user_id=data.get("userId"),
            days_remaining=_optional_int(data.get("daysRemaining")),
            offset=_optional_int(data.get("offset")),
            error=data.get("error"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp,
            "recipient": self.recipient,
            "profileId": self.profile_id,
            "profileName": self.profile_name,
            "userId": self.user_id,
            "status": self.status,
            "daysRemaining": self.days_remaining,
            "offset": self.offset,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass
class QueueItem:
    id: str
    recipient: str
    scheduled_for: str
    profile_name: str
    profile_id: Optional[str] = None
    status: str = "pending"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "QueueItem":
        return cls(
            id=str(data.get("id") or _new_id()),
            recipient=str(data.get("recipient") or ""),
            scheduled_for=str(data.get("scheduledFor") or ""),
            profile_name=str(data.get("profileName") or ""),
            profile_id=data.get("profileId"),
            status=str(data.get("status") or "pending"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient": self.recipient,
            "scheduledFor": self.scheduled_for,
            "profileName": self.profile_name,
            "profileId": self.profile_id,
            "status": self.status,
        }


__all__ = [
    "ALL_USERS",
    "AUDIT_STATUSES",
    "AuditEntry",
    "DEFAULT_EXPIRY_DAYS",
    "DirectoryPrincipal",
    "EnvironmentProfile",
    "ExpiryRecord",
    "GraphApiConfig",
    "NotificationProfile",
    "PROFILE_STATUSES",
    "ProfileValidationError",
    "QueueItem",
    "RecipientPolicy",
    "SmtpConfig",
    "ValidationResult",
    "format_timestamp",
    "parse_timestamp",
    "utc_now",
]
