"""Serial delivery of reminder emails with audit history and pause support."""
from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .cadence import EXACT, build_sent_log, due_offset
from .expiry import PrincipalStatus
from .models import AuditEntry, NotificationProfile, QueueItem, format_timestamp, utc_now
from .storage import HistoryStore
from .templating import build_context, render
from .mailer import OutboundMessage


DEFAULT_MESSAGE_INTERVAL = 2.0
MODES = ("live", "preview", "test")

logger = logging.getLogger(__name__)


class JobState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"


class DeliveryError(RuntimeError):
    """Base class for errors that stop a run before any message is sent."""


class JobAlreadyRunningError(DeliveryError):
    def __init__(self) -> None:
        super().__init__("BUSY: Another job is currently in progress.")


class ProfileInactiveError(DeliveryError):
    def __init__(self, profile: NotificationProfile) -> None:
        super().__init__(f"Profile '{profile.name}' is paused.")
        self.profile_id = profile.id


class MessageSender(Protocol):
    def send(self, outbound: OutboundMessage) -> None: ...


@dataclass(frozen=True)
class PlannedDelivery:
    status: PrincipalStatus
    offset: Optional[int] = None


@dataclass
class JobReport:
    profile_id: str
    profile_name: str
    mode: str
    sent: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    preview: List[Dict[str, Any]] = field(default_factory=list)
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profileId": self.profile_id,
            "profileName": self.profile_name,
            "mode": self.mode,
            "sent": list(self.sent),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "previewData": list(self.preview),
            "paused": self.paused,
        }


def plan_deliveries(
    profile: NotificationProfile,
    statuses: Iterable[PrincipalStatus],
    history: Iterable[AuditEntry] = (),
    cadence_aware: bool = False,
    match: str = EXACT,
) -> List[PlannedDelivery]:
    """Deduplicate targets and, when cadence-aware, keep only those due today."""

    sent_log = build_sent_log(history) if cadence_aware else set()
    seen: set[str] = set()
    plans: List[PlannedDelivery] = []
    for status in statuses:
        if status.key in seen:
            continue
        seen.add(status.key)
        if not cadence_aware:
            plans.append(PlannedDelivery(status=status))
            continue
        offset = due_offset(status.record, profile.days_before, sent_log, profile.id, status.key, match)
        if offset is not None:
            plans.append(PlannedDelivery(status=status, offset=offset))
    return plans


def build_outbound(
    profile: NotificationProfile,
    status: PrincipalStatus,
    manager_email: Optional[str] = None,
) -> OutboundMessage:
    context = build_context(status)
    policy = profile.recipients
    to: List[str] = [status.principal.user_principal_name] if policy.to_user else []
    cc: List[str] = []
    if policy.to_manager and manager_email:
        cc.append(manager_email)
    cc.extend(policy.to_admins)
    if not to:
        to, cc = list(dict.fromkeys(cc)), []
    cc = [address for address in dict.fromkeys(cc) if address not in to]
    return OutboundMessage(
        to=to,
        subject=render(profile.subject_line, context),
        body=render(profile.email_template, context),
        cc=cc,
        read_receipt=policy.read_receipt,
    )


def build_queue_items(
    profile: NotificationProfile,
    plans: Iterable[PlannedDelivery],
    scheduled_for: datetime,
) -> List[QueueItem]:
    when = format_timestamp(scheduled_for) or ""
    return [
        QueueItem(
            id=uuid.uuid4().hex,
            recipient=plan.status.principal.user_principal_name,
            scheduled_for=when,
            profile_name=profile.name,
            profile_id=profile.id,
        )
        for plan in plans
    ]


class DeliveryCoordinator:
    """Runs at most one delivery job at a time.

    The job lock covers every send and every inter-message sleep of a run.
    Stores keep their own locks, so reads stay available while a job waits.
    """

    def __init__(
        self,
        history: HistoryStore,
        is_paused: Callable[[], bool],
        interval: float = DEFAULT_MESSAGE_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history = history
        self._is_paused = is_paused
        self._interval = interval
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._state = JobState.IDLE

    @property
    def state(self) -> JobState:
        return self._state

    def run(
        self,
        profile: NotificationProfile,
        plans: List[PlannedDelivery],
        sender: MessageSender,
        mode: str = "live",
        test_recipient: Optional[str] = None,
        manager_lookup: Optional[Callable[[str], Optional[str]]] = None,
    ) -> JobReport:
        if mode not in MODES:
            raise ValueError(f"Unknown job mode '{mode}'. Use one of {', '.join(MODES)}.")
        if profile.status == "paused":
            raise ProfileInactiveError(profile)
        if profile.status == "dryrun":
            mode = "preview"

        report = JobReport(profile_id=profile.id, profile_name=profile.name, mode=mode)
        if mode == "preview":
            for plan in plans:
                report.preview.append(self._preview_row(plan))
            logger.info("JOB_PREVIEW: %s matched %s targets.", profile.name, len(plans))
            return report

        if mode == "test":
            if not test_recipient:
                raise ValueError("A test recipient address is required for test mode.")
            plans = plans[:1]
        else:
            test_recipient = None

        if not self._lock.acquire(blocking=False):
            raise JobAlreadyRunningError()
        self._state = JobState.RUNNING
        logger.info("JOB_START: %s processing %s targets.", profile.name, len(plans))
        try:
            self._deliver(profile, plans, sender, report, test_recipient, manager_lookup)
        finally:
            self._state = JobState.IDLE
            self._lock.release()
            logger.info(
                "JOB_COMPLETE: %s sent=%s failed=%s skipped=%s",
                profile.name,
                len(report.sent),
                len(report.failed),
                len(report.skipped),
            )
        return report

    def _deliver(
        self,
        profile: NotificationProfile,
        plans: List[PlannedDelivery],
        sender: MessageSender,
        report: JobReport,
        test_recipient: Optional[str],
        manager_lookup: Optional[Callable[[str], Optional[str]]],
    ) -> None:
        for index, plan in enumerate(plans):
            if self._is_paused():
                report.paused = True
                report.skipped.extend(
                    remaining.status.principal.user_principal_name for remaining in plans[index:]
                )
                logger.warning(
                    "QUEUE_PAUSED: Skipping %s remaining targets for %s.",
                    len(plans) - index,
                    profile.name,
                )
                return

            principal = plan.status.principal
            manager_email = principal.manager_email
            if profile.recipients.to_manager and not manager_email and manager_lookup:
                try:
                    manager_email = manager_lookup(principal.id)
                except Exception as exc:
                    logger.warning("Manager lookup failed for %s: %s", principal.user_principal_name, exc)

            outbound = build_outbound(profile, plan.status, manager_email)
            if test_recipient:
                outbound = OutboundMessage(
                    to=[test_recipient],
                    subject=f"[TEST] {outbound.subject}",
                    body=outbound.body,
                    read_receipt=outbound.read_receipt,
                )
            recipient = ", ".join(outbound.to) or principal.user_principal_name

            error: Optional[str] = None
            try:
                sender.send(outbound)
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
                report.failed.append({"recipient": recipient, "error": error})
                logger.warning("DELIVERY_FAILED: %s: %s", recipient, error)
            else:
                report.sent.append(recipient)
                logger.info("DELIVERY_OK: %s", recipient)

            self._history.append(
                AuditEntry(
                    timestamp=format_timestamp(self._clock()) or "",
                    recipient=recipient,
                    profile_id=profile.id,
                    profile_name=profile.name,
                    user_id=principal.id or None,
                    status="failed" if error else "sent",
                    days_remaining=plan.status.record.days_remaining,
                    offset=None if test_recipient else plan.offset,
                    error=error,
                )
            )

            if index < len(plans) - 1 and self._interval > 0:
                self._sleep(self._interval)

    @staticmethod
    def _preview_row(plan: PlannedDelivery) -> Dict[str, Any]:
        record = plan.status.record
        return {
            "user": plan.status.principal.display_name,
            "email": plan.status.principal.user_principal_name,
            "daysLeft": record.days_remaining,
            "expiryDate": format_timestamp(record.expiry_date),
            "offset": plan.offset,
            "action": "notify",
        }


__all__ = [
    "DeliveryCoordinator",
    "DeliveryError",
    "JobAlreadyRunningError",
    "JobReport",
    "JobState",
    "MODES",
    "PlannedDelivery",
    "ProfileInactiveError",
    "build_outbound",
    "build_queue_items",
    "plan_deliveries",
]
