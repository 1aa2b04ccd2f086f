"""
services/notification/dispatcher.py
Hands PENDING notifications to the channel senders and records the outcome.

- Each sender call is bounded by CHANNEL_SEND_TIMEOUT_SECONDS; a timeout is
  recorded as FAILED, never left PENDING.
- The outcome is written with a compare-and-set on status=PENDING, so a
  notification row is recorded exactly once even if two workers race.
- Retrying a transport is the sender's job. A FAILED row stays FAILED until
  reset_for_resend() is called explicitly.

deliver() is the one path every trigger uses: dedup, then dispatch, then a
uniform SENT | FAILED | ALREADY_EXISTS outcome.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.documents.generator import GeneratedDocument
from services.notification.dedup import DedupKey, NotificationPayload, ensure_notification
from shared.models.models import Channel, Notification, NotificationStatus, utcnow
from shared.utils.errors import NotFoundError, StateConflictError, TransientChannelError
from shared.utils.security import mask_address

logger = logging.getLogger(__name__)


# ── Sender contract ───────────────────────────────────────────

@dataclass(frozen=True)
class SendOutcome:
    delivered: bool
    provider_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "SendOutcome":
        return cls(delivered=False, error=error)


class ChannelSender(Protocol):
    async def send_email(
        self, to: str, template_id: str, payload: dict, attachments: Sequence[GeneratedDocument]
    ) -> SendOutcome: ...

    async def send_sms(self, to: str, payload: dict) -> SendOutcome: ...

    async def send_whatsapp(self, to: str, template_id: str, variables: dict) -> SendOutcome: ...


class DispatchOutcome(str, Enum):
    SENT = "SENT"
    FAILED = "FAILED"
    ALREADY_EXISTS = "ALREADY_EXISTS"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DispatchOutcome
    notification: Notification

    @property
    def notification_id(self) -> uuid.UUID:
        return self.notification.id


# ── Dispatcher ────────────────────────────────────────────────

class ChannelDispatcher:

    def __init__(
        self,
        sender: ChannelSender,
        timeout_seconds: float = settings.CHANNEL_SEND_TIMEOUT_SECONDS,
    ):
        self.sender = sender
        self.timeout_seconds = timeout_seconds

    async def _call_sender(
        self, notification: Notification, attachments: Sequence[GeneratedDocument]
    ) -> SendOutcome:
        channel = Channel(notification.channel)
        to = notification.recipient_address
        if channel == Channel.EMAIL:
            return await self.sender.send_email(
                to, notification.template_id, notification.payload, attachments
            )
        if channel == Channel.SMS:
            return await self.sender.send_sms(to, notification.payload)
        return await self.sender.send_whatsapp(to, notification.template_id, notification.payload)

    async def send(
        self, notification: Notification, attachments: Sequence[GeneratedDocument] = ()
    ) -> SendOutcome:
        """Invoke the sender for this channel; every failure mode becomes a failed outcome."""
        try:
            return await asyncio.wait_for(
                self._call_sender(notification, attachments), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            return SendOutcome.failed(f"Sender timed out after {self.timeout_seconds}s")
        except TransientChannelError as e:
            return SendOutcome.failed(str(e))
        except Exception as e:
            logger.exception(f"Sender raised for notification {notification.id}: {e}")
            return SendOutcome.failed(f"{type(e).__name__}: {e}")

    async def dispatch(
        self,
        db: AsyncSession,
        notification: Notification,
        attachments: Sequence[GeneratedDocument] = (),
    ) -> NotificationStatus:
        """
        Send a PENDING notification and record SENT/FAILED exactly once.
        Commits. Non-PENDING rows are left alone and their status returned.
        """
        if notification.status != NotificationStatus.PENDING:
            logger.info(
                f"Notification {notification.id} is {notification.status.value}, not dispatching"
            )
            return NotificationStatus(notification.status)

        outcome = await self.send(notification, attachments)
        status = NotificationStatus.SENT if outcome.delivered else NotificationStatus.FAILED

        recorded = await self._record(db, notification.id, status, outcome)
        await db.commit()

        if not recorded:
            current = await db.scalar(
                select(Notification.status).where(Notification.id == notification.id)
            )
            logger.warning(
                f"Notification {notification.id} outcome already recorded as "
                f"{getattr(current, 'value', current)}; dropping {status.value}"
            )
            await db.refresh(notification)
            return NotificationStatus(current)

        await db.refresh(notification)
        log = logger.info if outcome.delivered else logger.warning
        log(
            f"Notification {notification.id} {notification.channel.value} → "
            f"{mask_address(notification.recipient_address)}: {status.value}"
            + (f" ({outcome.error})" if outcome.error else "")
        )
        return status

    async def _record(
        self,
        db: AsyncSession,
        notification_id: uuid.UUID,
        status: NotificationStatus,
        outcome: SendOutcome,
    ) -> bool:
        now = utcnow()
        result = await db.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status == NotificationStatus.PENDING,
            )
            .values(
                status=status,
                provider_ref=outcome.provider_ref,
                error=None if outcome.delivered else (outcome.error or "delivery failed")[:2000],
                sent_at=now if outcome.delivered else None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def reset_for_resend(self, db: AsyncSession, notification_id: uuid.UUID) -> Notification:
        """
        Operational path only: FAILED → PENDING so the same row can be
        dispatched again. Never called by the triggers themselves. Commits.

        A row failed by the dispatcher timeout may still have been delivered:
        the provider call runs in a worker thread that the timeout cannot
        stop. Twilio calls carry an HTTP timeout equal to the bound; Resend
        calls do not, so check the provider log before resending such an
        email.
        """
        notification = await db.get(Notification, notification_id, populate_existing=True)
        if not notification:
            raise NotFoundError("Notification not found", notification_id=notification_id)

        result = await db.execute(
            update(Notification)
            .where(
                Notification.id == notification_id,
                Notification.status == NotificationStatus.FAILED,
            )
            .values(status=NotificationStatus.PENDING, error=None, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise StateConflictError(
                "Only FAILED notifications can be resent",
                notification_id=notification_id,
                status=notification.status.value,
            )
        await db.commit()
        await db.refresh(notification)
        logger.info(f"Notification {notification_id} reset to PENDING for resend")
        return notification

    async def fail_stale_pending(self, db: AsyncSession, older_than: datetime) -> int:
        """Mark PENDING rows created before `older_than` as FAILED (crashed mid-dispatch). Commits."""
        result = await db.execute(
            update(Notification)
            .where(
                Notification.status == NotificationStatus.PENDING,
                Notification.created_at < older_than,
            )
            .values(
                status=NotificationStatus.FAILED,
                error="No delivery outcome recorded before timeout",
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        count = max(result.rowcount or 0, 0)
        if count:
            logger.warning(f"Failed {count} notification(s) stuck in PENDING")
        return count


# ── Unified delivery path ─────────────────────────────────────

async def deliver(
    db: AsyncSession,
    dispatcher: ChannelDispatcher,
    key: DedupKey,
    build: Callable[[], NotificationPayload],
    attachments: Sequence[GeneratedDocument] = (),
) -> DeliveryResult:
    """
    ensure_notification → commit → dispatch. The row is committed before the
    sender is called so a concurrent invocation sees it and backs off.
    """
    notification, created = await ensure_notification(db, key, build)
    await db.commit()

    if not created:
        return DeliveryResult(DispatchOutcome.ALREADY_EXISTS, notification)

    status = await dispatcher.dispatch(db, notification, attachments)
    outcome = DispatchOutcome.SENT if status == NotificationStatus.SENT else DispatchOutcome.FAILED
    return DeliveryResult(outcome, notification)
