"""
services/notification/dedup.py
At most one notification per (scope, recipient, channel, purpose).

ensure_notification is the single path that creates notification rows.
The cheap SELECT short-circuits replays; the INSERT ... ON CONFLICT DO
NOTHING against uq_notification_dedup_key is what actually decides a race
between two concurrent invocations.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import insert_ignoring_conflicts
from shared.models.models import (
    Channel,
    Notification,
    NotificationStatus,
    RecipientClass,
    utcnow,
)
from shared.utils.security import mask_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DedupKey:
    scope_id: str          # booking id or attribution id
    recipient_key: str     # normalised address, or "professional:<id>"
    channel: Channel
    purpose: str           # e.g. "PAYMENT_COMPLETED:CUSTOMER"

    def as_filter(self):
        return (
            Notification.scope_id == self.scope_id,
            Notification.recipient_key == self.recipient_key,
            Notification.channel == self.channel,
            Notification.purpose == self.purpose,
        )

    def __str__(self) -> str:
        return f"{self.scope_id}/{mask_address(self.recipient_key)}/{self.channel.value}/{self.purpose}"


@dataclass
class NotificationPayload:
    """What build() must produce for a new notification row."""
    recipient_class: RecipientClass
    recipient_address: str
    template_id: str
    payload: dict[str, Any]
    meta: dict[str, Any] = field(default_factory=dict)
    booking_id: Optional[uuid.UUID] = None


async def find_notification(db: AsyncSession, key: DedupKey) -> Optional[Notification]:
    return await db.scalar(
        select(Notification).where(*key.as_filter()).execution_options(populate_existing=True)
    )


async def ensure_notification(
    db: AsyncSession,
    key: DedupKey,
    build: Callable[[], NotificationPayload],
) -> tuple[Notification, bool]:
    """
    Return (notification, created).

    An existing row for `key` is returned untouched whatever its status, so
    a FAILED notification is never silently recreated. build() is only
    called when no row exists; if it raises, nothing is written and the
    error propagates. The caller commits.
    """
    existing = await find_notification(db, key)
    if existing:
        logger.info(f"Notification {key} already exists ({existing.status.value}), skipping")
        return existing, False

    draft = build()

    now = utcnow()
    new_id = await insert_ignoring_conflicts(
        db,
        Notification,
        {
            "id": uuid.uuid4(),
            "scope_id": key.scope_id,
            "recipient_key": key.recipient_key,
            "channel": key.channel,
            "purpose": key.purpose,
            "booking_id": draft.booking_id,
            "recipient_class": draft.recipient_class,
            "recipient_address": draft.recipient_address,
            "template_id": draft.template_id,
            "status": NotificationStatus.PENDING,
            "payload": draft.payload,
            "meta": draft.meta,
            "created_at": now,
            "updated_at": now,
        },
        returning=Notification.id,
    )

    if new_id is None:
        # A concurrent invocation inserted the same key first
        existing = await find_notification(db, key)
        logger.info(f"Notification {key} created concurrently, reusing {existing.id}")
        return existing, False

    notification = await db.get(Notification, new_id)
    logger.info(f"Notification {new_id} created for {key}")
    return notification, True
