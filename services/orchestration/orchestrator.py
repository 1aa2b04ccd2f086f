"""
services/orchestration/orchestrator.py
Single coordinator for booking triggers and attribution broadcasts.

on_booking_trigger:  resolve customer + staff → documents → dedup/dispatch → customer reminders
start_attribution:   open booking → attribution (create/reuse) → match (minus blacklist)
                     → eligibility → BROADCASTING → professional fan-out → notified flags
record_professional_response: first accept wins → booking assignment → professional reminders;
                     declines feed the refusal blacklist

Both entrypoints are safe to re-invoke: every side effect goes through a
uniqueness-constrained insert. Parallel fan-out tasks each open their own
session because an AsyncSession must not be shared across tasks.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.redis_client import RedisLocks, get_redis
from config.settings import settings
from services.attribution.blacklist import RefusalBlacklist
from services.attribution.eligibility import EligibilityLedger
from services.attribution.state_machine import AttributionStateMachine
from services.documents.generator import DocumentGenerator, GeneratedDocument
from services.matching.geo_matcher import GeoMatcher, MatchCandidate, find_candidates
from services.notification.dispatcher import (
    ChannelDispatcher,
    ChannelSender,
    DeliveryResult,
    deliver,
)
from services.notification.recipients import (
    PROFESSIONAL_ATTRIBUTION,
    NotificationDraft,
    ProfessionalRecipient,
    RecipientResolver,
)
from services.orchestration.registry import SqlRegistry
from services.reminders.scheduler import ReminderScheduler
from shared.models.models import (
    Attribution,
    AttributionStatus,
    Booking,
    BookingStatus,
    Channel,
    Notification,
    NotificationStatus,
    TriggerType,
    utcnow,
)
from shared.schemas.schemas import (
    AttributionOutcome,
    AttributionStartRequest,
    AttributionStatusResponse,
    DispatchSummary,
    EligibilityResponse,
    ProfessionalResponseResult,
    ResponseOutcome,
    StartAttributionResult,
    TriggerOptions,
    TriggerResult,
)
from shared.utils.errors import (
    AttributionFinalizedError,
    EngineError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from shared.utils.geo import is_valid_coordinate
from shared.utils.locks import KeyedLock
from shared.utils.security import mask_address

logger = logging.getLogger(__name__)

REMINDER_TRIGGERS = (TriggerType.BOOKING_CONFIRMED, TriggerType.PAYMENT_COMPLETED)
CLOSED_BOOKING_STATUSES = (BookingStatus.CANCELLED, BookingStatus.ARCHIVED)


class Orchestrator:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        sender: ChannelSender,
        documents: DocumentGenerator,
        matcher: Optional[GeoMatcher] = None,
        scheduler: Optional[ReminderScheduler] = None,
        registry_factory: Callable = SqlRegistry,
        redis_provider: Optional[Callable] = None,
        fanout_concurrency: int = settings.FANOUT_CONCURRENCY,
        estimate_ratio: float = settings.PROFESSIONAL_ESTIMATE_RATIO,
    ):
        self.session_factory = session_factory
        self.documents = documents
        self.dispatcher = ChannelDispatcher(sender)
        self.matcher = matcher or GeoMatcher()
        self.scheduler = scheduler or ReminderScheduler()
        self.ledger = EligibilityLedger()
        self.blacklist = RefusalBlacklist()
        self.state_machine = AttributionStateMachine()
        self.registry_factory = registry_factory
        self.redis_provider = redis_provider
        self.fanout_concurrency = fanout_concurrency
        self.estimate_ratio = estimate_ratio
        self.locks = KeyedLock()

    # ── Locking (optimisation only) ───────────────────────────

    @asynccontextmanager
    async def _exclusive(self, name: str) -> AsyncIterator[None]:
        """Per-process mutex plus a best-effort Redis lock across workers."""
        async with self.locks.hold(name):
            client = self.redis_provider() if self.redis_provider else None
            if client is None:
                yield
                return
            async with RedisLocks(client).hold(name):
                yield

    # ── Booking triggers ──────────────────────────────────────

    async def on_booking_trigger(
        self,
        booking_id: uuid.UUID,
        trigger: TriggerType | str,
        options: Optional[TriggerOptions] = None,
    ) -> TriggerResult:
        options = options or TriggerOptions()
        try:
            trigger = TriggerType(trigger)
        except ValueError as e:
            raise ValidationError("Unknown trigger", trigger=trigger) from e

        async with self.session_factory() as db:
            registry = self.registry_factory(db)
            booking = await registry.get_booking(booking_id)
            resolver = RecipientResolver(registry, self.estimate_ratio)

            chain_attribution = options.start_attribution and trigger != TriggerType.BOOKING_CANCELLED
            if chain_attribution:
                _ensure_open(booking)
                if not is_valid_coordinate(booking.latitude, booking.longitude):
                    raise ValidationError("Booking has no usable coordinates", booking_id=booking.id)

            # Resolve and plan everything before the first write
            staff = await resolver.staff_for_trigger(trigger) if options.notify_staff else []
            documents = await self.documents.generate_documents(booking.id, trigger.value)
            drafts = resolver.plan_customer(booking, trigger, documents)
            drafts += resolver.plan_staff(booking, trigger, staff, documents)

        if trigger == TriggerType.BOOKING_CANCELLED:
            await self.cancel_attribution(booking.id)

        logger.info(
            f"Trigger {trigger.value} for booking {booking.id}: "
            f"{len(drafts)} notification(s) planned, {len(staff)} staff recipient(s)"
        )
        results = await self._fan_out(drafts)

        reminders_created = 0
        if options.schedule_reminders and trigger in REMINDER_TRIGGERS:
            async with self.session_factory() as db:
                reminders_created = await self.scheduler.schedule_customer_reminders(db, booking)
                await db.commit()

        attribution = None
        if chain_attribution:
            attribution = await self.start_attribution(
                AttributionStartRequest(
                    booking_id=booking.id,
                    latitude=booking.latitude,
                    longitude=booking.longitude,
                    service_type=booking.service_type,
                    max_distance_km=options.max_distance_km,
                )
            )

        return TriggerResult(
            booking_id=booking.id,
            trigger=trigger,
            dispatches=[_summary(draft, result) for draft, result in results],
            reminders_created=reminders_created,
            attribution=attribution,
        )

    async def _fan_out(
        self, drafts: Sequence[NotificationDraft]
    ) -> List[tuple[NotificationDraft, DeliveryResult]]:
        """Deliver drafts for distinct recipients in parallel, one session per task."""
        semaphore = asyncio.Semaphore(self.fanout_concurrency)

        async def run(draft: NotificationDraft):
            async with semaphore:
                async with self.session_factory() as db:
                    result = await deliver(db, self.dispatcher, draft.key, draft.build, draft.attachments)
                    return draft, result

        outcomes = await asyncio.gather(*(run(d) for d in drafts), return_exceptions=True)
        return _raise_first_error(outcomes)

    # ── Attribution ───────────────────────────────────────────

    async def start_attribution(self, request: AttributionStartRequest) -> StartAttributionResult:
        if not is_valid_coordinate(request.latitude, request.longitude):
            raise ValidationError(
                "Malformed service coordinates", latitude=request.latitude, longitude=request.longitude
            )
        async with self._exclusive(f"attribution:{request.booking_id}"):
            return await self._start_attribution(request)

    async def _start_attribution(self, request: AttributionStartRequest) -> StartAttributionResult:
        radius = request.max_distance_km or self.matcher.default_max_distance_km

        async with self.session_factory() as db:
            registry = self.registry_factory(db)
            booking = await registry.get_booking(request.booking_id)
            _ensure_open(booking)

            latest = await self.state_machine.get_latest_for_booking(db, booking.id)
            if latest and latest.status in (AttributionStatus.ACCEPTED, AttributionStatus.CANCELLED):
                logger.warning(
                    f"Booking {booking.id} already has {latest.status.value} attribution "
                    f"{latest.id}; start_attribution is a no-op"
                )
                return await self._result(db, latest, AttributionOutcome.ALREADY_FINALIZED)

            booking_data = (
                request.booking_data.model_dump(mode="json", exclude_none=True)
                if request.booking_data else None
            )
            attribution, created = await self.state_machine.create_or_reuse(
                db,
                booking.id,
                service_type=request.service_type,
                latitude=request.latitude,
                longitude=request.longitude,
                max_distance_km=radius,
                booking_data=booking_data,
            )
            await db.commit()

            if attribution.status == AttributionStatus.PENDING:
                blacklisted = await self.blacklist.blacklisted_ids(db, attribution.service_type)
                candidates = await find_candidates(
                    registry,
                    self.matcher,
                    attribution.latitude,
                    attribution.longitude,
                    attribution.service_type,
                    attribution.max_distance_km,
                    request.limit,
                    excluded=blacklisted,
                )
                if not candidates:
                    logger.info(f"Attribution {attribution.id}: no candidates, left PENDING")
                    return await self._result(db, attribution, AttributionOutcome.NO_CANDIDATES)

                # All eligibility rows land before any notified flag can be set
                await self.ledger.record_candidates(db, attribution.id, candidates)
                await db.commit()
                try:
                    attribution = await self.state_machine.start_broadcast(db, attribution.id)
                    await db.commit()
                except AttributionFinalizedError as e:
                    await db.rollback()
                    logger.warning(f"{e}; broadcast not started")
                    attribution = await self.state_machine.get(db, attribution.id)
                    return await self._result(db, attribution, AttributionOutcome.ALREADY_FINALIZED)
            else:
                # Replay of a broadcast already under way: same candidate set, no re-matching
                logger.info(f"Attribution {attribution.id} already broadcasting, resuming fan-out")
                candidates = await self._recorded_candidates(db, registry, attribution.id)

            recipients = RecipientResolver(registry, self.estimate_ratio).professionals(candidates)
            documents = await self.documents.generate_documents(booking.id, PROFESSIONAL_ATTRIBUTION)

        notified = await self._broadcast(attribution, booking, recipients, documents)

        async with self.session_factory() as db:
            attribution = await self.state_machine.get(db, attribution.id)
            result = await self._result(db, attribution, AttributionOutcome.BROADCAST)
        logger.info(
            f"Attribution {attribution.id} broadcast: {notified} professional(s) notified "
            f"this run, {result.notified_count}/{result.eligible_count} overall"
        )
        return result

    async def _recorded_candidates(self, db, registry, attribution_id: uuid.UUID) -> List[MatchCandidate]:
        rows = await self.ledger.list_for_attribution(db, attribution_id)
        professionals = {p.id: p for p in await registry.get_professionals([r.professional_id for r in rows])}
        return [
            MatchCandidate(professionals[row.professional_id], row.distance_km)
            for row in rows
            if row.is_eligible and row.professional_id in professionals
        ]

    async def _broadcast(
        self,
        attribution: Attribution,
        booking: Booking,
        recipients: Sequence[ProfessionalRecipient],
        documents: Sequence[GeneratedDocument],
    ) -> int:
        resolver = RecipientResolver(None, self.estimate_ratio)
        semaphore = asyncio.Semaphore(self.fanout_concurrency)

        async def notify(recipient: ProfessionalRecipient) -> bool:
            async with semaphore:
                async with self.session_factory() as db:
                    status = await db.scalar(
                        select(Attribution.status).where(Attribution.id == attribution.id)
                    )
                    if status != AttributionStatus.BROADCASTING:
                        logger.info(
                            f"Attribution {attribution.id} is {getattr(status, 'value', status)}; "
                            f"professional {recipient.professional_id} not notified"
                        )
                        return False

                    drafts = resolver.plan_professional(attribution, booking, recipient, documents)
                    email_result = None
                    for draft in drafts:
                        result = await deliver(db, self.dispatcher, draft.key, draft.build, draft.attachments)
                        if draft.channel == Channel.EMAIL:
                            email_result = result

                    if email_result.notification.status == NotificationStatus.FAILED:
                        logger.warning(
                            f"Attribution email to professional {recipient.professional_id} failed; "
                            f"not marked notified"
                        )
                        return False
                    marked = await self.ledger.mark_notified(db, attribution.id, recipient.professional_id)
                    await db.commit()
                    return marked

        outcomes = await asyncio.gather(*(notify(r) for r in recipients), return_exceptions=True)
        return sum(1 for ok in _raise_first_error(outcomes) if ok)

    async def _result(self, db, attribution: Attribution, outcome: AttributionOutcome) -> StartAttributionResult:
        summary = await self.ledger.summary(db, attribution.id)
        return StartAttributionResult(
            attribution_id=attribution.id,
            status=attribution.status,
            eligible_count=summary.eligible,
            notified_count=summary.notified,
            outcome=outcome,
        )

    async def record_professional_response(
        self,
        attribution_id: uuid.UUID,
        professional_id: uuid.UUID,
        accepted: bool,
    ) -> ProfessionalResponseResult:
        async with self._exclusive(f"response:{attribution_id}"):
            async with self.session_factory() as db:
                attribution = await self.state_machine.get(db, attribution_id)
                if not await self.ledger.get(db, attribution_id, professional_id):
                    raise NotFoundError(
                        "Professional is not a candidate for this attribution",
                        attribution_id=attribution_id,
                        professional_id=professional_id,
                    )

                # The response is always recorded, whatever the attribution state
                await self.ledger.mark_responded(db, attribution_id, professional_id, accepted)
                await db.commit()

                if accepted:
                    outcome, attribution = await self._handle_accept(db, attribution, professional_id)
                else:
                    outcome, attribution = await self._handle_decline(db, attribution, professional_id)

                return ProfessionalResponseResult(
                    attribution_id=attribution_id,
                    professional_id=professional_id,
                    accepted=accepted,
                    outcome=outcome,
                    status=attribution.status,
                )

    async def _handle_accept(self, db, attribution: Attribution, professional_id: uuid.UUID):
        if attribution.status in (AttributionStatus.EXPIRED, AttributionStatus.CANCELLED):
            logger.warning(
                f"Accept from {professional_id} on {attribution.status.value} attribution "
                f"{attribution.id} ignored"
            )
            return ResponseOutcome.IGNORED, attribution

        if attribution.status == AttributionStatus.ACCEPTED:
            return self._accept_replay_or_superseded(attribution, professional_id), attribution

        try:
            attribution = await self.state_machine.accept(db, attribution.id, professional_id)
        except AttributionFinalizedError:
            await db.rollback()
            attribution = await self.state_machine.get(db, attribution.id)
            return self._accept_replay_or_superseded(attribution, professional_id), attribution

        registry = self.registry_factory(db)
        await registry.set_booking_professional(attribution.booking_id, professional_id)
        await self.blacklist.reset(db, professional_id, attribution.service_type)
        booking = await registry.get_booking(attribution.booking_id)
        await self.scheduler.schedule_professional_reminders(
            db, booking, attribution.id, professional_id
        )
        await db.commit()
        logger.info(f"Attribution {attribution.id} accepted by professional {professional_id}")
        return ResponseOutcome.ACCEPTED, attribution

    @staticmethod
    def _accept_replay_or_superseded(attribution: Attribution, professional_id: uuid.UUID) -> ResponseOutcome:
        if attribution.status == AttributionStatus.ACCEPTED and attribution.accepted_professional_id == professional_id:
            return ResponseOutcome.ACCEPTED
        logger.warning(
            f"Accept from {professional_id} superseded: attribution {attribution.id} "
            f"already {attribution.status.value} (professional {attribution.accepted_professional_id})"
        )
        return ResponseOutcome.SUPERSEDED

    async def _handle_decline(self, db, attribution: Attribution, professional_id: uuid.UUID):
        await self.blacklist.record_refusal(db, professional_id, attribution.service_type, attribution.id)
        await db.commit()

        if attribution.status != AttributionStatus.BROADCASTING:
            return ResponseOutcome.DECLINED, attribution

        summary = await self.ledger.summary(db, attribution.id)
        if summary.all_declined:
            try:
                attribution = await self.state_machine.expire(db, attribution.id)
                await db.commit()
                logger.info(f"Attribution {attribution.id} expired: every candidate declined")
            except StateConflictError as e:
                await db.rollback()
                logger.info(f"Attribution {attribution.id} not expired after declines: {e}")
                attribution = await self.state_machine.get(db, attribution.id)
        return ResponseOutcome.DECLINED, attribution

    async def cancel_attribution(self, booking_id: uuid.UUID) -> Optional[Attribution]:
        """
        Booking cancelled: active attribution → CANCELLED, PENDING reminders
        cancelled. In-flight sends complete; no further candidates are notified.
        Holds the same lock as start_attribution, so a start racing this cancel
        either finishes first (and is cancelled here) or sees the CANCELLED row.
        """
        async with self._exclusive(f"attribution:{booking_id}"), self.session_factory() as db:
            attribution = await self.state_machine.get_active_for_booking(db, booking_id)
            if attribution:
                try:
                    attribution = await self.state_machine.cancel(db, attribution.id)
                except StateConflictError as e:
                    await db.rollback()
                    logger.warning(f"Cancel for booking {booking_id} was a no-op: {e}")
            cancelled = await self.scheduler.cancel_for_booking(db, booking_id)
            await db.commit()
            logger.info(f"Booking {booking_id} cancelled: {cancelled} reminder(s) cancelled")
            return attribution

    async def get_attribution_status(self, attribution_id: uuid.UUID) -> AttributionStatusResponse:
        async with self.session_factory() as db:
            attribution = await self.state_machine.get(db, attribution_id)
            rows = await self.ledger.list_for_attribution(db, attribution_id)
            response = AttributionStatusResponse.model_validate(attribution)
            response.eligibilities = [EligibilityResponse.model_validate(r) for r in rows]
            return response

    # ── Maintenance ───────────────────────────────────────────

    async def expire_stale_attributions(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(hours=settings.BROADCAST_WINDOW_HOURS)
        expired = 0
        async with self.session_factory() as db:
            for attribution_id in await self.state_machine.find_stale_broadcasts(db, cutoff):
                try:
                    await self.state_machine.expire(db, attribution_id)
                    await db.commit()
                    expired += 1
                except StateConflictError as e:
                    await db.rollback()
                    logger.info(f"Skip expiring {attribution_id}: {e}")
        if expired:
            logger.info(f"Expired {expired} attribution(s) past the {settings.BROADCAST_WINDOW_HOURS}h window")
        return expired

    async def lift_expired_blacklists(self, now: Optional[datetime] = None) -> int:
        async with self.session_factory() as db:
            lifted = await self.blacklist.clean_expired(db, now)
            await db.commit()
            return lifted

    async def fail_stale_pending_notifications(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or utcnow()) - timedelta(minutes=settings.PENDING_NOTIFICATION_TIMEOUT_MINUTES)
        async with self.session_factory() as db:
            return await self.dispatcher.fail_stale_pending(db, cutoff)

    async def resend_notification(self, notification_id: uuid.UUID) -> Notification:
        """Deliberate operator resend of a FAILED notification (same row, same dedup key)."""
        async with self.session_factory() as db:
            notification = await db.get(Notification, notification_id)
            if not notification:
                raise NotFoundError("Notification not found", notification_id=notification_id)
            if notification.status != NotificationStatus.FAILED:
                raise StateConflictError(
                    "Only FAILED notifications can be resent",
                    notification_id=notification_id,
                    status=notification.status.value,
                )

            # Documents first, so a document-service failure leaves the row FAILED
            attachments: tuple[GeneratedDocument, ...] = ()
            described = notification.meta.get("attachments") or []
            if notification.channel == Channel.EMAIL and described and notification.booking_id:
                wanted = {item["type"] for item in described}
                documents = await self.documents.generate_documents(
                    notification.booking_id, notification.meta.get("trigger", "")
                )
                attachments = tuple(d for d in documents if d.type.value in wanted)

            notification = await self.dispatcher.reset_for_resend(db, notification_id)
            status = await self.dispatcher.dispatch(db, notification, attachments)

            attribution_id = notification.meta.get("attribution_id")
            professional_id = notification.meta.get("professional_id")
            if status == NotificationStatus.SENT and notification.channel == Channel.EMAIL and attribution_id:
                await self.ledger.mark_notified(db, uuid.UUID(attribution_id), uuid.UUID(professional_id))
                await db.commit()
            return notification


def _ensure_open(booking: Booking) -> None:
    if booking.status in CLOSED_BOOKING_STATUSES:
        raise StateConflictError(
            "Booking is closed; no attribution", booking_id=booking.id, status=booking.status.value
        )


def _summary(draft: NotificationDraft, result: DeliveryResult) -> DispatchSummary:
    return DispatchSummary(
        notification_id=result.notification_id,
        recipient_class=draft.recipient_class,
        channel=draft.channel,
        recipient=mask_address(result.notification.recipient_address),
        outcome=result.outcome.value,
    )


def _raise_first_error(outcomes: list) -> list:
    """gather(return_exceptions=True) results: log every failure, re-raise the first."""
    errors = [o for o in outcomes if isinstance(o, BaseException)]
    for error in errors:
        if isinstance(error, EngineError):
            logger.warning(f"Fan-out task failed: {error}")
        else:
            logger.error(f"Fan-out task crashed: {error!r}", exc_info=error)
    if errors:
        raise errors[0]
    return outcomes


# ── Factory ───────────────────────────────────────────────────

_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """FastAPI dependency: process-wide orchestrator wired to the real providers."""
    global _orchestrator
    if _orchestrator is None:
        from config.database import AsyncSessionLocal
        from services.documents.generator import HttpDocumentGenerator
        from services.notification.senders import ProviderChannelSender

        _orchestrator = Orchestrator(
            session_factory=AsyncSessionLocal,
            sender=ProviderChannelSender(),
            documents=HttpDocumentGenerator(),
            redis_provider=get_redis,
        )
    return _orchestrator
