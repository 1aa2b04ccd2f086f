"""
tests/test_orchestrator.py
End-to-end flows through the orchestrator against a real (SQLite) database:
booking triggers, attribution broadcast, first-accept-wins, cancellation,
replays and concurrent invocations.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from services.attribution.eligibility import EligibilityLedger
from services.documents.generator import DocumentServiceError
from services.notification.recipients import ProfessionalRecipient
from services.orchestration.orchestrator import Orchestrator
from services.orchestration.registry import SqlRegistry
from shared.models.models import (
    Attribution,
    AttributionStatus,
    Booking,
    BookingStatus,
    Channel,
    DocumentType,
    Notification,
    NotificationStatus,
    ReminderStatus,
    ScheduledReminder,
    TriggerType,
    utcnow,
)
from shared.schemas.schemas import (
    AttributionOutcome,
    AttributionStartRequest,
    ResponseOutcome,
    TriggerOptions,
)
from shared.utils.errors import NotFoundError, StateConflictError, ValidationError
from tests.conftest import (
    LYON,
    MEAUX,
    PARIS,
    RecordingSender,
    make_booking,
    make_customer,
    make_professional,
    make_staff,
)

CUSTOMER_EMAIL = "marie.durand@example.com"
CUSTOMER_PHONE = "+33611223344"


async def all_rows(session_factory, model, *where):
    async with session_factory() as session:
        result = await session.execute(select(model).where(*where))
        return list(result.scalars())


async def count_rows(session_factory, model, *where) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model).where(*where))


def start_request(booking, **kwargs) -> AttributionStartRequest:
    return AttributionStartRequest(
        booking_id=booking.id,
        latitude=PARIS[0],
        longitude=PARIS[1],
        service_type="plumbing",
        **kwargs,
    )


@pytest_asyncio.fixture
async def two_professionals(db):
    near = await make_professional(db, first_name="Near")
    far = await make_professional(db, location=MEAUX, first_name="Far", phone="+33700000002")
    # Never candidates
    await make_professional(db, location=LYON)
    await make_professional(db, service_types=("electrical",))
    await make_professional(db, is_verified=False)
    return near, far


# ── Booking triggers ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_booking_confirmed_notifies_customer_and_staff(orchestrator, sender, documents, db, booking, session_factory):
    await make_staff(db)
    await make_staff(db, email="compta@example.com", department="accounting",
                     triggers=(TriggerType.PAYMENT_COMPLETED.value,))

    result = await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)

    assert {(d.channel, d.outcome) for d in result.dispatches} == {("EMAIL", "SENT"), ("SMS", "SENT")}
    assert len(result.dispatches) == 3
    assert result.reminders_created == 3
    assert documents.calls == [(booking.id, "BOOKING_CONFIRMED")]

    customer_email = [m for m in sender.to(CUSTOMER_EMAIL) if m.channel == "EMAIL"][0]
    assert [d.type for d in customer_email.attachments] == [
        DocumentType.BOOKING_CONFIRMATION, DocumentType.QUOTE, DocumentType.CONTRACT,
    ]
    assert len(sender.to(CUSTOMER_PHONE)) == 1
    staff_email = sender.to("ops@example.com")[0]
    assert [d.type for d in staff_email.attachments] == [DocumentType.QUOTE, DocumentType.CONTRACT]
    assert sender.to("compta@example.com") == []

    rows = await all_rows(session_factory, Notification, Notification.booking_id == booking.id)
    assert all(row.status == NotificationStatus.SENT for row in rows)


@pytest.mark.asyncio
async def test_replayed_trigger_sends_nothing_new(orchestrator, sender, db, booking, session_factory):
    await make_staff(db)
    await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)
    sent_before = len(sender.sent)

    replay = await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)

    assert {d.outcome for d in replay.dispatches} == {"ALREADY_EXISTS"}
    assert replay.reminders_created == 0
    assert len(sender.sent) == sent_before
    assert await count_rows(session_factory, Notification) == 3
    assert await count_rows(session_factory, ScheduledReminder) == 3


@pytest.mark.asyncio
async def test_payment_completed_attachments_per_recipient_class(orchestrator, sender, db, booking):
    await make_staff(db, email="compta@example.com", department="accounting",
                     triggers=(TriggerType.PAYMENT_COMPLETED.value,))
    await make_staff(db, email="old@example.com", is_active=False,
                     triggers=(TriggerType.PAYMENT_COMPLETED.value,))
    await make_staff(db, email=None, triggers=(TriggerType.PAYMENT_COMPLETED.value,))

    await orchestrator.on_booking_trigger(booking.id, TriggerType.PAYMENT_COMPLETED)

    customer_email = [m for m in sender.to(CUSTOMER_EMAIL) if m.channel == "EMAIL"][0]
    assert [d.type for d in customer_email.attachments] == [DocumentType.INVOICE]
    accounting = sender.to("compta@example.com")
    assert len(accounting) == 1
    assert [d.type for d in accounting[0].attachments] == [
        DocumentType.INVOICE, DocumentType.PAYMENT_RECEIPT, DocumentType.QUOTE,
    ]
    assert sender.to("old@example.com") == []


@pytest.mark.asyncio
async def test_same_recipient_different_triggers_are_separate(orchestrator, sender, booking):
    await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)
    await orchestrator.on_booking_trigger(booking.id, TriggerType.PAYMENT_COMPLETED)

    assert len(sender.to(CUSTOMER_EMAIL)) == 2


@pytest.mark.asyncio
async def test_service_started_schedules_no_reminders(orchestrator, booking, session_factory):
    result = await orchestrator.on_booking_trigger(booking.id, TriggerType.SERVICE_STARTED)
    assert result.reminders_created == 0
    assert await count_rows(session_factory, ScheduledReminder) == 0


@pytest.mark.asyncio
async def test_customer_without_email_fails_before_any_write(orchestrator, sender, db, session_factory):
    customer = await make_customer(db, email=None)
    booking = await make_booking(db, customer)

    with pytest.raises(ValidationError):
        await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)

    assert sender.sent == []
    assert await count_rows(session_factory, Notification) == 0
    assert await count_rows(session_factory, ScheduledReminder) == 0


@pytest.mark.asyncio
async def test_document_failure_propagates_without_writes(orchestrator, documents, booking, session_factory):
    documents.error = DocumentServiceError("document service down")

    with pytest.raises(DocumentServiceError):
        await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)

    assert await count_rows(session_factory, Notification) == 0


@pytest.mark.asyncio
async def test_unknown_booking(orchestrator):
    with pytest.raises(NotFoundError):
        await orchestrator.on_booking_trigger(uuid.uuid4(), TriggerType.BOOKING_CONFIRMED)


@pytest.mark.asyncio
async def test_failed_channel_does_not_block_the_others(orchestrator, booking, session_factory):
    orchestrator.dispatcher.sender.fail_for.add(CUSTOMER_PHONE)

    result = await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)

    outcomes = {d.channel: d.outcome for d in result.dispatches}
    assert outcomes == {"EMAIL": "SENT", "SMS": "FAILED"}


@pytest.mark.asyncio
async def test_concurrent_triggers_send_each_message_once(session_factory, documents, db, booking):
    await make_staff(db)
    sender = RecordingSender(delay=0.02)
    first = Orchestrator(session_factory, sender, documents)
    second = Orchestrator(session_factory, sender, documents)

    await asyncio.gather(
        first.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED),
        second.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED),
    )

    assert len(sender.sent) == 3
    assert await count_rows(session_factory, Notification) == 3
    assert await count_rows(session_factory, ScheduledReminder) == 3


# ── Attribution ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_broadcast_notifies_matched_professionals(orchestrator, sender, documents, booking, two_professionals, session_factory):
    near, far = two_professionals

    result = await orchestrator.start_attribution(start_request(booking))

    assert result.outcome == AttributionOutcome.BROADCAST
    assert result.status == AttributionStatus.BROADCASTING
    assert (result.eligible_count, result.notified_count) == (2, 2)
    assert (booking.id, "PROFESSIONAL_ATTRIBUTION") in documents.calls

    for pro in (near, far):
        messages = sender.to(pro.email)
        assert len(messages) == 1
        assert [d.type for d in messages[0].attachments] == [DocumentType.MISSION_PROPOSAL]
        assert "client_email" not in messages[0].payload
        assert messages[0].payload["client_display_name"] == "Marie D."
        assert len(sender.to(pro.phone)) == 1

    rows = await all_rows(session_factory, Notification, Notification.scope_id == str(result.attribution_id))
    assert {row.channel for row in rows} == {Channel.EMAIL, Channel.WHATSAPP}
    assert all(row.meta["limited_data"] for row in rows)


@pytest.mark.asyncio
async def test_replayed_broadcast_reuses_the_attribution(orchestrator, sender, booking, two_professionals, session_factory):
    first = await orchestrator.start_attribution(start_request(booking))
    sent_before = len(sender.sent)

    again = await orchestrator.start_attribution(start_request(booking))

    assert again.attribution_id == first.attribution_id
    assert again.outcome == AttributionOutcome.BROADCAST
    assert len(sender.sent) == sent_before
    assert await count_rows(session_factory, Attribution) == 1


@pytest.mark.asyncio
async def test_no_candidates_leaves_attribution_pending(orchestrator, sender, booking, session_factory):
    result = await orchestrator.start_attribution(start_request(booking))

    assert result.outcome == AttributionOutcome.NO_CANDIDATES
    assert result.status == AttributionStatus.PENDING
    assert result.eligible_count == 0
    assert sender.sent == []


@pytest.mark.asyncio
async def test_new_professional_picked_up_by_a_later_start(orchestrator, sender, db, booking):
    empty = await orchestrator.start_attribution(start_request(booking))
    await make_professional(db)

    retried = await orchestrator.start_attribution(start_request(booking))

    assert retried.attribution_id == empty.attribution_id
    assert retried.outcome == AttributionOutcome.BROADCAST
    assert retried.notified_count == 1


@pytest.mark.asyncio
async def test_first_accept_wins(orchestrator, booking, two_professionals, session_factory):
    near, far = two_professionals
    started = await orchestrator.start_attribution(start_request(booking))

    won = await orchestrator.record_professional_response(started.attribution_id, near.id, True)
    late = await orchestrator.record_professional_response(started.attribution_id, far.id, True)
    replay = await orchestrator.record_professional_response(started.attribution_id, near.id, True)

    assert won.outcome == ResponseOutcome.ACCEPTED
    assert late.outcome == ResponseOutcome.SUPERSEDED
    assert replay.outcome == ResponseOutcome.ACCEPTED

    status = await orchestrator.get_attribution_status(started.attribution_id)
    assert status.status == AttributionStatus.ACCEPTED
    assert status.accepted_professional_id == near.id
    assert all(e.responded for e in status.eligibilities)

    [stored] = await all_rows(session_factory, Booking, Booking.id == booking.id)
    assert stored.professional_id == near.id

    reminders = await all_rows(session_factory, ScheduledReminder, ScheduledReminder.professional_id == near.id)
    assert {r.reminder_type for r in reminders} == {"7D", "24H", "1H"}
    assert all(r.attribution_id == started.attribution_id for r in reminders)


@pytest.mark.asyncio
async def test_accepted_booking_is_not_broadcast_again(orchestrator, sender, booking, two_professionals):
    near, _ = two_professionals
    started = await orchestrator.start_attribution(start_request(booking))
    await orchestrator.record_professional_response(started.attribution_id, near.id, True)
    sent_before = len(sender.sent)

    again = await orchestrator.start_attribution(start_request(booking))

    assert again.outcome == AttributionOutcome.ALREADY_FINALIZED
    assert again.attribution_id == started.attribution_id
    assert len(sender.sent) == sent_before


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(session_factory, sender, documents, booking, two_professionals):
    near, far = two_professionals
    first = Orchestrator(session_factory, sender, documents)
    second = Orchestrator(session_factory, sender, documents)
    started = await first.start_attribution(start_request(booking))

    results = await asyncio.gather(
        first.record_professional_response(started.attribution_id, near.id, True),
        second.record_professional_response(started.attribution_id, far.id, True),
    )

    outcomes = sorted(r.outcome for r in results)
    assert outcomes == [ResponseOutcome.ACCEPTED, ResponseOutcome.SUPERSEDED]
    winner = next(r.professional_id for r in results if r.outcome == ResponseOutcome.ACCEPTED)
    [attribution] = await all_rows(session_factory, Attribution)
    assert attribution.accepted_professional_id == winner


@pytest.mark.asyncio
async def test_concurrent_starts_broadcast_once(session_factory, documents, booking, two_professionals):
    near, far = two_professionals
    sender = RecordingSender(delay=0.02)
    first = Orchestrator(session_factory, sender, documents)
    second = Orchestrator(session_factory, sender, documents)

    results = await asyncio.gather(
        first.start_attribution(start_request(booking)),
        second.start_attribution(start_request(booking)),
    )

    assert results[0].attribution_id == results[1].attribution_id
    assert await count_rows(session_factory, Attribution) == 1
    for pro in (near, far):
        assert len(sender.to(pro.email)) == 1
        assert len(sender.to(pro.phone)) == 1


@pytest.mark.asyncio
async def test_everyone_declining_expires_the_attribution(orchestrator, booking, two_professionals):
    near, far = two_professionals
    started = await orchestrator.start_attribution(start_request(booking))

    first = await orchestrator.record_professional_response(started.attribution_id, near.id, False)
    assert first.status == AttributionStatus.BROADCASTING
    last = await orchestrator.record_professional_response(started.attribution_id, far.id, False)
    assert last.outcome == ResponseOutcome.DECLINED
    assert last.status == AttributionStatus.EXPIRED

    late = await orchestrator.record_professional_response(started.attribution_id, near.id, True)
    assert late.outcome == ResponseOutcome.IGNORED


@pytest.mark.asyncio
async def test_expired_attribution_allows_a_new_round(orchestrator, sender, booking, two_professionals):
    near, far = two_professionals
    started = await orchestrator.start_attribution(start_request(booking))
    for pro in (near, far):
        await orchestrator.record_professional_response(started.attribution_id, pro.id, False)

    fresh = await orchestrator.start_attribution(start_request(booking))

    assert fresh.attribution_id != started.attribution_id
    assert fresh.outcome == AttributionOutcome.BROADCAST
    assert len(sender.to(near.email)) == 2


@pytest.mark.asyncio
async def test_response_from_non_candidate(orchestrator, db, booking, two_professionals):
    started = await orchestrator.start_attribution(start_request(booking))
    outsider = await make_professional(db, location=LYON)

    with pytest.raises(NotFoundError):
        await orchestrator.record_professional_response(started.attribution_id, outsider.id, True)


@pytest.mark.asyncio
async def test_failed_professional_email_is_not_marked_notified(orchestrator, sender, booking, two_professionals, session_factory):
    near, far = two_professionals
    sender.fail_for.add(far.email)

    started = await orchestrator.start_attribution(start_request(booking))

    assert started.notified_count == 1
    ledger = EligibilityLedger()
    async with session_factory() as session:
        assert not (await ledger.get(session, started.attribution_id, far.id)).notified

    # Operator resend once the mailbox is fixed
    sender.fail_for.clear()
    [failed] = await all_rows(
        session_factory, Notification,
        Notification.status == NotificationStatus.FAILED,
    )
    resent = await orchestrator.resend_notification(failed.id)

    assert resent.status == NotificationStatus.SENT
    assert [d.type for d in sender.to(far.email)[-1].attachments] == [DocumentType.MISSION_PROPOSAL]
    async with session_factory() as session:
        assert (await ledger.get(session, started.attribution_id, far.id)).notified

    with pytest.raises(StateConflictError):
        await orchestrator.resend_notification(failed.id)


@pytest.mark.asyncio
async def test_malformed_coordinates_rejected(orchestrator, booking):
    request = start_request(booking).model_copy(update={"latitude": float("nan")})
    with pytest.raises(ValidationError):
        await orchestrator.start_attribution(request)


@pytest.mark.asyncio
async def test_trigger_can_chain_a_broadcast(orchestrator, sender, booking, two_professionals):
    near, _ = two_professionals

    result = await orchestrator.on_booking_trigger(
        booking.id, TriggerType.BOOKING_CONFIRMED, TriggerOptions(start_attribution=True, notify_staff=False)
    )

    assert result.attribution.outcome == AttributionOutcome.BROADCAST
    assert result.attribution.eligible_count == 2
    assert len(sender.to(near.email)) == 1


# ── Cancellation and sweeps ───────────────────────────────────

@pytest.mark.asyncio
async def test_cancellation_stops_the_attribution_and_reminders(orchestrator, sender, booking, two_professionals, session_factory):
    near, _ = two_professionals
    await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)
    started = await orchestrator.start_attribution(start_request(booking))

    result = await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CANCELLED)

    cancellation = [m for m in sender.to(CUSTOMER_EMAIL) if m.template_id == "booking-cancellation"]
    assert [d.type for d in cancellation[0].attachments] == [DocumentType.CANCELLATION_NOTICE]
    assert {d.outcome for d in result.dispatches} == {"SENT"}
    assert result.reminders_created == 0

    status = await orchestrator.get_attribution_status(started.attribution_id)
    assert status.status == AttributionStatus.CANCELLED
    reminders = await all_rows(session_factory, ScheduledReminder)
    assert reminders and all(r.status == ReminderStatus.CANCELLED for r in reminders)

    late = await orchestrator.record_professional_response(started.attribution_id, near.id, True)
    assert late.outcome == ResponseOutcome.IGNORED

    again = await orchestrator.start_attribution(start_request(booking))
    assert again.outcome == AttributionOutcome.ALREADY_FINALIZED


@pytest.mark.asyncio
async def test_stale_broadcasts_expire(orchestrator, booking, two_professionals):
    started = await orchestrator.start_attribution(start_request(booking))

    assert await orchestrator.expire_stale_attributions() == 0
    assert await orchestrator.expire_stale_attributions(now=utcnow() + timedelta(hours=25)) == 1

    status = await orchestrator.get_attribution_status(started.attribution_id)
    assert status.status == AttributionStatus.EXPIRED


@pytest.mark.asyncio
async def test_stale_pending_notifications_fail(orchestrator, booking):
    await orchestrator.on_booking_trigger(booking.id, TriggerType.BOOKING_CONFIRMED)
    assert await orchestrator.fail_stale_pending_notifications(now=utcnow() + timedelta(hours=1)) == 0


@pytest.mark.asyncio
async def test_registry_lookups(db, booking, two_professionals):
    near, _ = two_professionals
    registry = SqlRegistry(db)

    assert (await registry.get_professional(near.id)).first_name == "Near"
    assert (await registry.get_booking(booking.id)).customer.email == CUSTOMER_EMAIL
    with pytest.raises(NotFoundError):
        await registry.get_professional(uuid.uuid4())


# ── Closed bookings ───────────────────────────────────────────

@pytest.mark.asyncio
async def test_cancelled_booking_is_never_broadcast(orchestrator, sender, db, booking, two_professionals, session_factory):
    booking.status = BookingStatus.CANCELLED
    await db.commit()

    with pytest.raises(StateConflictError):
        await orchestrator.start_attribution(start_request(booking))

    assert await count_rows(session_factory, Attribution) == 0
    assert sender.sent == []


@pytest.mark.asyncio
async def test_cancel_waits_for_a_start_in_flight(session_factory, documents, booking, two_professionals):
    near, far = two_professionals
    sender = RecordingSender(delay=0.05)
    orchestrator = Orchestrator(session_factory, sender, documents)

    async def cancel_soon():
        await asyncio.sleep(0.01)
        return await orchestrator.cancel_attribution(booking.id)

    started, cancelled = await asyncio.gather(
        orchestrator.start_attribution(start_request(booking)),
        cancel_soon(),
    )

    assert cancelled.id == started.attribution_id
    assert cancelled.status == AttributionStatus.CANCELLED
    assert await count_rows(session_factory, Attribution, Attribution.status == AttributionStatus.BROADCASTING) == 0

    again = await orchestrator.start_attribution(start_request(booking))
    assert again.outcome == AttributionOutcome.ALREADY_FINALIZED
    for pro in (near, far):
        assert len(sender.to(pro.email)) == 1


@pytest.mark.asyncio
async def test_chained_start_with_bad_coordinates_writes_nothing(orchestrator, sender, db, customer, session_factory):
    booking = await make_booking(db, customer, location=None)

    with pytest.raises(ValidationError):
        await orchestrator.on_booking_trigger(
            booking.id, TriggerType.PAYMENT_COMPLETED, TriggerOptions(start_attribution=True)
        )

    assert sender.sent == []
    assert await count_rows(session_factory, Notification) == 0
    assert await count_rows(session_factory, ScheduledReminder) == 0
    assert await count_rows(session_factory, Attribution) == 0


@pytest.mark.asyncio
async def test_chained_start_on_cancelled_booking_writes_nothing(orchestrator, sender, db, booking, two_professionals, session_factory):
    booking.status = BookingStatus.CANCELLED
    await db.commit()

    with pytest.raises(StateConflictError):
        await orchestrator.on_booking_trigger(
            booking.id, TriggerType.PAYMENT_COMPLETED, TriggerOptions(start_attribution=True)
        )

    assert sender.sent == []
    assert await count_rows(session_factory, Notification) == 0


# ── Refusal blacklist ─────────────────────────────────────────

async def decline_all(orchestrator, booking, professionals):
    started = await orchestrator.start_attribution(start_request(booking))
    assert started.outcome == AttributionOutcome.BROADCAST
    for pro in professionals:
        await orchestrator.record_professional_response(started.attribution_id, pro.id, False)
    return started


@pytest.mark.asyncio
async def test_repeated_refusals_exclude_professionals_until_lifted(orchestrator, sender, booking, two_professionals):
    near, far = two_professionals
    await decline_all(orchestrator, booking, (near, far))
    await decline_all(orchestrator, booking, (near, far))

    blocked = await orchestrator.start_attribution(start_request(booking))
    assert blocked.outcome == AttributionOutcome.NO_CANDIDATES
    assert blocked.eligible_count == 0
    assert len(sender.to(near.email)) == 2

    assert await orchestrator.lift_expired_blacklists() == 0
    assert await orchestrator.lift_expired_blacklists(now=utcnow() + timedelta(hours=73)) == 2

    resumed = await orchestrator.start_attribution(start_request(booking))
    assert resumed.attribution_id == blocked.attribution_id
    assert resumed.outcome == AttributionOutcome.BROADCAST
    status = await orchestrator.get_attribution_status(resumed.attribution_id)
    assert {e.professional_id for e in status.eligibilities} == {near.id, far.id}


@pytest.mark.asyncio
async def test_accept_clears_the_refusal_streak(orchestrator, booking, db, customer, two_professionals):
    near, far = two_professionals
    first = await decline_all(orchestrator, booking, (near,))
    accepted = await orchestrator.record_professional_response(first.attribution_id, near.id, True)
    assert accepted.outcome == ResponseOutcome.ACCEPTED

    other = await make_booking(db, customer)
    await decline_all(orchestrator, other, (near,))

    # One refusal since the accept: still matchable
    fresh = await make_booking(db, customer)
    started = await orchestrator.start_attribution(start_request(fresh))
    status = await orchestrator.get_attribution_status(started.attribution_id)
    assert near.id in {e.professional_id for e in status.eligibilities}


# ── WhatsApp dedup ────────────────────────────────────────────

@pytest.mark.asyncio
async def test_whatsapp_sent_at_most_once_when_phone_appears_later(orchestrator, sender, db, booking, session_factory):
    pro = await make_professional(db, phone=None)
    sender.fail_for.add(pro.email)
    started = await orchestrator.start_attribution(start_request(booking))
    assert sender.by_channel("WHATSAPP") == []

    pro.phone = "+33700000009"
    await db.commit()
    await orchestrator.start_attribution(start_request(booking))
    await orchestrator.start_attribution(start_request(booking))

    sender.fail_for.clear()
    [failed] = await all_rows(session_factory, Notification, Notification.status == NotificationStatus.FAILED)
    await orchestrator.resend_notification(failed.id)

    rows = await all_rows(
        session_factory, Notification,
        Notification.scope_id == str(started.attribution_id),
        Notification.recipient_key == f"professional:{pro.id}",
    )
    channels = sorted(n.channel.value for n in rows)
    assert channels == ["EMAIL", "WHATSAPP"]
    assert len(sender.to("+33700000009")) == 1


@pytest.mark.asyncio
async def test_broadcast_to_a_vanished_attribution_sends_nothing(orchestrator, sender, booking):
    recipient = ProfessionalRecipient(uuid.uuid4(), "Paul M.", "paul@example.com", None, 12.0)

    notified = await orchestrator._broadcast(Attribution(id=uuid.uuid4()), booking, [recipient], [])

    assert notified == 0
    assert sender.sent == []
