"""
services/notification/recipients.py
RecipientResolver: who gets what, on which channel, with which documents.

Three closed recipient classes:
  CUSTOMER      full booking data, EMAIL + SMS (SMS only with a phone on file)
  STAFF         full booking data, one EMAIL per subscribed staff member
                carrying every allowed document
  PROFESSIONAL  limited client view, EMAIL + WHATSAPP (phone only),
                size-bounded attachments

attachments_for() is a pure function of (trigger, recipient class).
Planning builds every draft before anything is written, so a missing
contact surfaces as ValidationError with no partial state.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, ClassVar, List, Optional, Sequence, Union

from config.settings import settings
from services.documents.generator import GeneratedDocument
from services.matching.geo_matcher import MatchCandidate
from services.notification.dedup import DedupKey, NotificationPayload
from services.notification.templates import (
    PROFESSIONAL_ATTRIBUTION_TEMPLATE,
    PROFESSIONAL_ATTRIBUTION_WHATSAPP_TEMPLATE,
    render,
    template_for,
)
from shared.models.models import (
    Attribution,
    Booking,
    Channel,
    DocumentType,
    RecipientClass,
    TriggerType,
)
from shared.utils.errors import ValidationError
from shared.utils.security import build_response_urls

logger = logging.getLogger(__name__)

PROFESSIONAL_ATTRIBUTION = "PROFESSIONAL_ATTRIBUTION"


# ── Recipient variants ────────────────────────────────────────

@dataclass(frozen=True)
class CustomerRecipient:
    recipient_class: ClassVar[RecipientClass] = RecipientClass.CUSTOMER
    customer_id: uuid.UUID
    first_name: str
    last_name: str
    email: str
    phone: Optional[str]


@dataclass(frozen=True)
class StaffRecipient:
    recipient_class: ClassVar[RecipientClass] = RecipientClass.STAFF
    staff_id: uuid.UUID
    name: str
    email: str
    department: str


@dataclass(frozen=True)
class ProfessionalRecipient:
    recipient_class: ClassVar[RecipientClass] = RecipientClass.PROFESSIONAL
    professional_id: uuid.UUID
    name: str
    email: str
    phone: Optional[str]
    distance_km: float

    @property
    def recipient_key(self) -> str:
        # Keyed by id, not address: a phone added later must not unlock a second WhatsApp
        return f"professional:{self.professional_id}"


Recipient = Union[CustomerRecipient, StaffRecipient, ProfessionalRecipient]


@dataclass
class NotificationDraft:
    key: DedupKey
    recipient_class: RecipientClass
    build: Callable[[], NotificationPayload]
    attachments: tuple[GeneratedDocument, ...] = field(default_factory=tuple)
    professional_id: Optional[uuid.UUID] = None

    @property
    def channel(self) -> Channel:
        return self.key.channel


# ── Attachment policy ─────────────────────────────────────────

ATTACHMENT_POLICY: dict[RecipientClass, dict[str, tuple[DocumentType, ...]]] = {
    RecipientClass.CUSTOMER: {
        TriggerType.BOOKING_CONFIRMED.value: (
            DocumentType.BOOKING_CONFIRMATION,
            DocumentType.QUOTE,
            DocumentType.CONTRACT,
        ),
        TriggerType.PAYMENT_COMPLETED.value: (DocumentType.INVOICE,),
        TriggerType.BOOKING_CANCELLED.value: (DocumentType.CANCELLATION_NOTICE,),
        TriggerType.SERVICE_STARTED.value: (),
    },
    RecipientClass.STAFF: {
        TriggerType.BOOKING_CONFIRMED.value: (DocumentType.QUOTE, DocumentType.CONTRACT),
        TriggerType.PAYMENT_COMPLETED.value: (
            DocumentType.INVOICE,
            DocumentType.PAYMENT_RECEIPT,
            DocumentType.QUOTE,
        ),
        TriggerType.BOOKING_CANCELLED.value: (DocumentType.CANCELLATION_NOTICE,),
        TriggerType.SERVICE_STARTED.value: (),
    },
    RecipientClass.PROFESSIONAL: {
        PROFESSIONAL_ATTRIBUTION: (DocumentType.MISSION_PROPOSAL,),
    },
}


def attachments_for(trigger: str, recipient_class: RecipientClass) -> tuple[DocumentType, ...]:
    """Document types a recipient class may receive for a trigger. Unknown pairs get nothing."""
    trigger = getattr(trigger, "value", trigger)
    return ATTACHMENT_POLICY.get(RecipientClass(recipient_class), {}).get(trigger, ())


def select_attachments(
    documents: Sequence[GeneratedDocument],
    trigger: str,
    recipient_class: RecipientClass,
    max_count: int = settings.PROFESSIONAL_ATTACHMENT_MAX_COUNT,
    max_bytes: int = settings.PROFESSIONAL_ATTACHMENT_MAX_BYTES,
) -> tuple[GeneratedDocument, ...]:
    """
    Allowed documents in policy order, one per type. Professionals are
    additionally capped in count and total size; oversize documents are dropped.
    """
    by_type: dict[DocumentType, GeneratedDocument] = {}
    for doc in documents:
        by_type.setdefault(DocumentType(doc.type), doc)

    selected = [by_type[t] for t in attachments_for(trigger, recipient_class) if t in by_type]
    if recipient_class != RecipientClass.PROFESSIONAL:
        return tuple(selected)

    bounded, total = [], 0
    for doc in selected:
        if len(bounded) >= max_count:
            break
        if total + doc.size > max_bytes:
            logger.warning(f"Dropping {doc.filename} ({doc.size}B) from professional attachments: size cap")
            continue
        bounded.append(doc)
        total += doc.size
    return tuple(bounded)


# ── Contact normalisation ─────────────────────────────────────

def normalize_email(email: Optional[str]) -> Optional[str]:
    if not email or not email.strip():
        return None
    email = email.strip().lower()
    if "@" not in email:
        return None
    return email


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit() or ch == "+")
    return digits or None


# ── Data visibility tiers ─────────────────────────────────────

def _money(amount) -> str:
    return str(Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else ""


def _full_address(booking: Booking) -> str:
    parts = [booking.address, " ".join(p for p in (booking.postal_code, booking.city) if p)]
    return ", ".join(p for p in parts if p)


def full_client_data(booking: Booking, trigger: TriggerType) -> dict:
    """Everything staff and the customer may see."""
    customer = booking.customer
    return {
        "booking_id": str(booking.id),
        "reference": booking.reference,
        "trigger": trigger.value,
        "client_name": customer.full_name,
        "client_email": customer.email or "",
        "client_phone": customer.phone or "",
        "service_type": booking.service_type,
        "service_date": _format_date(booking.scheduled_at),
        "address": _full_address(booking),
        "total_amount": _money(booking.total_amount),
        "currency": booking.currency,
    }


def limited_client_data(
    booking: Booking,
    overrides: Optional[dict] = None,
    estimate_ratio: float = settings.PROFESSIONAL_ESTIMATE_RATIO,
) -> dict:
    """
    What a professional sees before accepting: first name + last initial,
    service address, date and an estimated payout. Never email or phone.
    """
    overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
    customer = booking.customer

    first_name = overrides.get("client_first_name", customer.first_name)
    last_name = overrides.get("client_last_name", customer.last_name)
    last_initial = f" {last_name.strip()[0].upper()}." if last_name and last_name.strip() else ""

    total = Decimal(str(overrides.get("total_amount", booking.total_amount)))
    service_date = overrides.get("service_date") or booking.scheduled_at
    if isinstance(service_date, str):
        service_date = datetime.fromisoformat(service_date)

    return {
        "booking_id": str(booking.id),
        "client_display_name": f"{first_name}{last_initial}",
        "address": overrides.get("address", booking.address),
        "city": overrides.get("city", booking.city or ""),
        "service_type": booking.service_type,
        "service_date": _format_date(service_date),
        "description": overrides.get("description", booking.description or ""),
        "estimated_amount": _money(total * Decimal(str(estimate_ratio))),
        "currency": booking.currency,
    }


# ── Resolver ──────────────────────────────────────────────────

class RecipientResolver:

    def __init__(self, registry, estimate_ratio: float = settings.PROFESSIONAL_ESTIMATE_RATIO):
        self.registry = registry
        self.estimate_ratio = estimate_ratio

    def customer(self, booking: Booking) -> CustomerRecipient:
        customer = booking.customer
        if customer is None:
            raise ValidationError("Booking has no customer", booking_id=booking.id)
        email = normalize_email(customer.email)
        if not email:
            raise ValidationError("Customer has no email address", booking_id=booking.id)
        return CustomerRecipient(
            customer_id=customer.id,
            first_name=customer.first_name,
            last_name=customer.last_name,
            email=email,
            phone=normalize_phone(customer.phone),
        )

    async def staff_for_trigger(self, trigger: TriggerType) -> List[StaffRecipient]:
        """Active staff subscribed to this trigger, one entry per staff id."""
        members = await self.registry.find_active_staff_for_trigger(trigger)
        recipients: dict[uuid.UUID, StaffRecipient] = {}
        for member in members:
            email = normalize_email(member.email)
            if not email:
                logger.warning(f"Staff member {member.id} has no email, skipped for {trigger.value}")
                continue
            recipients.setdefault(
                member.id, StaffRecipient(member.id, member.name, email, member.department)
            )
        return list(recipients.values())

    def professionals(self, candidates: Sequence[MatchCandidate]) -> List[ProfessionalRecipient]:
        recipients = []
        for candidate in candidates:
            professional = candidate.professional
            email = normalize_email(professional.email)
            if not email:
                logger.warning(f"Professional {professional.id} has no email, cannot be notified")
                continue
            recipients.append(ProfessionalRecipient(
                professional_id=professional.id,
                name=professional.display_name,
                email=email,
                phone=normalize_phone(professional.phone),
                distance_km=candidate.distance_km,
            ))
        return recipients

    # ── Planning ──────────────────────────────────────────────

    def plan_customer(
        self,
        booking: Booking,
        trigger: TriggerType,
        documents: Sequence[GeneratedDocument],
    ) -> List[NotificationDraft]:
        recipient = self.customer(booking)
        data = full_client_data(booking, trigger)
        template_id = template_for(trigger, RecipientClass.CUSTOMER)
        purpose = f"{trigger.value}:{RecipientClass.CUSTOMER.value}"
        attachments = select_attachments(documents, trigger, RecipientClass.CUSTOMER)
        meta = _meta(booking, trigger.value, RecipientClass.CUSTOMER, attachments)

        drafts = [
            NotificationDraft(
                key=DedupKey(str(booking.id), recipient.email, Channel.EMAIL, purpose),
                recipient_class=RecipientClass.CUSTOMER,
                build=_builder(RecipientClass.CUSTOMER, recipient.email, template_id, data, meta, booking.id),
                attachments=attachments,
            )
        ]
        if recipient.phone:
            sms_payload = {**data, "message": render(template_id, "sms", data)}
            drafts.append(NotificationDraft(
                key=DedupKey(str(booking.id), recipient.phone, Channel.SMS, purpose),
                recipient_class=RecipientClass.CUSTOMER,
                build=_builder(
                    RecipientClass.CUSTOMER, recipient.phone, template_id, sms_payload,
                    {**meta, "attachments": []}, booking.id,
                ),
            ))
        else:
            logger.info(f"Customer of booking {booking.id} has no phone, SMS skipped")
        return drafts

    def plan_staff(
        self,
        booking: Booking,
        trigger: TriggerType,
        staff: Sequence[StaffRecipient],
        documents: Sequence[GeneratedDocument],
    ) -> List[NotificationDraft]:
        data = full_client_data(booking, trigger)
        template_id = template_for(trigger, RecipientClass.STAFF)
        purpose = f"{trigger.value}:{RecipientClass.STAFF.value}"
        attachments = select_attachments(documents, trigger, RecipientClass.STAFF)

        drafts = []
        for member in staff:
            meta = {
                **_meta(booking, trigger.value, RecipientClass.STAFF, attachments),
                "staff_id": str(member.staff_id),
                "department": member.department,
            }
            drafts.append(NotificationDraft(
                key=DedupKey(str(booking.id), member.email, Channel.EMAIL, purpose),
                recipient_class=RecipientClass.STAFF,
                build=_builder(
                    RecipientClass.STAFF, member.email, template_id,
                    {**data, "staff_name": member.name}, meta, booking.id,
                ),
                attachments=attachments,
            ))
        return drafts

    def plan_professional(
        self,
        attribution: Attribution,
        booking: Booking,
        recipient: ProfessionalRecipient,
        documents: Sequence[GeneratedDocument],
    ) -> List[NotificationDraft]:
        limited = limited_client_data(booking, attribution.booking_data, self.estimate_ratio)
        attachments = select_attachments(documents, PROFESSIONAL_ATTRIBUTION, RecipientClass.PROFESSIONAL)
        scope = str(attribution.id)
        meta = {
            **_meta(booking, PROFESSIONAL_ATTRIBUTION, RecipientClass.PROFESSIONAL, attachments),
            "attribution_id": scope,
            "professional_id": str(recipient.professional_id),
            "source": "professional-attribution",
            "limited_data": True,
        }

        def build_payload() -> dict:
            return {
                **limited,
                "professional_name": recipient.name,
                "distance_km": recipient.distance_km,
                **build_response_urls(attribution.id, recipient.professional_id),
            }

        drafts = [
            NotificationDraft(
                key=DedupKey(scope, recipient.recipient_key, Channel.EMAIL, PROFESSIONAL_ATTRIBUTION),
                recipient_class=RecipientClass.PROFESSIONAL,
                build=lambda: NotificationPayload(
                    recipient_class=RecipientClass.PROFESSIONAL,
                    recipient_address=recipient.email,
                    template_id=PROFESSIONAL_ATTRIBUTION_TEMPLATE,
                    payload=build_payload(),
                    meta=meta,
                    booking_id=booking.id,
                ),
                attachments=attachments,
                professional_id=recipient.professional_id,
            )
        ]
        if recipient.phone:
            drafts.append(NotificationDraft(
                key=DedupKey(scope, recipient.recipient_key, Channel.WHATSAPP, PROFESSIONAL_ATTRIBUTION),
                recipient_class=RecipientClass.PROFESSIONAL,
                build=lambda: NotificationPayload(
                    recipient_class=RecipientClass.PROFESSIONAL,
                    recipient_address=recipient.phone,
                    template_id=PROFESSIONAL_ATTRIBUTION_WHATSAPP_TEMPLATE,
                    payload=build_payload(),
                    meta={**meta, "attachments": []},
                    booking_id=booking.id,
                ),
                professional_id=recipient.professional_id,
            ))
        return drafts


def _meta(
    booking: Booking,
    trigger: str,
    recipient_class: RecipientClass,
    attachments: Sequence[GeneratedDocument],
) -> dict:
    return {
        "booking_id": str(booking.id),
        "trigger": trigger,
        "recipient_class": recipient_class.value,
        "attachments": [doc.describe() for doc in attachments],
        "source": "booking-trigger",
    }


def _builder(
    recipient_class: RecipientClass,
    address: str,
    template_id: str,
    payload: dict,
    meta: dict,
    booking_id: uuid.UUID,
) -> Callable[[], NotificationPayload]:
    def build() -> NotificationPayload:
        if not address:
            raise ValidationError("Recipient has no contact address", recipient_class=recipient_class.value)
        return NotificationPayload(
            recipient_class=recipient_class,
            recipient_address=address,
            template_id=template_id,
            payload=payload,
            meta=meta,
            booking_id=booking_id,
        )
    return build
