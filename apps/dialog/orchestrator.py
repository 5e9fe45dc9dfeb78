"""Coordinates intent classification, the dialog FSM, booking and payment for one job."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, List, Optional

from django.conf import settings
from django.utils import timezone

from apps.appointments.models import Appointment, AppointmentStatus
from apps.appointments.scheduling import (
    BookingConflict,
    BookingValidationError,
    Slot,
    book,
    cancel_appointment,
    compute_slots,
    doctor_tz,
    format_day,
    format_time,
    format_when,
)
from apps.audit.models import AuditStatus
from apps.audit.services import record_audit_event
from apps.channels.models import InstagramAccount
from apps.channels.services import ChannelSendError, InstagramSender
from apps.common.security import DecryptionError
from apps.conversations.models import Conversation, Platform, SenderType
from apps.conversations.services import (
    DuplicateMessage,
    get_or_create_conversation,
    store_message,
    store_system_reply,
)
from apps.dialog import collection, consent
from apps.dialog.classifier import IntentClassifier, IntentResult
from apps.dialog.fsm import ConversationState, DialogFSM, DialogState, Trigger
from apps.doctors.models import Doctor
from apps.notifications.services import notify_doctor_new_appointment
from apps.patients.models import Patient
from apps.patients.services import find_or_create_placeholder
from apps.payments.gateways import PayerInfo, PaymentGatewayError, get_adapter
from apps.payments.services import (
    create_payment_link,
    format_amount,
    pending_payment_for,
    process_payment_failure,
    process_payment_success,
)
from apps.webhooks import idempotency
from apps.webhooks.queue import WebhookJob

logger = logging.getLogger(__name__)

SLOT_SEARCH_DAYS = int(getattr(settings, "SLOT_SEARCH_DAYS", 7))
MAX_SLOT_NUMBER = 99
SLOT_NUMBER = re.compile(r"\b(\d{1,2})\b")

INTENT_BOOK = "book_appointment"
INTENT_AVAILABILITY = "check_availability"
INTENT_GREETING = "greeting"
INTENT_QUESTION = "ask_question"
INTENT_CANCEL = "cancel_appointment"
INTENT_REVOKE = "revoke_consent"
BOOKING_INTENTS = {INTENT_BOOK, INTENT_AVAILABILITY}

FALLBACK_REPLY = "Thanks for your message. We'll get back to you soon."
GREETING_REPLY = "Hi! I can help you book an appointment. Say 'book appointment' to get started."
NOT_UNDERSTOOD_REPLY = "I didn't quite get that. Say 'book appointment' to schedule a visit."
SLOT_TAKEN_PREFIX = "That slot was just taken. "
SLOT_UNAVAILABLE_PREFIX = "Sorry, that time is no longer available. "
CANCELLED_REPLY = "Your appointment has been cancelled. Say 'book appointment' anytime to book again."
STOPPED_REPLY = "Okay, I've stopped the booking. Say 'book appointment' anytime to start again."
INACTIVE_BOOKING_REPLY = (
    "That booking is no longer active. Say 'book appointment' if you'd like to schedule again."
)
NO_SLOTS_REPLY = "No available slots for {day}. Please try another day."


class UnroutableEvent(RuntimeError):
    """The event belongs to no connected account; retrying cannot help."""


@dataclass(slots=True)
class InboundMessage:
    page_id: str
    sender_id: str
    text: str
    mid: str


def _instagram_items(entry: dict) -> List[dict]:
    items = [item for item in entry.get("messaging") or [] if isinstance(item, dict)]
    for change in entry.get("changes") or []:
        if isinstance(change, dict) and change.get("field") == "messages" and isinstance(change.get("value"), dict):
            items.append(change["value"])
    return items


def parse_instagram_message(payload: Any, event_id: str) -> Optional[InboundMessage]:
    """Return the first patient-authored text message in the payload."""
    if not isinstance(payload, dict):
        return None
    for entry in payload.get("entry") or []:
        if not isinstance(entry, dict):
            continue
        for item in _instagram_items(entry):
            sender_id = str((item.get("sender") or {}).get("id") or "")
            recipient_id = str((item.get("recipient") or {}).get("id") or "")
            message = item.get("message") or item.get("message_edit")
            if not sender_id or not isinstance(message, dict):
                continue
            if message.get("is_echo") or message.get("is_self") or sender_id == recipient_id:
                continue
            text = (message.get("text") or "").strip()
            if not text:
                continue
            return InboundMessage(
                page_id=str(entry.get("id") or recipient_id),
                sender_id=sender_id,
                text=text,
                mid=str(message.get("mid") or f"evt-{event_id}"),
            )
    return None


def parse_slot_number(text: str) -> Optional[int]:
    match = SLOT_NUMBER.search(text or "")
    if not match:
        return None
    number = int(match.group(1))
    return number if 1 <= number <= MAX_SLOT_NUMBER else None


def format_slot_list(day: date, starts: List[datetime], doctor: Doctor) -> str:
    tz = doctor_tz(doctor)
    lines = [f"{index}. {format_time(start.astimezone(tz))}" for index, start in enumerate(starts, start=1)]
    return (
        f"Here are available slots for {format_day(day)}:\n"
        + "\n".join(lines)
        + "\n\nReply with the number (1, 2, 3...) to book."
    )


@dataclass(slots=True)
class TurnContext:
    doctor: Doctor
    patient: Patient
    conversation: Conversation
    state: ConversationState
    text: str
    intent: IntentResult
    correlation_id: str


class ConversationOrchestrator:
    """Runs one webhook job end to end.

    The orchestrator owns the event's terminal idempotency marks; raised
    exceptions are left to the worker's retry policy.
    """

    def __init__(
        self,
        classifier: IntentClassifier | None = None,
        sender: InstagramSender | None = None,
        fsm: DialogFSM | None = None,
    ) -> None:
        self.classifier = classifier or IntentClassifier()
        self.sender = sender or InstagramSender()
        self.fsm = fsm or DialogFSM()

    # ------------------------------------------------------------------ instagram
    def handle_instagram(self, job: WebhookJob) -> str:
        correlation_id = job.correlation_id
        inbound = parse_instagram_message(job.payload, job.event_id)
        if inbound is None:
            self._mark_processed(job)
            record_audit_event(
                correlation_id=correlation_id,
                action="no_message",
                resource_type="webhook_event",
                resource_id=job.event_id,
                meta={"provider": job.provider},
            )
            return "no_message"

        account = (
            InstagramAccount.objects.select_related("doctor")
            .filter(page_id=inbound.page_id, is_active=True)
            .first()
        )
        if account is None:
            raise UnroutableEvent(f"unknown_page:{inbound.page_id}")
        doctor = account.doctor

        patient = find_or_create_placeholder(doctor, Platform.INSTAGRAM, inbound.sender_id)
        conversation = get_or_create_conversation(doctor, patient, Platform.INSTAGRAM, inbound.sender_id)
        intent = self.classifier.classify(inbound.text, correlation_id=correlation_id)

        try:
            store_message(
                conversation,
                platform_message_id=inbound.mid,
                sender_type=SenderType.PATIENT,
                content=inbound.text,
                intent=intent.intent,
            )
        except DuplicateMessage:
            logger.info(
                "dialog.duplicate_message",
                extra={"conversation_id": conversation.id, "correlation_id": correlation_id},
            )

        state = ConversationState.from_dict(conversation.state)
        state.last_intent = intent.intent
        ctx = TurnContext(
            doctor=doctor,
            patient=patient,
            conversation=conversation,
            state=state,
            text=inbound.text,
            intent=intent,
            correlation_id=correlation_id,
        )
        reply = self.drive(ctx)

        conversation.state = state.to_dict()
        conversation.save(update_fields=["state", "updated_at"])
        store_system_reply(conversation, reply)
        self._send(account, inbound.sender_id, reply, correlation_id)

        logger.info(
            "dialog.turn_completed",
            extra={
                "conversation_id": conversation.id,
                "step": state.step,
                "intent": intent.intent,
                "correlation_id": correlation_id,
            },
        )
        self._mark_processed(job)
        return "processed"

    def drive(self, ctx: TurnContext) -> str:
        """Advance the conversation by one patient message and return the reply."""
        intent = ctx.intent.intent
        if intent == INTENT_REVOKE:
            return self._revoke(ctx)
        if intent == INTENT_CANCEL:
            return self._cancel(ctx)

        step = ctx.state.step
        if step in DialogState.TERMINAL:
            if intent not in BOOKING_INTENTS:
                return self._terminal_reply(ctx)
            self.fsm.apply(ctx.state, Trigger.RESTART)
            step = ctx.state.step

        if step == DialogState.GREETING:
            return self._greeting(ctx)
        if step == DialogState.COLLECTING_INFO:
            return self._collect(ctx)
        if step == DialogState.AWAITING_CONSENT:
            return self._consent(ctx)
        if step == DialogState.SELECTING_SLOT:
            return self._select_slot(ctx)
        if step == DialogState.BOOKING:
            return self._resume_booking(ctx)
        if step == DialogState.AWAITING_PAYMENT:
            return self._awaiting_payment(ctx)
        return FALLBACK_REPLY

    # ------------------------------------------------------------------ steps
    def _greeting(self, ctx: TurnContext) -> str:
        intent = ctx.intent.intent
        if intent in BOOKING_INTENTS:
            if ctx.patient.has_consent:
                self.fsm.apply(ctx.state, Trigger.OFFER_SLOTS)
                return self._offer_slots(ctx)
            ctx.state.collected_fields = {}
            self.fsm.apply(ctx.state, Trigger.COLLECT)
            return collection.prompt_for(collection.next_field(ctx.state.collected_fields))
        if intent == INTENT_GREETING:
            return GREETING_REPLY
        if intent == INTENT_QUESTION:
            return FALLBACK_REPLY
        return NOT_UNDERSTOOD_REPLY

    def _collect(self, ctx: TurnContext) -> str:
        field = collection.next_field(ctx.state.collected_fields)
        if field is not None:
            outcome = collection.collect_field(
                ctx.conversation.id, field, ctx.text, correlation_id=ctx.correlation_id
            )
            if not outcome.ok:
                return outcome.reply
            ctx.state.collected_fields[field] = True
            following = collection.next_field(ctx.state.collected_fields)
            if following is not None:
                return collection.prompt_for(following)
        self.fsm.apply(ctx.state, Trigger.FIELDS_COMPLETE)
        return consent.CONSENT_QUESTION

    def _consent(self, ctx: TurnContext) -> str:
        decision = consent.parse_consent_reply(ctx.text)
        if decision == consent.CONSENT_UNCLEAR:
            return "I didn't quite get that. " + consent.CONSENT_QUESTION
        if decision == consent.CONSENT_GRANTED:
            outcome = consent.grant_consent(ctx.patient, ctx.conversation.id, correlation_id=ctx.correlation_id)
            if outcome.granted:
                self.fsm.apply(ctx.state, Trigger.CONSENT_GRANTED)
                return f"{outcome.reply}\n\n{self._offer_slots(ctx)}"
        else:
            outcome = consent.deny_consent(ctx.patient, ctx.conversation.id, correlation_id=ctx.correlation_id)
        ctx.state.collected_fields = {}
        self.fsm.apply(ctx.state, Trigger.CONSENT_DENIED)
        return outcome.reply

    def _select_slot(self, ctx: TurnContext) -> str:
        state = ctx.state
        if not state.offered_slots:
            return self._offer_slots(ctx)
        listing = self._current_listing(ctx)
        number = parse_slot_number(ctx.text)
        if number is None:
            return "Please reply with the number of your preferred slot (1, 2, 3...).\n\n" + listing
        if number > len(state.offered_slots):
            return f"Please choose a number between 1 and {len(state.offered_slots)}.\n\n" + listing

        slot_start = datetime.fromisoformat(state.offered_slots[number - 1])
        self.fsm.apply(state, Trigger.SLOT_CHOSEN)
        try:
            appointment = book(
                ctx.doctor,
                ctx.patient,
                slot_start,
                notes=self._booking_notes(ctx),
                correlation_id=ctx.correlation_id,
            )
        except BookingConflict:
            self.fsm.apply(state, Trigger.CONFLICT)
            return SLOT_TAKEN_PREFIX + self._offer_slots(ctx)
        except BookingValidationError:
            self.fsm.apply(state, Trigger.CONFLICT)
            return SLOT_UNAVAILABLE_PREFIX + self._offer_slots(ctx)

        state.appointment_id = appointment.id
        state.clear_slot_offer()
        self.fsm.apply(state, Trigger.BOOKED)
        notify_doctor_new_appointment(appointment, correlation_id=ctx.correlation_id)
        return self._issue_payment(ctx, appointment)

    def _resume_booking(self, ctx: TurnContext) -> str:
        # A previous turn stopped between choosing and booking.
        if ctx.state.appointment_id:
            self.fsm.apply(ctx.state, Trigger.BOOKED)
            return self._awaiting_payment(ctx)
        self.fsm.apply(ctx.state, Trigger.CONFLICT)
        return self._offer_slots(ctx)

    def _awaiting_payment(self, ctx: TurnContext) -> str:
        appointment = (
            Appointment.objects.select_related("doctor").filter(pk=ctx.state.appointment_id).first()
            if ctx.state.appointment_id
            else None
        )
        if appointment is None or appointment.status == AppointmentStatus.CANCELLED:
            self.fsm.apply(ctx.state, Trigger.CANCEL)
            return INACTIVE_BOOKING_REPLY
        if appointment.status == AppointmentStatus.CONFIRMED:
            self.fsm.apply(ctx.state, Trigger.LINK_ISSUED)
            return self._confirmation(appointment)
        payment = pending_payment_for(appointment)
        if payment is not None:
            self.fsm.apply(ctx.state, Trigger.LINK_ISSUED)
            return self._payment_message(appointment, payment.amount_minor, payment.currency, payment.payment_url)
        return self._issue_payment(ctx, appointment)

    # ------------------------------------------------------------------ overrides
    def _cancel(self, ctx: TurnContext) -> str:
        state = ctx.state
        cancelled = self._cancel_booked_appointment(ctx)
        if state.step == DialogState.CANCELLED:
            return CANCELLED_REPLY if cancelled else STOPPED_REPLY
        if state.step == DialogState.CONFIRMED:
            self.fsm.apply(state, Trigger.RESTART)
        collection.clear_collected(ctx.conversation.id)
        state.collected_fields = {}
        self.fsm.apply(state, Trigger.CANCEL)
        state.appointment_id = None
        return CANCELLED_REPLY if cancelled else STOPPED_REPLY

    def _cancel_booked_appointment(self, ctx: TurnContext) -> bool:
        if not ctx.state.appointment_id:
            return False
        appointment = Appointment.objects.filter(pk=ctx.state.appointment_id, doctor=ctx.doctor).first()
        if appointment is None:
            return False
        return cancel_appointment(appointment, correlation_id=ctx.correlation_id)

    def _revoke(self, ctx: TurnContext) -> str:
        reply = consent.revoke_consent(ctx.patient, ctx.conversation.id, correlation_id=ctx.correlation_id)
        ctx.state.collected_fields = {}
        if not ctx.state.is_terminal:
            self.fsm.apply(ctx.state, Trigger.CANCEL)
        return reply

    def _terminal_reply(self, ctx: TurnContext) -> str:
        if ctx.state.step == DialogState.CONFIRMED and ctx.state.appointment_id:
            appointment = Appointment.objects.filter(pk=ctx.state.appointment_id).select_related("doctor").first()
            if appointment and appointment.status == AppointmentStatus.CONFIRMED:
                return self._confirmation(appointment)
            if appointment and appointment.status == AppointmentStatus.PENDING:
                payment = pending_payment_for(appointment)
                if payment is not None:
                    return self._payment_message(
                        appointment, payment.amount_minor, payment.currency, payment.payment_url
                    )
                # The previous payment failed; issue a fresh link.
                return self._issue_payment(ctx, appointment)
        if ctx.intent.intent == INTENT_GREETING:
            return GREETING_REPLY
        return FALLBACK_REPLY

    # ------------------------------------------------------------------ helpers
    def _offer_slots(self, ctx: TurnContext) -> str:
        """Offer the first day with free slots, starting tomorrow in the doctor's timezone."""
        state = ctx.state
        tomorrow = timezone.now().astimezone(doctor_tz(ctx.doctor)).date() + timedelta(days=1)
        slots: List[Slot] = []
        day = tomorrow
        for offset in range(SLOT_SEARCH_DAYS):
            day = tomorrow + timedelta(days=offset)
            slots = compute_slots(ctx.doctor, day)
            if slots:
                break
        if not slots:
            state.slot_date = None
            state.offered_slots = []
            return NO_SLOTS_REPLY.format(day=format_day(tomorrow))
        state.slot_date = day.isoformat()
        state.offered_slots = [slot.start.isoformat() for slot in slots]
        return self._current_listing(ctx)

    def _current_listing(self, ctx: TurnContext) -> str:
        state = ctx.state
        day = date.fromisoformat(state.slot_date) if state.slot_date else timezone.now().date()
        starts = [datetime.fromisoformat(value) for value in state.offered_slots]
        return format_slot_list(day, starts, ctx.doctor)

    @staticmethod
    def _booking_notes(ctx: TurnContext) -> str:
        notes = f"Booked via {ctx.conversation.platform}"
        if ctx.patient.reason_for_visit:
            notes += f"\nReason for visit: {ctx.patient.reason_for_visit}"
        return notes

    def _issue_payment(self, ctx: TurnContext, appointment: Appointment) -> str:
        """Create a payment link; once one exists the dialog is confirmed."""
        doctor = ctx.doctor
        try:
            payment = create_payment_link(
                appointment,
                amount_minor=doctor.fee_minor,
                currency=doctor.fee_currency,
                region=doctor.payment_region,
                payer=PayerInfo(name=ctx.patient.name, phone=ctx.patient.phone),
                correlation_id=ctx.correlation_id,
            )
        except PaymentGatewayError:
            return (
                f"Your appointment is booked for {format_when(appointment.appointment_date, doctor)}. "
                "We'll send your payment link shortly."
            )
        if ctx.state.step == DialogState.AWAITING_PAYMENT:
            self.fsm.apply(ctx.state, Trigger.LINK_ISSUED)
        return self._payment_message(appointment, payment.amount_minor, payment.currency, payment.payment_url)

    @staticmethod
    def _payment_message(appointment: Appointment, amount_minor: int, currency: str, url: str) -> str:
        return (
            f"Your appointment is booked for {format_when(appointment.appointment_date, appointment.doctor)}. "
            f"Your appointment fee is {format_amount(amount_minor, currency)}. "
            f"Please pay here to confirm: {url}\n\nWe'll send a reminder before your visit."
        )

    @staticmethod
    def _confirmation(appointment: Appointment) -> str:
        return (
            f"Your appointment is confirmed for {format_when(appointment.appointment_date, appointment.doctor)}. "
            "We'll send a reminder before your visit."
        )

    def _send(self, account: InstagramAccount, recipient_id: str, text: str, correlation_id: str) -> None:
        try:
            self.sender.send(recipient_id, text, account.get_access_token(), correlation_id=correlation_id)
        except (ChannelSendError, DecryptionError) as exc:
            # The turn is already persisted; a resend would replay the dialog step.
            logger.error(
                "dialog.reply_send_failed",
                extra={"page_id": account.page_id, "error": type(exc).__name__, "correlation_id": correlation_id},
            )

    @staticmethod
    def _mark_processed(job: WebhookJob) -> None:
        try:
            idempotency.mark_processed(job.event_id, job.provider)
        except idempotency.IdempotencyStoreError as exc:
            logger.error(
                "webhook.idempotency_unavailable",
                extra={"event_id": job.event_id, "provider": job.provider, "error": str(exc)},
            )

    # ------------------------------------------------------------------ payments
    def handle_payment(self, job: WebhookJob) -> str:
        """Apply a gateway event to its payment. The dialog state is not touched here."""
        adapter = get_adapter(job.provider)
        captured = adapter.parse_success_payload(job.payload)
        if captured is not None:
            payment = process_payment_success(
                gateway=job.provider,
                gateway_order_id=captured.gateway_order_id,
                gateway_payment_id=captured.gateway_payment_id,
                amount_minor=captured.amount_minor,
                currency=captured.currency,
                correlation_id=job.correlation_id,
            )
            return self._finish_payment_job(job, payment, "payment_captured")

        failed = adapter.parse_failure_payload(job.payload)
        if failed is not None:
            payment = process_payment_failure(
                gateway=job.provider,
                gateway_order_id=failed.gateway_order_id,
                gateway_payment_id=failed.gateway_payment_id,
                reason=failed.reason,
                correlation_id=job.correlation_id,
            )
            return self._finish_payment_job(job, payment, "payment_failed")

        record_audit_event(
            correlation_id=job.correlation_id,
            action="payment_event_ignored",
            resource_type="webhook_event",
            resource_id=job.event_id,
            meta={"provider": job.provider},
        )
        self._mark_processed(job)
        return "ignored"

    def _finish_payment_job(self, job: WebhookJob, payment, action: str) -> str:
        self._mark_processed(job)
        if payment is not None:
            return "processed"
        record_audit_event(
            correlation_id=job.correlation_id,
            action=action,
            resource_type="webhook_event",
            resource_id=job.event_id,
            status=AuditStatus.FAILURE,
            error_message="unknown_order",
            meta={"provider": job.provider},
        )
        return "unknown_order"
