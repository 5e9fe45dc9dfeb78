"""Finite-state machine for the booking dialog flow.

Pure: the machine only mutates a ``ConversationState``. Persisting it to
``Conversation.state`` is the orchestrator's job.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional

from apps.dialog.collection import REQUIRED_FIELDS


class DialogState:
    """Enumeration of FSM states."""

    GREETING = "greeting"
    COLLECTING_INFO = "collecting_info"
    AWAITING_CONSENT = "awaiting_consent"
    SELECTING_SLOT = "selecting_slot"
    BOOKING = "booking"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"

    ALL = (
        GREETING,
        COLLECTING_INFO,
        AWAITING_CONSENT,
        SELECTING_SLOT,
        BOOKING,
        AWAITING_PAYMENT,
        CONFIRMED,
        CANCELLED,
    )
    TERMINAL = (CONFIRMED, CANCELLED)


class Trigger:
    COLLECT = "collect"
    FIELDS_COMPLETE = "fields_complete"
    CONSENT_GRANTED = "consent_granted"
    CONSENT_DENIED = "consent_denied"
    OFFER_SLOTS = "offer_slots"
    SLOT_CHOSEN = "slot_chosen"
    BOOKED = "booked"
    CONFLICT = "conflict"
    LINK_ISSUED = "link_issued"
    CANCEL = "cancel"
    RESTART = "restart"


@dataclass(slots=True)
class ConversationState:
    step: str = DialogState.GREETING
    collected_fields: Dict[str, bool] = field(default_factory=dict)
    slot_date: Optional[str] = None
    offered_slots: List[str] = field(default_factory=list)
    appointment_id: Optional[int] = None
    last_intent: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ConversationState":
        data = data or {}
        step = data.get("step")
        if step not in DialogState.ALL:
            return cls()
        appointment_id = data.get("appointment_id")
        return cls(
            step=step,
            collected_fields={str(k): bool(v) for k, v in (data.get("collected_fields") or {}).items()},
            slot_date=data.get("slot_date"),
            offered_slots=[str(slot) for slot in data.get("offered_slots") or []],
            appointment_id=int(appointment_id) if appointment_id is not None else None,
            last_intent=data.get("last_intent") or "",
        )

    @property
    def is_terminal(self) -> bool:
        return self.step in DialogState.TERMINAL

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not self.collected_fields.get(name)]

    def clear_slot_offer(self) -> None:
        self.slot_date = None
        self.offered_slots = []


TransitionGuard = Callable[[ConversationState, dict], bool]


class InvalidTransition(RuntimeError):
    """Raised when a trigger is not legal from the current step."""

    def __init__(self, step: str, trigger: str) -> None:
        super().__init__(f"{trigger!r} is not allowed from {step!r}")
        self.step = step
        self.trigger = trigger


@dataclass(frozen=True)
class Transition:
    source: str
    trigger: str
    destination: str
    guard: Optional[TransitionGuard] = None


def _fields_complete(state: ConversationState, context: dict) -> bool:
    return not state.missing_fields()


class DialogFSM:
    """Table-driven FSM with optional transition guards."""

    def __init__(self) -> None:
        self.transitions: Dict[str, list[Transition]] = {}
        self._register_default_transitions()

    def _register_default_transitions(self) -> None:
        add = self._register
        add(DialogState.GREETING, Trigger.COLLECT, DialogState.COLLECTING_INFO)
        add(DialogState.GREETING, Trigger.OFFER_SLOTS, DialogState.SELECTING_SLOT)
        add(DialogState.COLLECTING_INFO, Trigger.FIELDS_COMPLETE, DialogState.AWAITING_CONSENT, _fields_complete)
        add(DialogState.AWAITING_CONSENT, Trigger.CONSENT_GRANTED, DialogState.SELECTING_SLOT)
        add(DialogState.AWAITING_CONSENT, Trigger.CONSENT_DENIED, DialogState.GREETING)
        add(DialogState.SELECTING_SLOT, Trigger.OFFER_SLOTS, DialogState.SELECTING_SLOT)
        add(DialogState.SELECTING_SLOT, Trigger.SLOT_CHOSEN, DialogState.BOOKING)
        add(DialogState.BOOKING, Trigger.BOOKED, DialogState.AWAITING_PAYMENT)
        add(DialogState.BOOKING, Trigger.CONFLICT, DialogState.SELECTING_SLOT)
        add(DialogState.AWAITING_PAYMENT, Trigger.LINK_ISSUED, DialogState.CONFIRMED)
        for source in DialogState.ALL:
            if source not in DialogState.TERMINAL:
                add(source, Trigger.CANCEL, DialogState.CANCELLED)
        for source in DialogState.TERMINAL:
            add(source, Trigger.RESTART, DialogState.GREETING)

    def _register(
        self,
        source: str,
        trigger: str,
        destination: str,
        guard: Optional[TransitionGuard] = None,
    ) -> None:
        self.transitions.setdefault(source, []).append(
            Transition(source=source, trigger=trigger, destination=destination, guard=guard)
        )

    def can_transition(self, state: ConversationState, trigger: str, context: dict | None = None) -> bool:
        return self._find(state, trigger, context or {}) is not None

    def _find(self, state: ConversationState, trigger: str, context: dict) -> Transition | None:
        for transition in self.transitions.get(state.step, []):
            if transition.trigger != trigger:
                continue
            if transition.guard and not transition.guard(state, context):
                continue
            return transition
        return None

    def apply(self, state: ConversationState, trigger: str, context: dict | None = None) -> str:
        transition = self._find(state, trigger, context or {})
        if transition is None:
            raise InvalidTransition(state.step, trigger)
        state.step = transition.destination
        if transition.destination in (DialogState.GREETING, DialogState.CANCELLED):
            state.clear_slot_offer()
        if transition.trigger == Trigger.RESTART:
            state.appointment_id = None
        return state.step
