"""Typed states of the guided diagnosis conversation.

A session row only ever stores one of the states below; every state carries exactly the
fields collected so far, so reading the crop name before it was asked for is impossible.
The implicit `idle` state is the absence of a row.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class SessionStateName(str, Enum):
    AWAITING_CROP = "awaiting_crop"
    AWAITING_NOTES = "awaiting_notes"
    AWAITING_IMAGE = "awaiting_image"
    PROCESSING = "processing"


@dataclass(frozen=True)
class AwaitingCrop:
    name = SessionStateName.AWAITING_CROP


@dataclass(frozen=True)
class AwaitingNotes:
    crop_name: str
    name = SessionStateName.AWAITING_NOTES


@dataclass(frozen=True)
class AwaitingImage:
    crop_name: str
    notes: str
    name = SessionStateName.AWAITING_IMAGE


@dataclass(frozen=True)
class Processing:
    crop_name: str
    notes: str
    name = SessionStateName.PROCESSING


SessionState = Union[AwaitingCrop, AwaitingNotes, AwaitingImage, Processing]


VALID_TRANSITIONS = {
    None: [SessionStateName.AWAITING_CROP],
    SessionStateName.AWAITING_CROP: [SessionStateName.AWAITING_CROP, SessionStateName.AWAITING_NOTES],
    SessionStateName.AWAITING_NOTES: [SessionStateName.AWAITING_CROP, SessionStateName.AWAITING_IMAGE],
    SessionStateName.AWAITING_IMAGE: [
        SessionStateName.AWAITING_CROP,
        SessionStateName.AWAITING_IMAGE,
        SessionStateName.PROCESSING,
    ],
    SessionStateName.PROCESSING: [SessionStateName.AWAITING_CROP, SessionStateName.AWAITING_IMAGE],
}


class InvalidSessionStateError(Exception):
    def __init__(self, raw_state: Optional[str], reason: str):
        self.raw_state = raw_state
        super().__init__(f"Invalid session state {raw_state!r}: {reason}")


class InvalidTransitionError(Exception):
    def __init__(self, from_state: Optional[SessionStateName], to_state: SessionStateName):
        self.from_state = from_state
        self.to_state = to_state
        origin = from_state.value if from_state else "idle"
        super().__init__(f"Invalid transition: {origin} -> {to_state.value}")


def can_transition(from_state: Optional[SessionStateName], to_state: SessionStateName) -> bool:
    """Check if transition is valid. `None` stands for idle (no session)."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def ensure_transition(current: Optional[SessionState], target: SessionState) -> SessionState:
    """Return `target` if moving there from `current` is allowed, raise otherwise."""
    from_name = current.name if current is not None else None
    if not can_transition(from_name, target.name):
        raise InvalidTransitionError(from_name, target.name)
    return target


def encode_state(state: SessionState) -> tuple[str, Optional[str], Optional[str]]:
    """Flatten a state into the (state, crop_name, user_notes) row columns."""
    if isinstance(state, AwaitingCrop):
        return state.name.value, None, None
    if isinstance(state, AwaitingNotes):
        return state.name.value, state.crop_name, None
    return state.name.value, state.crop_name, state.notes


def decode_state(raw_state: Optional[str], crop_name: Optional[str], user_notes: Optional[str]) -> SessionState:
    """Rebuild the typed state from row columns. Raises InvalidSessionStateError on corrupt rows."""
    try:
        name = SessionStateName(raw_state)
    except ValueError:
        raise InvalidSessionStateError(raw_state, "unknown state") from None

    if name == SessionStateName.AWAITING_CROP:
        return AwaitingCrop()

    if not crop_name:
        raise InvalidSessionStateError(raw_state, "missing crop_name")

    if name == SessionStateName.AWAITING_NOTES:
        return AwaitingNotes(crop_name=crop_name)

    notes = user_notes or ""
    if name == SessionStateName.AWAITING_IMAGE:
        return AwaitingImage(crop_name=crop_name, notes=notes)
    return Processing(crop_name=crop_name, notes=notes)
