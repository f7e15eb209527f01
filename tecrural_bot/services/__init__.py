from tecrural_bot.services.commands import CommandName, detect_command, parse_link_command
from tecrural_bot.services.result import Result
from tecrural_bot.services.session_state import (
    AwaitingCrop,
    AwaitingImage,
    AwaitingNotes,
    InvalidSessionStateError,
    InvalidTransitionError,
    Processing,
    SessionState,
    can_transition,
    decode_state,
    encode_state,
)
