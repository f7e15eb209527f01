"""Guided diagnosis conversation shared by every messaging channel.

One engine instance handles one webhook delivery:

    dedup claim -> identity -> command -> session state machine -> diagnosis

The engine talks to the outside only through the ChannelAdapter and the store
interfaces, so WhatsApp and Telegram run exactly the same flow.
"""

import re
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from tecrural_bot.logging_config import get_logger, mask_id, mask_phone
from tecrural_bot.models import Account
from tecrural_bot.services import messages
from tecrural_bot.services.account_service import AccountDirectory
from tecrural_bot.services.alert_service import alert_error
from tecrural_bot.services.channels.base import Channel, ChannelAdapter, InboundMessage, MessageKind
from tecrural_bot.services.commands import CommandName, parse_link_command
from tecrural_bot.services.dedup_service import DedupStore
from tecrural_bot.services.diagnosis import DiagnosisOutcome, DiagnosisResult
from tecrural_bot.services.diagnosis_adapter import DiagnosisAdapter
from tecrural_bot.services.notification_service import (
    NotificationDispatcher,
    notification_dispatcher,
    notify_whatsapp_diagnosis,
)
from tecrural_bot.services.session_state import (
    AwaitingCrop,
    AwaitingImage,
    AwaitingNotes,
    InvalidSessionStateError,
    Processing,
    SessionState,
    decode_state,
    ensure_transition,
)
from tecrural_bot.services.session_store import SessionStore, StoredSession

logger = get_logger("conversation_engine")

SKIP_WORDS = {"omitir", "skip", "no"}
MIN_CROP_LENGTH = 2
MAX_CROP_LENGTH = 60

_CAPTION_SEPARATOR = re.compile(r"\s+-\s+|\s*[–—]\s*")


class QuickPathError(Exception):
    """A captioned-image diagnosis failed. The sender's session was never involved."""


class HandleOutcome(str, Enum):
    DUPLICATE = "duplicate"
    UNKNOWN_SENDER = "unknown_sender"
    LINKED = "linked"
    COMMAND = "command"
    GUIDANCE = "guidance"
    PROMPTED = "prompted"
    DIAGNOSED = "diagnosed"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_quick_caption(caption: Optional[str]) -> Optional[tuple[str, str]]:
    """Parse an image caption of the form "<crop>[ - <notes>]".

    Returns (crop_name, notes) or None when no usable crop name is present.
    """
    if not caption:
        return None
    text = caption.strip()
    if not text or text.startswith("/"):
        return None

    parts = _CAPTION_SEPARATOR.split(text, maxsplit=1)
    crop_name = parts[0].strip()
    notes = parts[1].strip() if len(parts) > 1 else ""

    if len(crop_name) < MIN_CROP_LENGTH or len(crop_name) > MAX_CROP_LENGTH:
        return None
    return crop_name, notes


def is_valid_crop_name(text: Optional[str]) -> bool:
    if not text:
        return False
    value = text.strip()
    return len(value) >= MIN_CROP_LENGTH and not value.startswith("/")


class ConversationEngine:
    def __init__(
        self,
        channel: ChannelAdapter,
        sessions: SessionStore,
        dedup: DedupStore,
        accounts: AccountDirectory,
        diagnosis: DiagnosisAdapter,
        *,
        session_ttl_minutes: int = 30,
        processing_lease_minutes: int = 10,
        max_image_bytes: int = 10 * 1024 * 1024,
        whatsapp_notifier: Optional[ChannelAdapter] = None,
        notifications: NotificationDispatcher = notification_dispatcher,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.channel = channel
        self.sessions = sessions
        self.dedup = dedup
        self.accounts = accounts
        self.diagnosis = diagnosis
        self.session_ttl_minutes = session_ttl_minutes
        self.processing_lease_minutes = processing_lease_minutes
        self.max_image_bytes = max_image_bytes
        self.whatsapp_notifier = whatsapp_notifier
        self.notifications = notifications
        self.clock = clock

    @property
    def channel_name(self) -> str:
        return self.channel.channel.value

    async def handle(self, message: InboundMessage) -> HandleOutcome:
        """Process one inbound message end to end. Never raises."""
        log_context = {
            "channel": self.channel_name,
            "sender": mask_phone(message.sender_channel_id),
            "dedup_key": message.dedup_key,
            "kind": message.kind.value,
        }

        # Claimed before dispatch: concurrent redeliveries lose the unique-constraint race.
        try:
            claimed = self.dedup.mark_processed(message.dedup_key, message.sender_channel_id)
        except Exception as e:
            await self._fail(message, log_context, e, clear_session=False)
            return HandleOutcome.FAILED

        if not claimed:
            logger.info("Skipping already processed message", extra={"context": log_context})
            return HandleOutcome.DUPLICATE

        try:
            outcome = await self._dispatch(message)
        except QuickPathError as e:
            await self._fail(message, log_context, e, clear_session=False)
            return HandleOutcome.FAILED
        except Exception as e:
            await self._fail(message, log_context, e, clear_session=True)
            return HandleOutcome.FAILED

        logger.info("Message handled", extra={"context": {**log_context, "outcome": outcome.value}})
        return outcome

    async def _fail(self, message: InboundMessage, log_context: dict, error: Exception, *, clear_session: bool) -> None:
        logger.error(f"Conversation handling failed: {error}", extra={"context": log_context}, exc_info=error)
        await alert_error("Bot conversation failure", {**log_context, "error": str(error)[:200]})
        await self.channel.send_text(message.sender_channel_id, messages.GENERIC_RETRY)
        if not clear_session:
            return
        try:
            self.sessions.delete(self.channel_name, message.sender_channel_id)
        except Exception as cleanup_error:
            logger.error(
                f"Session cleanup after failure failed: {cleanup_error}",
                extra={"context": log_context},
                exc_info=True,
            )

    async def _dispatch(self, message: InboundMessage) -> HandleOutcome:
        sender = message.sender_channel_id

        account = self.channel.resolve_identity(self.accounts, message)
        if account is None:
            token = parse_link_command(message.text) if self.channel.channel == Channel.TELEGRAM else None
            if token:
                return await self._link_telegram(message, token)
            await self.channel.send_text(sender, self.channel.unknown_sender_text)
            return HandleOutcome.UNKNOWN_SENDER

        if message.kind == MessageKind.TEXT:
            command = self.channel.detect_command(message.text)
            if command is not None:
                await self._run_command(command, account, message)
                return HandleOutcome.COMMAND

        stored = self.sessions.get(self.channel_name, sender, self.clock())
        try:
            state = self._decode(stored)
        except InvalidSessionStateError as e:
            logger.warning(f"Resetting corrupted session: {e}", extra={"context": {"sender": mask_phone(sender)}})
            self.sessions.delete(self.channel_name, sender)
            await self.channel.send_text(sender, messages.UNKNOWN_STATE)
            return HandleOutcome.GUIDANCE

        if isinstance(state, Processing):
            await self.channel.send_text(sender, messages.STILL_PROCESSING)
            return HandleOutcome.PROMPTED

        if message.kind == MessageKind.IMAGE:
            quick = parse_quick_caption(message.caption)
            if quick is not None:
                crop_name, notes = quick
                return await self._quick_diagnosis(account, message, crop_name, notes)

        if state is None:
            await self.channel.send_text(sender, messages.IDLE_GUIDANCE)
            return HandleOutcome.GUIDANCE

        if isinstance(state, AwaitingCrop):
            return await self._on_awaiting_crop(account, message, state)
        if isinstance(state, AwaitingNotes):
            return await self._on_awaiting_notes(account, message, state)
        return await self._on_awaiting_image(account, message, state)

    @staticmethod
    def _decode(stored: Optional[StoredSession]) -> Optional[SessionState]:
        if stored is None:
            return None
        return decode_state(stored.state, stored.crop_name, stored.user_notes)

    def _transition(
        self, account: Account, sender: str, current: Optional[SessionState], target: SessionState
    ) -> None:
        ensure_transition(current, target)
        now = self.clock()
        minutes = self.processing_lease_minutes if isinstance(target, Processing) else self.session_ttl_minutes
        self.sessions.save(
            self.channel_name,
            sender,
            account.id,
            target,
            now=now,
            expires_at=now + timedelta(minutes=minutes),
        )
        logger.info(
            "Session transition",
            extra={
                "context": {
                    "sender": mask_phone(sender),
                    "from": current.name.value if current else "idle",
                    "to": target.name.value,
                }
            },
        )

    # Commands

    async def _run_command(self, command: CommandName, account: Account, message: InboundMessage) -> None:
        sender = message.sender_channel_id

        if command == CommandName.NEW:
            current = self._current_state_or_none(sender)
            self._transition(account, sender, current, AwaitingCrop())
            await self.channel.send_text(sender, messages.ASK_CROP)
        elif command == CommandName.START:
            await self.channel.send_menu(sender, messages.START_MENU_TEXT, messages.START_MENU_BUTTONS)
        elif command == CommandName.HISTORY:
            diagnoses = self.accounts.recent_diagnoses(account.id)
            await self.channel.send_text(sender, messages.format_history(diagnoses))
        elif command == CommandName.CREDITS:
            await self.channel.send_text(sender, messages.format_credits(self.accounts.get_credits(account.id)))
        else:
            await self.channel.send_text(sender, messages.HELP)

    def _current_state_or_none(self, sender: str) -> Optional[SessionState]:
        """Current state for a reset; a corrupted row is simply overwritten."""
        stored = self.sessions.get(self.channel_name, sender, self.clock())
        try:
            return self._decode(stored)
        except InvalidSessionStateError:
            return None

    async def _link_telegram(self, message: InboundMessage, token: str) -> HandleOutcome:
        result = self.accounts.link_telegram(
            token, message.sender_channel_id, message.sender_username, self.clock()
        )
        if result.ok:
            await self.channel.send_text(
                message.sender_channel_id, messages.format_link_success(result.value.first_name)
            )
            return HandleOutcome.LINKED

        logger.info(
            "Telegram link rejected",
            extra={"context": {"sender": mask_phone(message.sender_channel_id), "reason": result.error_code}},
        )
        text = messages.LINK_FAILURES.get(result.error_code, messages.LINK_FAILURES["invalid_token"])
        await self.channel.send_text(message.sender_channel_id, text)
        return HandleOutcome.UNKNOWN_SENDER

    # State handlers

    async def _on_awaiting_crop(self, account: Account, message: InboundMessage, state: AwaitingCrop) -> HandleOutcome:
        sender = message.sender_channel_id

        if message.kind != MessageKind.TEXT:
            await self.channel.send_text(sender, messages.CROP_EXPECTED)
            return HandleOutcome.PROMPTED

        if not is_valid_crop_name(message.text):
            await self.channel.send_text(sender, messages.CROP_TOO_SHORT)
            return HandleOutcome.PROMPTED

        crop_name = message.text.strip()[:MAX_CROP_LENGTH]
        self._transition(account, sender, state, AwaitingNotes(crop_name=crop_name))
        await self.channel.send_text(sender, messages.format_ask_notes(crop_name))
        return HandleOutcome.PROMPTED

    async def _on_awaiting_notes(
        self, account: Account, message: InboundMessage, state: AwaitingNotes
    ) -> HandleOutcome:
        sender = message.sender_channel_id

        if message.kind == MessageKind.IMAGE:
            # Photo sent before the notes: skip them and process the image in this same turn.
            next_state = AwaitingImage(crop_name=state.crop_name, notes="")
            self._transition(account, sender, state, next_state)
            return await self._submit_from_session(account, message, next_state)

        text = (message.text or "").strip() if message.kind == MessageKind.TEXT else ""
        if not text:
            await self.channel.send_text(sender, messages.ASK_NOTES_TEXT)
            return HandleOutcome.PROMPTED

        notes = "" if text.lower() in SKIP_WORDS else text
        self._transition(account, sender, state, AwaitingImage(crop_name=state.crop_name, notes=notes))
        await self.channel.send_text(sender, messages.ASK_PHOTO)
        return HandleOutcome.PROMPTED

    async def _on_awaiting_image(
        self, account: Account, message: InboundMessage, state: AwaitingImage
    ) -> HandleOutcome:
        if message.kind != MessageKind.IMAGE:
            await self.channel.send_text(message.sender_channel_id, messages.PHOTO_EXPECTED)
            return HandleOutcome.PROMPTED

        return await self._submit_from_session(account, message, state)

    # Diagnosis

    def _has_credits(self, account: Account) -> bool:
        # Re-read at submission time: credits may have been spent since the session began.
        credits = self.accounts.get_credits(account.id)
        if credits <= 0:
            logger.info("Diagnosis blocked, no credits", extra={"context": {"account_id": mask_id(account.id)}})
            return False
        return True

    async def _submit_from_session(
        self, account: Account, message: InboundMessage, state: AwaitingImage
    ) -> HandleOutcome:
        sender = message.sender_channel_id

        if not self._has_credits(account):
            self.sessions.delete(self.channel_name, sender)
            await self.channel.send_text(sender, messages.OUT_OF_CREDITS)
            return HandleOutcome.PROMPTED

        processing = Processing(crop_name=state.crop_name, notes=state.notes)
        self._transition(account, sender, state, processing)

        result = await self._diagnose(account, message, state.crop_name, state.notes)

        if result.outcome == DiagnosisOutcome.NEEDS_BETTER_IMAGE:
            self._transition(account, sender, processing, AwaitingImage(crop_name=state.crop_name, notes=state.notes))
        else:
            self.sessions.delete(self.channel_name, sender)

        await self._deliver_result(account, message, state.crop_name, result)
        return HandleOutcome.DIAGNOSED

    async def _quick_diagnosis(
        self, account: Account, message: InboundMessage, crop_name: str, notes: str
    ) -> HandleOutcome:
        """Image with a "crop - notes" caption: diagnose directly, leaving any session untouched."""
        logger.info(
            "Quick path diagnosis",
            extra={"context": {"sender": mask_phone(message.sender_channel_id), "crop_name": crop_name}},
        )
        if not self._has_credits(account):
            await self.channel.send_text(message.sender_channel_id, messages.OUT_OF_CREDITS)
            return HandleOutcome.PROMPTED

        try:
            result = await self._diagnose(account, message, crop_name, notes)
            await self._deliver_result(account, message, crop_name, result)
        except Exception as e:
            raise QuickPathError(str(e)) from e
        return HandleOutcome.DIAGNOSED

    async def _diagnose(self, account: Account, message: InboundMessage, crop_name: str, notes: str) -> DiagnosisResult:
        sender = message.sender_channel_id
        await self.channel.send_text(sender, messages.ANALYZING)
        await self.channel.send_typing(sender)

        media = await self.channel.download_media(message, self.max_image_bytes)
        return await self.diagnosis.invoke(
            account.id, crop_name, notes, media.content, media.mime_type, self.channel_name
        )

    async def _deliver_result(
        self, account: Account, message: InboundMessage, crop_name: str, result: DiagnosisResult
    ) -> None:
        sender = message.sender_channel_id
        await self.channel.send_text(sender, self.diagnosis.reply_text(result, crop_name))

        if result.outcome != DiagnosisOutcome.SUCCESS:
            return

        if result.image_url:
            await self.channel.send_image(sender, result.image_url, caption=f"🌱 {crop_name}")

        self._schedule_secondary_notification(account, crop_name, result)

    def _schedule_secondary_notification(self, account: Account, crop_name: str, result: DiagnosisResult) -> None:
        if self.channel.channel != Channel.TELEGRAM or self.whatsapp_notifier is None:
            return
        if not account.notify_whatsapp_on_diagnosis or not account.phone:
            return

        self.notifications.schedule(
            notify_whatsapp_diagnosis(
                self.whatsapp_notifier,
                account.phone,
                crop_name,
                result.report_markdown,
                result.image_url,
            ),
            name=f"whatsapp-diagnosis-{mask_id(account.id)}",
        )
