import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from tecrural_bot.logging_config import get_logger, mask_id, mask_phone
from tecrural_bot.models import Account, Diagnosis, TelegramLinkToken
from tecrural_bot.services.result import Result
from tecrural_bot.services.session_store import as_utc

logger = get_logger("account_service")

LINK_TOKEN_TTL_MINUTES = 15
HISTORY_LIMIT = 5


def phone_digits(value: Optional[str]) -> str:
    return "".join(ch for ch in str(value or "") if ch.isdigit())


def phones_match(stored_phone: Optional[str], sender_digits: str) -> bool:
    """Compare a profile phone with a WhatsApp sender.

    Profiles may be saved without the country code ("300 123 4567") while WhatsApp always
    delivers it ("573001234567"), so a suffix match of at least 7 digits is accepted.
    """
    stored = phone_digits(stored_phone)
    if not stored or not sender_digits:
        return False
    if stored == sender_digits:
        return True
    return len(stored) >= 7 and sender_digits.endswith(stored)


class AccountDirectory(ABC):
    """Read access to registered accounts, keyed by channel identifiers."""

    @abstractmethod
    def find_by_phone(self, phone: str) -> Optional[Account]:
        pass

    @abstractmethod
    def find_by_telegram_id(self, telegram_id: str) -> Optional[Account]:
        pass

    @abstractmethod
    def get_credits(self, account_id: UUID) -> int:
        pass

    @abstractmethod
    def recent_diagnoses(self, account_id: UUID, limit: int = HISTORY_LIMIT) -> list[Diagnosis]:
        pass

    @abstractmethod
    def link_telegram(
        self, token: str, telegram_id: str, telegram_username: Optional[str], now: datetime
    ) -> Result[Account]:
        pass


class SqlAccountDirectory(AccountDirectory):
    def __init__(self, db: Session):
        self.db = db

    def find_by_phone(self, phone: str) -> Optional[Account]:
        digits = phone_digits(phone)
        if not digits:
            return None

        exact = self.db.query(Account).filter(Account.phone.in_([digits, f"+{digits}"])).first()
        if exact:
            return exact

        candidates = self.db.query(Account).filter(Account.phone.like(f"%{digits[-4:]}")).limit(20).all()
        for candidate in candidates:
            if phones_match(candidate.phone, digits):
                return candidate

        logger.info("No account for phone", extra={"context": {"phone": mask_phone(phone)}})
        return None

    def find_by_telegram_id(self, telegram_id: str) -> Optional[Account]:
        if not telegram_id:
            return None
        return self.db.query(Account).filter(Account.telegram_id == str(telegram_id)).first()

    def get_credits(self, account_id: UUID) -> int:
        # Fresh read: another request may have spent credits since the session started.
        account = self.db.query(Account).filter(Account.id == account_id).first()
        if account is None:
            return 0
        self.db.refresh(account)
        return account.credits_remaining or 0

    def recent_diagnoses(self, account_id: UUID, limit: int = HISTORY_LIMIT) -> list[Diagnosis]:
        return (
            self.db.query(Diagnosis)
            .filter(Diagnosis.user_id == account_id)
            .order_by(Diagnosis.created_at.desc())
            .limit(limit)
            .all()
        )

    def link_telegram(
        self, token: str, telegram_id: str, telegram_username: Optional[str], now: datetime
    ) -> Result[Account]:
        """Attach a Telegram chat to the profile that issued `token` in the web app."""
        link = (
            self.db.query(TelegramLinkToken)
            .filter(TelegramLinkToken.token == token.upper(), TelegramLinkToken.used.is_(False))
            .first()
        )
        if link is None or link.user_id is None:
            return Result.failure("invalid", "invalid_token")

        if as_utc(link.expires_at) <= now:
            return Result.failure("expired", "expired_token")

        account = self.db.query(Account).filter(Account.id == link.user_id).first()
        if account is None:
            return Result.failure("account missing", "invalid_token")

        existing = self.find_by_telegram_id(telegram_id)
        if existing is not None and existing.id != account.id:
            return Result.failure("telegram already linked", "already_linked")

        account.telegram_id = str(telegram_id)
        account.telegram_username = telegram_username
        link.telegram_id = str(telegram_id)
        link.used = True
        self.db.commit()

        logger.info(
            "Telegram linked",
            extra={"context": {"account_id": mask_id(account.id), "telegram_id": mask_phone(telegram_id)}},
        )
        return Result.success(account)


def generate_link_token(db: Session, user_id: UUID, *, now: Optional[datetime] = None) -> TelegramLinkToken:
    """Issue a short code the user types as `/vincular CODE` in the Telegram bot."""
    # Called by the web app when the user opens its Telegram settings page; the bot only redeems codes.
    now = now or datetime.now(timezone.utc)
    link = TelegramLinkToken(
        token=secrets.token_hex(3).upper(),
        user_id=user_id,
        expires_at=now + timedelta(minutes=LINK_TOKEN_TTL_MINUTES),
        used=False,
    )
    db.add(link)
    db.commit()
    return link
