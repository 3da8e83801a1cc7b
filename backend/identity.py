import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from werkzeug.security import check_password_hash, generate_password_hash

import settings
from errors import AuthorizationError, ElectionError, LedgerUnavailable, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

ACCOUNT_COUNTER_PATH = "counters/accounts"


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class User:
    uid: str
    name: str
    email: str
    account: int
    is_organizer: bool

    @classmethod
    def from_record(cls, uid: str, record: dict[str, Any]) -> "User":
        return cls(
            uid=uid,
            name=record.get("name", ""),
            email=record.get("email", ""),
            account=int(record["account"]),
            is_organizer=bool(record.get("isOrganizer", False)),
        )

    def info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "userID": self.uid,
            "accountType": "Organizer" if self.is_organizer else "Voter",
        }


class IdentityResolver:
    """Maps user ids to ledger accounts and roles.

    ``ledger`` may be ``None`` when the blockchain client could not be
    built; address resolution then fails and new accounts go unfunded.
    """

    def __init__(self, store, ledger=None) -> None:
        self.store = store
        self.ledger = ledger

    def register(self, name: str, email: str, password: str, is_organizer: bool) -> User:
        email = normalize_email(email)
        uid = uuid.uuid4().hex
        email_index = f"emails/{sha256_hex(email)}"
        if not self.store.create(email_index, {"uid": uid}):
            raise ValidationError("Email already registered")

        try:
            account = self.store.increment(ACCOUNT_COUNTER_PATH, "account", settings.ACCOUNT_INDEX_START)
            self.store.write(
                f"users/{uid}",
                {
                    "name": name,
                    "email": email,
                    "account": account,
                    "isOrganizer": bool(is_organizer),
                    "passwordHash": generate_password_hash(password),
                },
            )
        except Exception:
            logger.error("Registration of %s failed; releasing its email reservation", uid)
            self.store.write(email_index, None)
            raise
        user = User(uid=uid, name=name, email=email, account=account, is_organizer=bool(is_organizer))
        logger.info("Registered %s %s with ledger account %d", "organizer" if is_organizer else "voter", uid, account)
        self._provision(user)
        return user

    def _provision(self, user: User) -> None:
        if self.ledger is None:
            logger.warning("Ledger unavailable; account %d for %s left unfunded", user.account, user.uid)
            return
        amount = settings.ORGANIZER_FUNDING_MICROALGOS if user.is_organizer else settings.ACCOUNT_FUNDING_MICROALGOS
        try:
            self.ledger.fund(self.ledger.resolve_address(user.account), amount)
        except ElectionError as exc:
            logger.warning("Funding account %d for %s failed: %s", user.account, user.uid, exc.message)

    def authenticate(self, email: str, password: str) -> User:
        index = self.store.read(f"emails/{sha256_hex(normalize_email(email))}")
        record = self.store.read(f"users/{index['uid']}") if index else None
        if not record or not check_password_hash(record.get("passwordHash", ""), password):
            raise AuthorizationError("Invalid credentials")
        return User.from_record(index["uid"], record)

    def get_user(self, uid: str) -> User | None:
        record = self.store.read(f"users/{uid}")
        if not record:
            return None
        return User.from_record(uid, record)

    def require_user(self, uid: str) -> User:
        user = self.get_user(uid)
        if user is None:
            raise NotFoundError("Unknown user")
        return user

    def account_for(self, uid: str) -> int | None:
        account = self.store.read(f"users/{uid}/account")
        return None if account is None else int(account)

    def address_for(self, uid: str) -> str | None:
        account = self.account_for(uid)
        if account is None:
            return None
        if self.ledger is None:
            raise LedgerUnavailable()
        return self.ledger.resolve_address(account)
