"""
Card Module

One debit card per user. The card row is keyed by the owner's user id and
the card number has its own index table, so both "one card per user" and
"card numbers are unique" are enforced by inserts. Clients only ever see a
masked number; the CVV is returned once at issuance and stored hashed.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional, Any, Callable
from enum import Enum
import random
import secrets

from .users import UserRegistry, hash_secret
from .storage import StorageInterface, StorageRecord
from .outbox import Outbox, OutboxRelay
from .audit import AuditEventType
from .notifications import NotificationKind
from .errors import NotFoundError, ConflictError, DuplicateError, classified
from .logging_config import get_logger, log_action


CARD_BIN = "4"
CARD_VALIDITY_YEARS = 4


class CardStatus(Enum):
    """Card state, independent of the holder's user status"""
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"


def luhn_check_digit(partial: str) -> str:
    """Check digit that makes ``partial + digit`` pass the Luhn test"""
    total = 0
    for i, char in enumerate(reversed(partial)):
        digit = int(char)
        if i % 2 == 0:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return str((10 - total % 10) % 10)


def mask_card_number(number: str) -> str:
    if len(number) <= 4:
        return number
    return "**** **** **** " + number[-4:]


@dataclass
class Card(StorageRecord):
    """Issued card; ``id`` is the owner's user id"""
    user_id: str
    card_holder_name: str
    card_number: str
    expiry_date: str
    cvv_hash: str
    cvv_salt: str
    status: CardStatus = CardStatus.ACTIVE
    issued_by: Optional[str] = None

    @property
    def is_frozen(self) -> bool:
        return self.status == CardStatus.FROZEN

    @property
    def masked_number(self) -> str:
        return mask_card_number(self.card_number)

    def client_view(self) -> Dict[str, Any]:
        return {
            'has_card': True,
            'card_holder_name': self.card_holder_name,
            'display_card_number': self.masked_number,
            'expiry_date': self.expiry_date,
            'status': self.status.value,
            'is_frozen': self.is_frozen,
        }


@dataclass
class IssuedCard:
    """Issuance result, the only place the full number and CVV appear"""
    card: Card
    cvv: str


class CardManager:
    """Card issuance and freeze control"""

    def __init__(
        self,
        storage: StorageInterface,
        users: UserRegistry,
        outbox: Outbox,
        relay: OutboxRelay,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        max_attempts: int = 10
    ):
        self.storage = storage
        self.users = users
        self.outbox = outbox
        self.relay = relay
        self.rng = rng or random.SystemRandom()
        self.clock = clock
        self.max_attempts = max_attempts
        self.table_name = users.card_table
        self.number_index_table = users.card_number_table
        self.logger = get_logger("funds_core.cards")

    def _candidate_number(self) -> str:
        partial = CARD_BIN + "".join(str(self.rng.randint(0, 9)) for _ in range(14))
        return partial + luhn_check_digit(partial)

    def _expiry(self) -> str:
        now = self.clock()
        return f"{now.month:02d}/{(now.year + CARD_VALIDITY_YEARS) % 100:02d}"

    def issue_card(self, user_id: str, admin_id: str) -> IssuedCard:
        """
        Issue the user's card

        Raises:
            NotFoundError: Unknown user
            ConflictError: The user already has a card
            DuplicateError: No unused card number after repeated attempts
        """
        user = self.users.get_user(user_id)
        if self.storage.exists(self.table_name, user.id):
            raise ConflictError("User already has a card", code="card_exists")

        cvv = f"{self.rng.randint(0, 999):03d}"
        cvv_salt = secrets.token_hex(16)
        cvv_hash = hash_secret(cvv, cvv_salt)

        for attempt in range(1, self.max_attempts + 1):
            now = datetime.now(timezone.utc)
            card = Card(
                id=user.id,
                created_at=now,
                updated_at=now,
                user_id=user.id,
                card_holder_name=user.full_name.upper(),
                card_number=self._candidate_number(),
                expiry_date=self._expiry(),
                cvv_hash=cvv_hash,
                cvv_salt=cvv_salt,
                issued_by=admin_id,
            )
            try:
                with classified("card issuance"), self.storage.atomic():
                    self.storage.insert(self.table_name, card.id, self._card_to_dict(card))
                    self.storage.insert(self.number_index_table, card.card_number, {'user_id': user.id})
                    tasks = [
                        self.outbox.audit(AuditEventType.CARD_ISSUED, "card", card.id,
                                          {"last_four": card.card_number[-4:]}, user_id=admin_id),
                        self.outbox.notify(user.id, NotificationKind.CARD_ISSUED, {
                            "last_four": card.card_number[-4:],
                            "expiry_date": card.expiry_date,
                        }),
                    ]
            except DuplicateError as e:
                if e.context.get("table") != self.number_index_table:
                    raise ConflictError("User already has a card", code="card_exists")
                self.logger.warning(f"Card number collision (attempt {attempt})")
                continue
            self.relay.dispatch(tasks)
            log_action(
                self.logger, "info", "Card issued",
                user_id=admin_id, action="issue_card", resource=f"card:{card.id}"
            )
            return IssuedCard(card=card, cvv=cvv)

        raise DuplicateError("Could not generate an unused card number, please retry")

    def find_card(self, user_id: str) -> Optional[Card]:
        data = self.storage.load(self.table_name, user_id)
        return self._card_from_dict(data) if data else None

    def get_card(self, user_id: str) -> Dict[str, Any]:
        """Masked client view of the user's card"""
        card = self.find_card(user_id)
        if not card:
            user = self.users.get_user(user_id)
            return {'has_card': False, 'full_name': user.full_name}
        return card.client_view()

    def list_cards(self) -> List[Card]:
        return [self._card_from_dict(d) for d in self.storage.load_all(self.table_name)]

    def set_card_frozen(self, user_id: str, frozen: bool, actor_id: str) -> Card:
        """Freeze or unfreeze; repeating the current state changes nothing"""
        target = CardStatus.FROZEN if frozen else CardStatus.ACTIVE
        with classified("card status change"), self.storage.atomic():
            card = self.find_card(user_id)
            if not card:
                raise NotFoundError("Card not found", context={"user_id": user_id})
            if card.status == target:
                return card
            card.status = target
            card.updated_at = datetime.now(timezone.utc)
            self.storage.save(self.table_name, card.id, self._card_to_dict(card))
            event_type = AuditEventType.CARD_FROZEN if frozen else AuditEventType.CARD_UNFROZEN
            tasks = [self.outbox.audit(event_type, "card", card.id, {"status": target.value}, user_id=actor_id)]
        self.relay.dispatch(tasks)
        return card

    def _card_to_dict(self, card: Card) -> Dict:
        result = card.to_dict()
        result['status'] = card.status.value
        return result

    def _card_from_dict(self, data: Dict) -> Card:
        data = Card.parse_timestamps(dict(data))
        data['status'] = CardStatus(data['status'])
        return Card(**data)
