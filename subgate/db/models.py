# "структуры таблиц" (dataclass) + статусы

from dataclasses import dataclass
from enum import Enum
from typing import Optional

ONE_DAY_SEC = 24 * 60 * 60
ONE_MONTH_APPROX_SEC = 30 * ONE_DAY_SEC

# 10 минут на то, чтобы оплативший зашёл в канал
PAYMENT_VALIDATION_TIMEOUT_SEC = 10 * 60
INVITE_LINK_EXPIRE_SEC = ONE_DAY_SEC

# маркер "финальное уведомление об истечении уже отправлено"
EXPIRY_NOTICE_KEY = 0
# сколько дней после закрытия подписки ещё пытаемся доставить это уведомление
EXPIRY_NOTICE_RETRY_SEC = 3 * ONE_DAY_SEC
# оплаты моложе этого не "чиним": их может прямо сейчас обрабатывать проверка доступа
PAYMENT_RECOVERY_GRACE_SEC = 60
# старше этого не "чиним": у старых оплат (до валидаций) записи валидации нет и не должно быть
PAYMENT_RECOVERY_WINDOW_SEC = ONE_DAY_SEC


class PaymentStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    HOLDED = "holded"
    SUCCESS = "success"
    FAILURE = "failure"
    EXPIRED = "expired"
    REVERSED = "reversed"

    @property
    def is_terminal(self) -> bool:
        return self not in IN_FLIGHT_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in FAILURE_STATUSES

    def can_transition_to(self, new: "PaymentStatus") -> bool:
        return new in PAYMENT_TRANSITIONS[self]


IN_FLIGHT_STATUSES = frozenset({PaymentStatus.CREATED, PaymentStatus.PROCESSING, PaymentStatus.HOLDED})
FAILURE_STATUSES = frozenset({PaymentStatus.FAILURE, PaymentStatus.EXPIRED, PaymentStatus.REVERSED})

# из любого "in-flight" можно в любой другой статус, из терминальных никуда
PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    s: (frozenset(PaymentStatus) - {s} if s in IN_FLIGHT_STATUSES else frozenset())
    for s in PaymentStatus
}


class ValidationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    def can_transition_to(self, new: "ValidationStatus") -> bool:
        return self is ValidationStatus.PENDING and new is not ValidationStatus.PENDING


@dataclass(frozen=True)
class Plan:
    code: str
    title: str
    duration_sec: int
    amount_minor: int  # 0: план не продаётся


PLANS: dict[str, Plan] = {
    "P1M": Plan("P1M", "Подписка на 1 месяц", ONE_MONTH_APPROX_SEC, 70000),
    "P2M": Plan("P2M", "Подписка на 2 месяца", 2 * ONE_MONTH_APPROX_SEC, 120000),
    "TEST": Plan("TEST", "Тестовая подписка", ONE_MONTH_APPROX_SEC, 0),
}


@dataclass
class Payment:
    invoice_id: str
    telegram_user_id: int
    plan_code: str
    amount: int          # в копейках
    status: PaymentStatus
    created_at: int
    paid_at: Optional[int] = None
    id: Optional[int] = None


@dataclass
class PaymentValidation:
    invoice_id: str
    telegram_user_id: int
    plan_code: str
    paid_at: int
    deadline_at: int
    status: ValidationStatus
    confirmed_at: Optional[int] = None
    join_at: Optional[int] = None


@dataclass
class Subscription:
    id: int
    telegram_user_id: int
    chat_id: str
    plan_code: str
    start_at: int
    end_at: int
    active: bool = True
    closed_at: Optional[int] = None  # когда закрыта чисткой истёкших


@dataclass
class UserInfo:
    telegram_user_id: int
    updated_at: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None


@dataclass
class ReminderInfo:
    last_sent_at: Optional[int]
    send_count: int = 0
