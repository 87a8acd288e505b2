import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from subgate.db.connection import FakeDatabase
from subgate.db.models import Payment, PaymentStatus
from subgate.db.repository import Repository
from subgate.services.access import AccessDecision
from subgate.services.interfaces import Invoice
from subgate.services.payments import PaymentStateMachine
from subgate.services.reconciliation import ReconciliationScheduler
from subgate.services.subscriptions import SubscriptionLedger
from subgate.services.validation import ValidationWorkflow

CHAT = "-1001234567890"
ADMIN_ID = 1


class FakeMembership:
    """Канал в памяти: статус по user_id, неудачи включаются вручную."""

    def __init__(self):
        self.statuses: Dict[int, str] = {}
        self.removed: List[int] = []
        self.removed_from: List[Tuple[str, int]] = []
        self.lookups: List[int] = []
        self.invites: List[Tuple[int, int]] = []
        self.fail_remove: Set[int] = set()
        self.fail_lookup: Set[int] = set()

    async def get_membership_status(self, chat_id: str, user_id: int) -> str:
        self.lookups.append(user_id)
        if user_id in self.fail_lookup:
            raise RuntimeError("getChatMember failed")
        return self.statuses.get(user_id, "left")

    async def remove_member(self, chat_id: str, user_id: int) -> None:
        if user_id in self.fail_remove:
            raise RuntimeError("Bad Request: not enough rights")
        self.removed.append(user_id)
        self.removed_from.append((chat_id, user_id))
        self.statuses[user_id] = "left"

    async def create_single_use_invite(self, chat_id: str, user_id: int, expire_at: int) -> Optional[str]:
        self.invites.append((user_id, expire_at))
        return f"https://t.me/+invite-{user_id}"


class FakeNotifier:
    def __init__(self):
        self.sent: List[Tuple[int, str, Dict[str, Any]]] = []
        self.fail_for: Set[int] = set()

    async def notify(self, user_id: int, text: str, **options: Any) -> None:
        if user_id in self.fail_for:
            raise RuntimeError("Forbidden: bot was blocked by the user")
        self.sent.append((user_id, text, options))

    def texts_for(self, user_id: int) -> List[str]:
        return [t for uid, t, _ in self.sent if uid == user_id]


class FakeGateway:
    """Шлюз оплаты: статусы счетов задаются в тесте; каждый вызов уступает цикл."""

    def __init__(self):
        self.statuses: Dict[str, str] = {}
        self.created: List[Tuple[int, str, str]] = []
        self.status_calls: List[str] = []
        self.error: Optional[Exception] = None
        self.release: Optional[asyncio.Event] = None

    async def create_invoice(self, amount_minor: int, reference: str, description: str) -> Invoice:
        if self.error:
            raise self.error
        self.created.append((amount_minor, reference, description))
        n = len(self.created)
        return Invoice(invoice_id=f"inv-{n}", pay_url=f"https://pay.example/inv-{n}")

    async def get_invoice_status(self, invoice_id: str) -> str:
        self.status_calls.append(invoice_id)
        if self.release is not None:
            await self.release.wait()
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.statuses.get(invoice_id, "processing")


@dataclass
class Env:
    db: FakeDatabase
    repo: Repository
    membership: FakeMembership
    notifier: FakeNotifier
    gateway: FakeGateway
    ledger: SubscriptionLedger
    payments: PaymentStateMachine
    workflow: ValidationWorkflow
    access: AccessDecision
    reconciliation: ReconciliationScheduler
    clock_now: List[int] = field(default_factory=lambda: [0])

    def clock(self) -> int:
        return self.clock_now[0]

    async def add_payment(
        self,
        invoice_id: str,
        user_id: int,
        plan_code: str = "P1M",
        status: PaymentStatus = PaymentStatus.CREATED,
        created_at: int = 0,
    ) -> Payment:
        p = Payment(
            invoice_id=invoice_id,
            telegram_user_id=user_id,
            plan_code=plan_code,
            amount=70000,
            status=status,
            created_at=created_at,
            paid_at=created_at if status is PaymentStatus.SUCCESS else None,
        )
        await self.repo.insert_payment(p)
        return await self.repo.get_payment(invoice_id)


def make_env(admin_ids=(ADMIN_ID,)) -> Env:
    db = FakeDatabase()
    repo = Repository(db)
    membership = FakeMembership()
    notifier = FakeNotifier()
    gateway = FakeGateway()
    ledger = SubscriptionLedger(repo)
    payments = PaymentStateMachine(repo, gateway)
    workflow = ValidationWorkflow(repo, ledger, membership, CHAT)
    access = AccessDecision(
        repo, ledger, workflow, payments, membership, notifier,
        chat_id=CHAT, admin_ids=admin_ids,
    )
    env = Env(
        db=db,
        repo=repo,
        membership=membership,
        notifier=notifier,
        gateway=gateway,
        ledger=ledger,
        payments=payments,
        workflow=workflow,
        access=access,
        reconciliation=None,
    )
    env.reconciliation = ReconciliationScheduler(
        repo, payments, workflow, membership, notifier,
        chat_id=CHAT, admin_ids=admin_ids, clock=env.clock, send_delay=0,
    )
    return env


@pytest.fixture
def env() -> Env:
    return make_env()
