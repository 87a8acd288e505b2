# то, что ядру нужно от внешнего мира; реализации в telegram_gateway и monopay_client

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

OUT_OF_GROUP_STATUSES = frozenset({"left", "kicked"})
GROUP_ADMIN_STATUSES = frozenset({"creator", "administrator"})


@dataclass(frozen=True)
class Invoice:
    invoice_id: str
    pay_url: str


class GroupMembership(Protocol):
    async def get_membership_status(self, chat_id: str, user_id: int) -> str: ...

    async def remove_member(self, chat_id: str, user_id: int) -> None: ...

    async def create_single_use_invite(self, chat_id: str, user_id: int, expire_at: int) -> Optional[str]: ...


class Notifier(Protocol):
    async def notify(self, user_id: int, text: str, **options: Any) -> None: ...


class PaymentGateway(Protocol):
    async def create_invoice(self, amount_minor: int, reference: str, description: str) -> Invoice: ...

    async def get_invoice_status(self, invoice_id: str) -> str: ...
