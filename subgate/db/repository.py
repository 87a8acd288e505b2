from __future__ import annotations

from dataclasses import replace
from typing import Any, List, Optional

from subgate.db.models import (
    Payment,
    PaymentStatus,
    PaymentValidation,
    ValidationStatus,
    Subscription,
    UserInfo,
    ReminderInfo,
    IN_FLIGHT_STATUSES,
)

# порядок важен только для читаемости SQL
_IN_FLIGHT = tuple(sorted(s.value for s in IN_FLIGHT_STATUSES))

_SUB_COLUMNS = "id, telegram_user_id, chat_id, plan_code, start_at, end_at, active, closed_at"
_PAYMENT_COLUMNS = "id, invoice_id, telegram_user_id, plan_code, amount, status, created_at, paid_at"
_VALIDATION_COLUMNS = (
    "invoice_id, telegram_user_id, plan_code, paid_at, deadline_at, status, confirmed_at, join_at"
)


class Repository:
    """
    Хранилище платежей, валидаций, подписок и напоминаний.
    Только доступ к данным, без политики: решения принимают сервисы.
    Каждый метод это короткая операция; внешние вызовы внутри транзакций не делаем.
    """

    def __init__(self, db):
        self.db = db  # FakeDatabase или asyncpg.Pool

    def _is_fake(self) -> bool:
        return hasattr(self.db, "payments") and hasattr(self.db, "subscriptions")

    # -------------------- ROW MAPPING --------------------

    def _row_to_payment(self, row: Any) -> Payment:
        return Payment(
            id=row["id"],
            invoice_id=row["invoice_id"],
            telegram_user_id=row["telegram_user_id"],
            plan_code=row["plan_code"],
            amount=row["amount"],
            status=PaymentStatus(row["status"]),
            created_at=row["created_at"],
            paid_at=row["paid_at"],
        )

    def _row_to_validation(self, row: Any) -> PaymentValidation:
        return PaymentValidation(
            invoice_id=row["invoice_id"],
            telegram_user_id=row["telegram_user_id"],
            plan_code=row["plan_code"],
            paid_at=row["paid_at"],
            deadline_at=row["deadline_at"],
            status=ValidationStatus(row["status"]),
            confirmed_at=row["confirmed_at"],
            join_at=row["join_at"],
        )

    def _row_to_subscription(self, row: Any) -> Subscription:
        return Subscription(
            id=row["id"],
            telegram_user_id=row["telegram_user_id"],
            chat_id=row["chat_id"],
            plan_code=row["plan_code"],
            start_at=row["start_at"],
            end_at=row["end_at"],
            active=bool(row["active"]),
            closed_at=row["closed_at"],
        )

    # -------------------- PAYMENTS --------------------

    async def insert_payment(self, p: Payment) -> None:
        if self._is_fake():
            if p.invoice_id in self.db.payments:
                return
            self.db.payments[p.invoice_id] = replace(p, id=self.db.next_payment_id())
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO payments (invoice_id, telegram_user_id, plan_code, amount, status, created_at, paid_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (invoice_id) DO NOTHING
                """,
                p.invoice_id,
                p.telegram_user_id,
                p.plan_code,
                p.amount,
                p.status.value,
                p.created_at,
                p.paid_at,
            )

    async def get_payment(self, invoice_id: str) -> Optional[Payment]:
        if self._is_fake():
            p = self.db.payments.get(invoice_id)
            return replace(p) if p else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_PAYMENT_COLUMNS} FROM payments WHERE invoice_id=$1",
                invoice_id,
            )
            return self._row_to_payment(row) if row else None

    async def list_in_flight_payments(self) -> List[Payment]:
        if self._is_fake():
            return [replace(p) for p in self.db.sorted_payments() if p.status in IN_FLIGHT_STATUSES]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PAYMENT_COLUMNS}
                FROM payments
                WHERE status = ANY($1::text[])
                ORDER BY created_at ASC, id ASC
                """,
                list(_IN_FLIGHT),
            )
            return [self._row_to_payment(r) for r in rows]

    async def get_last_in_flight_payment(self, telegram_user_id: int) -> Optional[Payment]:
        if self._is_fake():
            items = [
                p for p in self.db.sorted_payments()
                if p.telegram_user_id == telegram_user_id and p.status in IN_FLIGHT_STATUSES
            ]
            return replace(items[-1]) if items else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_PAYMENT_COLUMNS}
                FROM payments
                WHERE telegram_user_id=$1 AND status = ANY($2::text[])
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                telegram_user_id,
                list(_IN_FLIGHT),
            )
            return self._row_to_payment(row) if row else None

    async def try_mark_payment_success(self, invoice_id: str, paid_at: int) -> bool:
        """
        compare-and-swap: success пишется только из in-flight статуса.
        True, если именно этот вызов перевёл платеж в success.
        """
        if self._is_fake():
            # проверка и запись без await между ними
            p = self.db.payments.get(invoice_id)
            if p is None or p.status not in IN_FLIGHT_STATUSES:
                return False
            p.status = PaymentStatus.SUCCESS
            p.paid_at = paid_at
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payments
                SET status='success', paid_at=$2
                WHERE invoice_id=$1 AND status = ANY($3::text[])
                RETURNING invoice_id
                """,
                invoice_id,
                paid_at,
                list(_IN_FLIGHT),
            )
            return row is not None

    async def mark_payment_failed(self, invoice_id: str, status: PaymentStatus) -> bool:
        if self._is_fake():
            p = self.db.payments.get(invoice_id)
            if p is None or p.status not in IN_FLIGHT_STATUSES:
                return False
            p.status = status
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payments
                SET status=$2
                WHERE invoice_id=$1 AND status = ANY($3::text[])
                RETURNING invoice_id
                """,
                invoice_id,
                status.value,
                list(_IN_FLIGHT),
            )
            return row is not None

    async def has_successful_payment(self, telegram_user_id: int) -> bool:
        if self._is_fake():
            return any(
                p.telegram_user_id == telegram_user_id and p.status is PaymentStatus.SUCCESS
                for p in self.db.payments.values()
            )

        async with self.db.acquire() as conn:
            val = await conn.fetchval(
                "SELECT 1 FROM payments WHERE telegram_user_id=$1 AND status='success' LIMIT 1",
                telegram_user_id,
            )
            return bool(val)

    async def get_last_successful_payment(self, telegram_user_id: int) -> Optional[Payment]:
        if self._is_fake():
            items = [
                p for p in self.db.sorted_payments()
                if p.telegram_user_id == telegram_user_id and p.status is PaymentStatus.SUCCESS
            ]
            return replace(items[-1]) if items else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_PAYMENT_COLUMNS}
                FROM payments
                WHERE telegram_user_id=$1 AND status='success'
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                telegram_user_id,
            )
            return self._row_to_payment(row) if row else None

    async def list_recent_payments(self, limit: int) -> List[Payment]:
        if self._is_fake():
            return [replace(p) for p in reversed(self.db.sorted_payments())][:limit]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PAYMENT_COLUMNS}
                FROM payments
                ORDER BY created_at DESC, id DESC
                LIMIT $1
                """,
                limit,
            )
            return [self._row_to_payment(r) for r in rows]

    async def list_paid_payments_without_validation(self, paid_after: int, paid_before: int) -> List[Payment]:
        """
        success-оплаты (не ручные, amount > 0) без записи валидации:
        оплату отметили, а доступ по ней так и не оформили.
        """
        if self._is_fake():
            return [
                replace(p) for p in self.db.sorted_payments()
                if p.status is PaymentStatus.SUCCESS
                and p.amount > 0
                and p.paid_at is not None
                and paid_after <= p.paid_at <= paid_before
                and p.invoice_id not in self.db.validations
            ]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_PAYMENT_COLUMNS}
                FROM payments p
                WHERE p.status='success' AND p.amount > 0 AND p.paid_at BETWEEN $1 AND $2
                  AND NOT EXISTS (SELECT 1 FROM payment_validations v WHERE v.invoice_id = p.invoice_id)
                ORDER BY p.created_at ASC, p.id ASC
                """,
                paid_after,
                paid_before,
            )
            return [self._row_to_payment(r) for r in rows]

    # -------------------- PAYMENT VALIDATIONS --------------------

    async def create_validation(self, v: PaymentValidation) -> bool:
        """insert-if-absent по invoice_id. True, если запись создана этим вызовом."""
        if self._is_fake():
            if v.invoice_id in self.db.validations:
                return False
            self.db.validations[v.invoice_id] = replace(v)
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO payment_validations ({_VALIDATION_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (invoice_id) DO NOTHING
                RETURNING invoice_id
                """,
                v.invoice_id,
                v.telegram_user_id,
                v.plan_code,
                v.paid_at,
                v.deadline_at,
                v.status.value,
                v.confirmed_at,
                v.join_at,
            )
            return row is not None

    async def get_validation(self, invoice_id: str) -> Optional[PaymentValidation]:
        if self._is_fake():
            v = self.db.validations.get(invoice_id)
            return replace(v) if v else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {_VALIDATION_COLUMNS} FROM payment_validations WHERE invoice_id=$1",
                invoice_id,
            )
            return self._row_to_validation(row) if row else None

    def _fake_user_validations(self, telegram_user_id: int) -> List[PaymentValidation]:
        items = [v for v in self.db.validations.values() if v.telegram_user_id == telegram_user_id]
        items.sort(key=lambda v: v.paid_at)
        return items

    async def get_pending_validation_for_user(self, telegram_user_id: int, now: int) -> Optional[PaymentValidation]:
        """Последняя pending-валидация, у которой дедлайн ещё не прошёл."""
        if self._is_fake():
            items = [
                v for v in self._fake_user_validations(telegram_user_id)
                if v.status is ValidationStatus.PENDING and v.deadline_at >= now
            ]
            return replace(items[-1]) if items else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_VALIDATION_COLUMNS}
                FROM payment_validations
                WHERE telegram_user_id=$1 AND status='pending' AND deadline_at >= $2
                ORDER BY paid_at DESC
                LIMIT 1
                """,
                telegram_user_id,
                now,
            )
            return self._row_to_validation(row) if row else None

    async def has_confirmed_validation(self, telegram_user_id: int) -> bool:
        if self._is_fake():
            return any(
                v.status is ValidationStatus.CONFIRMED
                for v in self._fake_user_validations(telegram_user_id)
            )

        async with self.db.acquire() as conn:
            val = await conn.fetchval(
                "SELECT 1 FROM payment_validations WHERE telegram_user_id=$1 AND status='confirmed' LIMIT 1",
                telegram_user_id,
            )
            return bool(val)

    async def has_any_validation(self, telegram_user_id: int) -> bool:
        if self._is_fake():
            return bool(self._fake_user_validations(telegram_user_id))

        async with self.db.acquire() as conn:
            val = await conn.fetchval(
                "SELECT 1 FROM payment_validations WHERE telegram_user_id=$1 LIMIT 1",
                telegram_user_id,
            )
            return bool(val)

    async def _set_validation_status(
        self,
        invoice_id: str,
        status: ValidationStatus,
        confirmed_at: int,
        join_at: Optional[int],
    ) -> bool:
        # срабатывает только из pending, повторный вызов ничего не меняет
        if self._is_fake():
            v = self.db.validations.get(invoice_id)
            if v is None or not v.status.can_transition_to(status):
                return False
            v.status = status
            v.confirmed_at = confirmed_at
            if join_at is not None:
                v.join_at = join_at
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE payment_validations
                SET status=$2,
                    confirmed_at=$3,
                    join_at=COALESCE($4, join_at)
                WHERE invoice_id=$1 AND status='pending'
                RETURNING invoice_id
                """,
                invoice_id,
                status.value,
                confirmed_at,
                join_at,
            )
            return row is not None

    async def confirm_validation(self, invoice_id: str, join_at: int, confirmed_at: int) -> bool:
        return await self._set_validation_status(invoice_id, ValidationStatus.CONFIRMED, confirmed_at, join_at)

    # -------------------- SUBSCRIPTIONS --------------------

    def _fake_active(self, telegram_user_id: int, chat_id: str) -> Optional[Subscription]:
        for s in self.db.subscriptions.values():
            if s.telegram_user_id == telegram_user_id and s.chat_id == chat_id and s.active:
                return s
        return None

    async def get_active_subscription(self, telegram_user_id: int, chat_id: str) -> Optional[Subscription]:
        if self._is_fake():
            s = self._fake_active(telegram_user_id, chat_id)
            return replace(s) if s else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT {_SUB_COLUMNS}
                FROM subscriptions
                WHERE telegram_user_id=$1 AND chat_id=$2 AND active
                ORDER BY end_at DESC
                LIMIT 1
                """,
                telegram_user_id,
                chat_id,
            )
            return self._row_to_subscription(row) if row else None

    async def extend_subscription(
        self,
        telegram_user_id: int,
        chat_id: str,
        plan_code: str,
        now: int,
        duration_sec: int,
    ) -> Subscription:
        """
        Одна операция: либо новая активная подписка [now, now+duration),
        либо end_at = max(end_at, now) + duration у существующей.
        """
        if self._is_fake():
            s = self._fake_active(telegram_user_id, chat_id)
            if s is None:
                sid = self.db.next_subscription_id()
                s = Subscription(
                    id=sid,
                    telegram_user_id=telegram_user_id,
                    chat_id=chat_id,
                    plan_code=plan_code,
                    start_at=now,
                    end_at=now + duration_sec,
                    active=True,
                )
                self.db.subscriptions[sid] = s
            else:
                s.end_at = max(s.end_at, now) + duration_sec
                s.plan_code = plan_code
            return replace(s)

        async with self.db.acquire() as conn:
            # частичный уникальный индекс uq_subscriptions_active держит инвариант
            row = await conn.fetchrow(
                f"""
                INSERT INTO subscriptions (telegram_user_id, chat_id, plan_code, start_at, end_at, active)
                VALUES ($1, $2, $3, $4::bigint, $4::bigint + $5::bigint, TRUE)
                ON CONFLICT (telegram_user_id, chat_id) WHERE active
                DO UPDATE SET end_at = GREATEST(subscriptions.end_at, $4::bigint) + $5::bigint,
                              plan_code = EXCLUDED.plan_code
                RETURNING {_SUB_COLUMNS}
                """,
                telegram_user_id,
                chat_id,
                plan_code,
                now,
                duration_sec,
            )
            return self._row_to_subscription(row)

    async def replace_subscription(
        self,
        telegram_user_id: int,
        chat_id: str,
        plan_code: str,
        start_at: int,
        end_at: int,
    ) -> Subscription:
        """Выключает все подписки пары и создаёт новую (ручная выдача админом)."""
        if self._is_fake():
            for s in self.db.subscriptions.values():
                if s.telegram_user_id == telegram_user_id and s.chat_id == chat_id:
                    s.active = False
            sid = self.db.next_subscription_id()
            s = Subscription(
                id=sid,
                telegram_user_id=telegram_user_id,
                chat_id=chat_id,
                plan_code=plan_code,
                start_at=start_at,
                end_at=end_at,
                active=True,
            )
            self.db.subscriptions[sid] = s
            return replace(s)

        async with self.db.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    "UPDATE subscriptions SET active=FALSE WHERE telegram_user_id=$1 AND chat_id=$2",
                    telegram_user_id,
                    chat_id,
                )
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO subscriptions (telegram_user_id, chat_id, plan_code, start_at, end_at, active)
                    VALUES ($1, $2, $3, $4, $5, TRUE)
                    RETURNING {_SUB_COLUMNS}
                    """,
                    telegram_user_id,
                    chat_id,
                    plan_code,
                    start_at,
                    end_at,
                )
                return self._row_to_subscription(row)

    async def has_active_subscription(self, telegram_user_id: int, chat_id: str, now: int) -> bool:
        if self._is_fake():
            s = self._fake_active(telegram_user_id, chat_id)
            return s is not None and s.end_at > now

        async with self.db.acquire() as conn:
            val = await conn.fetchval(
                """
                SELECT 1 FROM subscriptions
                WHERE telegram_user_id=$1 AND chat_id=$2 AND active AND end_at > $3
                LIMIT 1
                """,
                telegram_user_id,
                chat_id,
                now,
            )
            return bool(val)

    async def find_expired_active_subscriptions(self, now: int) -> List[Subscription]:
        if self._is_fake():
            items = [s for s in self.db.subscriptions.values() if s.active and s.end_at <= now]
            items.sort(key=lambda s: (s.end_at, s.id))
            return [replace(s) for s in items]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUB_COLUMNS}
                FROM subscriptions
                WHERE active AND end_at <= $1
                ORDER BY end_at ASC, id ASC
                """,
                now,
            )
            return [self._row_to_subscription(r) for r in rows]

    async def find_active_subscriptions_ending_between(self, start: int, end: int) -> List[Subscription]:
        if self._is_fake():
            items = [
                s for s in self.db.subscriptions.values()
                if s.active and start <= s.end_at <= end
            ]
            items.sort(key=lambda s: (s.end_at, s.id))
            return [replace(s) for s in items]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUB_COLUMNS}
                FROM subscriptions
                WHERE active AND end_at >= $1 AND end_at <= $2
                ORDER BY end_at ASC, id ASC
                """,
                start,
                end,
            )
            return [self._row_to_subscription(r) for r in rows]

    async def close_expired_subscription(self, subscription_id: int, now: int) -> bool:
        """
        Выключает подписку, только если она всё ещё активна и истекла.
        False, если её успели продлить (end_at сдвинулся вперёд) или уже закрыли.
        """
        if self._is_fake():
            s = self.db.subscriptions.get(subscription_id)
            if s is None or not s.active or s.end_at > now:
                return False
            s.active = False
            s.closed_at = now
            return True

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE subscriptions SET active=FALSE, closed_at=$2
                WHERE id=$1 AND active AND end_at <= $2
                RETURNING id
                """,
                subscription_id,
                now,
            )
            return row is not None

    async def find_closed_subscriptions_without_notice(self, since: int, notice_key: int) -> List[Subscription]:
        """Закрытые чисткой после since, по которым уведомление ещё не отмечено."""
        if self._is_fake():
            items = [
                s for s in self.db.subscriptions.values()
                if not s.active
                and s.closed_at is not None
                and s.closed_at >= since
                and (s.id, notice_key) not in self.db.expiry_reminders
            ]
            items.sort(key=lambda s: (s.closed_at, s.id))
            return [replace(s) for s in items]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUB_COLUMNS}
                FROM subscriptions s
                WHERE NOT active AND closed_at IS NOT NULL AND closed_at >= $1
                  AND NOT EXISTS (
                      SELECT 1 FROM expiry_reminders r
                      WHERE r.subscription_id = s.id AND r.days_before_expiry = $2
                  )
                ORDER BY closed_at ASC, id ASC
                """,
                since,
                notice_key,
            )
            return [self._row_to_subscription(r) for r in rows]

    async def list_active_subscriptions(self, chat_id: str, now: int) -> List[Subscription]:
        if self._is_fake():
            items = [
                s for s in self.db.subscriptions.values()
                if s.active and s.chat_id == chat_id and s.end_at > now
            ]
            items.sort(key=lambda s: (s.end_at, s.id))
            return [replace(s) for s in items]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {_SUB_COLUMNS}
                FROM subscriptions
                WHERE active AND chat_id=$1 AND end_at > $2
                ORDER BY end_at ASC, id ASC
                """,
                chat_id,
                now,
            )
            return [self._row_to_subscription(r) for r in rows]

    async def revoke_user_subscription(self, telegram_user_id: int, chat_id: str) -> bool:
        if self._is_fake():
            s = self._fake_active(telegram_user_id, chat_id)
            if s is None:
                return False
            s.active = False
            return True

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                UPDATE subscriptions SET active=FALSE
                WHERE telegram_user_id=$1 AND chat_id=$2 AND active
                RETURNING id
                """,
                telegram_user_id,
                chat_id,
            )
            return len(rows) > 0

    # -------------------- USERS --------------------

    async def save_user_info(
        self,
        telegram_user_id: int,
        now: int,
        username: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> None:
        if self._is_fake():
            existing = self.db.users.get(telegram_user_id)
            self.db.users[telegram_user_id] = UserInfo(
                telegram_user_id=telegram_user_id,
                updated_at=now,
                username=username or (existing.username if existing else None),
                first_name=first_name or (existing.first_name if existing else None),
                last_name=last_name or (existing.last_name if existing else None),
            )
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO users (telegram_user_id, username, first_name, last_name, updated_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (telegram_user_id) DO UPDATE
                SET username=COALESCE(EXCLUDED.username, users.username),
                    first_name=COALESCE(EXCLUDED.first_name, users.first_name),
                    last_name=COALESCE(EXCLUDED.last_name, users.last_name),
                    updated_at=EXCLUDED.updated_at
                """,
                telegram_user_id,
                username,
                first_name,
                last_name,
                now,
            )

    async def get_user_info(self, telegram_user_id: int) -> Optional[UserInfo]:
        if self._is_fake():
            u = self.db.users.get(telegram_user_id)
            return replace(u) if u else None

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT telegram_user_id, username, first_name, last_name, updated_at
                FROM users
                WHERE telegram_user_id=$1
                """,
                telegram_user_id,
            )
            if not row:
                return None
            return UserInfo(
                telegram_user_id=row["telegram_user_id"],
                updated_at=row["updated_at"],
                username=row["username"],
                first_name=row["first_name"],
                last_name=row["last_name"],
            )

    async def find_user_ids_by_username(self, username: str) -> List[int]:
        username = username.lstrip("@").lower()
        if self._is_fake():
            return sorted(
                u.telegram_user_id for u in self.db.users.values()
                if u.username and u.username.lower() == username
            )

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                "SELECT telegram_user_id FROM users WHERE lower(username)=$1 ORDER BY telegram_user_id",
                username,
            )
            return [int(r["telegram_user_id"]) for r in rows]

    async def list_users(self) -> List[UserInfo]:
        if self._is_fake():
            users = sorted(self.db.users.values(), key=lambda u: u.updated_at, reverse=True)
            return [replace(u) for u in users]

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT telegram_user_id, username, first_name, last_name, updated_at
                FROM users
                ORDER BY updated_at DESC
                """
            )
            return [
                UserInfo(
                    telegram_user_id=r["telegram_user_id"],
                    updated_at=r["updated_at"],
                    username=r["username"],
                    first_name=r["first_name"],
                    last_name=r["last_name"],
                )
                for r in rows
            ]

    async def record_channel_join(self, telegram_user_id: int, chat_id: str, join_at: int) -> None:
        if self._is_fake():
            self.db.channel_joins[(telegram_user_id, chat_id)] = join_at
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO user_channel_joins (telegram_user_id, chat_id, last_join_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (telegram_user_id, chat_id) DO UPDATE SET last_join_at=EXCLUDED.last_join_at
                """,
                telegram_user_id,
                chat_id,
                join_at,
            )

    async def get_last_channel_join(self, telegram_user_id: int, chat_id: str) -> Optional[int]:
        if self._is_fake():
            return self.db.channel_joins.get((telegram_user_id, chat_id))

        async with self.db.acquire() as conn:
            return await conn.fetchval(
                "SELECT last_join_at FROM user_channel_joins WHERE telegram_user_id=$1 AND chat_id=$2",
                telegram_user_id,
                chat_id,
            )

    async def list_known_user_ids(self) -> List[int]:
        """Все, кто когда-либо платил или имел подписку."""
        if self._is_fake():
            ids = {p.telegram_user_id for p in self.db.payments.values()}
            ids |= {s.telegram_user_id for s in self.db.subscriptions.values()}
            return sorted(ids)

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT telegram_user_id AS uid FROM payments
                UNION
                SELECT telegram_user_id AS uid FROM subscriptions
                ORDER BY uid
                """
            )
            return [int(r["uid"]) for r in rows]

    async def list_user_ids_without_successful_payment(self) -> List[int]:
        """
        Пользователи, о которых мы что-то знаем (старт/подписки/оплаты),
        но у которых нет ни одной успешной оплаты.
        """
        if self._is_fake():
            ids = set(self.db.users.keys())
            ids |= {s.telegram_user_id for s in self.db.subscriptions.values()}
            ids |= {p.telegram_user_id for p in self.db.payments.values()}
            paid = {
                p.telegram_user_id for p in self.db.payments.values()
                if p.status is PaymentStatus.SUCCESS
            }
            return sorted(ids - paid)

        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT uid FROM (
                    SELECT telegram_user_id AS uid FROM users
                    UNION
                    SELECT telegram_user_id AS uid FROM subscriptions
                    UNION
                    SELECT telegram_user_id AS uid FROM payments
                ) all_ids
                WHERE NOT EXISTS (
                    SELECT 1 FROM payments p
                    WHERE p.telegram_user_id = all_ids.uid AND p.status = 'success'
                )
                ORDER BY uid
                """
            )
            return [int(r["uid"]) for r in rows]

    # -------------------- REMINDERS --------------------

    async def get_reminder_info(self, telegram_user_id: int) -> ReminderInfo:
        if self._is_fake():
            info = self.db.reminders.get(telegram_user_id)
            return replace(info) if info else ReminderInfo(last_sent_at=None, send_count=0)

        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT last_sent_at, send_count FROM reminders_non_subscribed WHERE telegram_user_id=$1",
                telegram_user_id,
            )
            if not row:
                return ReminderInfo(last_sent_at=None, send_count=0)
            return ReminderInfo(last_sent_at=row["last_sent_at"], send_count=row["send_count"])

    async def set_reminder_sent(self, telegram_user_id: int, now: int) -> None:
        if self._is_fake():
            info = self.db.reminders.get(telegram_user_id)
            if info is None:
                self.db.reminders[telegram_user_id] = ReminderInfo(last_sent_at=now, send_count=1)
            else:
                info.last_sent_at = now
                info.send_count += 1
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO reminders_non_subscribed (telegram_user_id, last_sent_at, send_count)
                VALUES ($1, $2, 1)
                ON CONFLICT (telegram_user_id) DO UPDATE
                SET last_sent_at=EXCLUDED.last_sent_at,
                    send_count=reminders_non_subscribed.send_count + 1
                """,
                telegram_user_id,
                now,
            )

    async def was_expiry_reminder_sent(self, subscription_id: int, days_before_expiry: int) -> bool:
        if self._is_fake():
            return (subscription_id, days_before_expiry) in self.db.expiry_reminders

        async with self.db.acquire() as conn:
            val = await conn.fetchval(
                """
                SELECT 1 FROM expiry_reminders
                WHERE subscription_id=$1 AND days_before_expiry=$2
                """,
                subscription_id,
                days_before_expiry,
            )
            return bool(val)

    async def mark_expiry_reminder_sent(self, subscription_id: int, days_before_expiry: int, now: int) -> None:
        if self._is_fake():
            self.db.expiry_reminders[(subscription_id, days_before_expiry)] = now
            return

        async with self.db.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO expiry_reminders (subscription_id, days_before_expiry, sent_at)
                VALUES ($1, $2, $3)
                ON CONFLICT (subscription_id, days_before_expiry) DO UPDATE SET sent_at=EXCLUDED.sent_at
                """,
                subscription_id,
                days_before_expiry,
                now,
            )
