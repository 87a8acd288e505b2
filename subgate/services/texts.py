# тексты, которые бот отправляет пользователям

from subgate.db.models import Plan

WELCOME = (
    "👋 Привет!\n\n"
    "Это бот закрытого канала. Здесь можно оформить подписку "
    "и получить персональную ссылку для входа."
)

CHOOSE_PLAN = "Выберите тариф подписки:"
SUBSCRIBE_NUDGE = "Чтобы продолжить доступ к каналу, оформите подписку:"

INVOICE_READY = "Счёт создан. Нажмите кнопку ниже, чтобы перейти к оплате."
INVOICE_FAILED = "Не удалось создать счёт. Попробуйте позже."

PAYMENT_RECEIVED = "✅ Оплата получена! Нажмите «Проверить доступ» в боте, чтобы получить ссылку на канал."

ACCESS_GRANTED = "У вас активная подписка. Нажмите, чтобы перейти в канал."
ACCESS_ADMIN = "Админ-доступ: нажмите, чтобы перейти в канал."
ACCESS_CONFIRMED = "Оплата подтверждена, подписка активирована."
ACCESS_PAYMENT_FOUND = "Оплата найдена. Нажмите, чтобы перейти в канал."
ACCESS_AWAITING_JOIN = (
    "Оплата получена. Зайдите в канал по ссылке в течение 10 минут, "
    "чтобы подписка активировалась."
)
ACCESS_DENIED = "Доступ отсутствует. Оформите подписку."
ACCESS_NO_LINK = "Не удалось создать ссылку. Попробуйте позже или напишите в поддержку."
ACCESS_CHECK_FAILED = "Не удалось проверить доступ. Попробуйте позже."

ACCESS_CLOSED = (
    "⛔️ Доступ к каналу закрыт: активной подписки нет. "
    "Оформите подписку в боте, чтобы вернуться."
)
SUBSCRIPTION_EXPIRED = (
    "Срок вашей подписки истёк. Доступ к каналу закрыт. "
    "Продлите подписку в боте, чтобы продолжить участие."
)
NO_SUBSCRIPTION = (
    "Ваша подписка отсутствует или истекла. "
    "Чтобы получить доступ к каналу, оформите подписку в боте."
)


def expiry_reminder(days: int, end_date: str) -> str:
    if days == 1:
        return f"⏰ Ваша подписка заканчивается завтра ({end_date}). Продлите её, чтобы не потерять доступ."
    return f"⏰ Через {days} дня заканчивается ваша подписка ({end_date}). Продлите её заранее."


def plan_button(plan: Plan) -> str:
    return f"{plan.title} — {plan.amount_minor // 100}₴"


SUBSCRIPTION_REVOKED = "Ваша подписка была отозвана. Доступ к каналу закрыт."


def access_gifted(days: int, invite_link: str | None) -> str:
    if invite_link:
        return f"🎁 Вам предоставлен доступ к каналу на {days} дн.!\n\nВаша ссылка для входа: {invite_link}"
    return f"🎁 Вам предоставлен доступ к каналу на {days} дн.! Перейдите в бота, чтобы получить ссылку."
