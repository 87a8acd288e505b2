# inline клавиатуры

from typing import Optional, Sequence

from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton
from aiogram.utils.keyboard import InlineKeyboardBuilder

from subgate.db.models import PLANS
from subgate.services.texts import plan_button


def main_menu_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💳 Оформить подписку", callback_data="menu:subscribe")],
        [InlineKeyboardButton(text="🔑 Проверить доступ", callback_data="menu:check")],
    ])


def plans_keyboard() -> InlineKeyboardMarkup:
    kb = InlineKeyboardBuilder()
    for plan in PLANS.values():
        if plan.amount_minor <= 0:
            continue
        kb.row(InlineKeyboardButton(text=plan_button(plan), callback_data=f"buy:{plan.code}"))
    return kb.as_markup()


def pay_keyboard(pay_url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="💳 Перейти к оплате", url=pay_url)],
        [InlineKeyboardButton(text="✅ Я оплатил", callback_data="menu:check")],
    ])


def channel_keyboard(invite_link: Optional[str]) -> Optional[InlineKeyboardMarkup]:
    if not invite_link:
        return None
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="➡️ Перейти в канал", url=invite_link)],
    ])


# --- ADMIN ---
def admins_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="👥 Пользователи", callback_data="adm:users:check:0")],
        [InlineKeyboardButton(text="➕ Выдать доступ +30 дней", callback_data="adm:users:grant:0")],
        [InlineKeyboardButton(text="♻️ Отозвать подписку", callback_data="adm:users:revoke:0")],
        [InlineKeyboardButton(text="⌛️ Истёкшие подписки", callback_data="adm:check_expired")],
        [InlineKeyboardButton(text="🧹 Обработать истёкшие", callback_data="adm:job:expired_sweep")],
        [InlineKeyboardButton(text="💰 Проверить платежи", callback_data="adm:job:payments_poll")],
        [InlineKeyboardButton(text="🚫 Удалить неоплативших", callback_data="adm:job:unpaid_audit")],
    ])


def admins_back_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="⬅️ Назад", callback_data="adm:back")],
    ])


def users_picker_keyboard(users: Sequence, action: str, page: int = 0, per_page: int = 10) -> InlineKeyboardMarkup:
    """
    users: list[UserInfo]
    action: 'check' | 'grant' | 'revoke'
    callback: "adm:pick:<action>:<user_id>"
    """
    start = page * per_page
    end = start + per_page
    chunk = users[start:end]

    kb = InlineKeyboardBuilder()

    for u in chunk:
        name = f"@{u.username}" if u.username else (u.first_name or "")
        label = f"{u.telegram_user_id} {name}".strip()
        kb.row(InlineKeyboardButton(text=label, callback_data=f"adm:pick:{action}:{u.telegram_user_id}"))

    nav_buttons = []
    if page > 0:
        nav_buttons.append(InlineKeyboardButton(text="⬅️", callback_data=f"adm:users:{action}:{page-1}"))
    if end < len(users):
        nav_buttons.append(InlineKeyboardButton(text="➡️", callback_data=f"adm:users:{action}:{page+1}"))
    if nav_buttons:
        kb.row(*nav_buttons)

    kb.row(InlineKeyboardButton(text="⌨️ Ввести user_id вручную", callback_data=f"adm:manual:{action}"))
    kb.row(InlineKeyboardButton(text="⬅️ Назад", callback_data="adm:back"))

    return kb.as_markup()


# --- BROADCAST ---
def broadcast_start_keyboard(subscribers: int) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text=f"📢 Всем подписчикам ({subscribers})", callback_data="bc:all")],
        [InlineKeyboardButton(text="👥 Выбрать конкретных", callback_data="bc:select")],
        [InlineKeyboardButton(text="❌ Отмена", callback_data="bc:cancel")],
    ])


def broadcast_preview_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="✅ Отправить", callback_data="bc:confirm")],
        [InlineKeyboardButton(text="✏️ Изменить текст", callback_data="bc:edit")],
        [InlineKeyboardButton(text="❌ Отмена", callback_data="bc:cancel")],
    ])
