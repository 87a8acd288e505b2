import html
import logging

from aiogram import Router, F
from aiogram.types import Message, CallbackQuery
from aiogram.filters import Command, CommandObject
from aiogram.fsm.context import FSMContext
from aiogram.exceptions import TelegramAPIError

from subgate.bot.keyboards import admins_keyboard, admins_back_keyboard, users_picker_keyboard
from subgate.bot.states import AdminFlow
from subgate.db.models import PLANS
from subgate.services import texts
from subgate.services.dispatcher import JobTriggered
from subgate.services.reconciliation import EXPIRED_SWEEP, PAYMENTS_POLL, UNPAID_AUDIT
from subgate.utils.time import format_date_ru, format_datetime_ru

logger = logging.getLogger("admin")

router = Router()

GRANT_DAYS_DEFAULT = 30

def is_admin(user_id: int, settings) -> bool:
    return settings.is_admin(user_id)

async def fmt_user(user_id: int, repo, settings, now: int) -> str:
    info = await repo.get_user_info(user_id)
    sub = await repo.get_active_subscription(user_id, settings.channel_id)
    paid = await repo.has_successful_payment(user_id)
    last_join = await repo.get_last_channel_join(user_id, settings.channel_id)

    uname = f"@{info.username}" if info and info.username else "-"
    full = _full_name(info)
    if sub is None:
        sub_line = "нет ❌"
    else:
        state = "✅" if sub.end_at > now else "⌛️ истекла"
        sub_line = f"{sub.plan_code} до {format_date_ru(sub.end_at, settings.tz)} {state}"

    return (
        f"user_id={user_id}\n"
        f"username={uname}\n"
        f"name={full}\n"
        f"subscription={sub_line}\n"
        f"paid={'да' if paid else 'нет'}\n"
        f"last_join={format_date_ru(last_join, settings.tz) if last_join else '-'}\n"
    )

def parse_user_id(text) -> int | None:
    if not (text and text.strip().lstrip("-").isdigit()):
        return None
    return int(text.strip())

async def do_grant(user_id: int, days: int, ledger, payments, access, settings, now: int) -> str:
    sub = await ledger.grant_days(user_id, settings.channel_id, days, now)
    await payments.record_manual_grant(user_id, now)
    link = await access.invite_link(user_id, now)
    lines = [
        f"✅ Доступ выдан: user_id={user_id}, {days} дн.",
        f"Действует до {format_date_ru(sub.end_at, settings.tz)}",
    ]
    try:
        await access.notifier.notify(user_id, texts.access_gifted(days, link))
    except Exception as e:
        # чаще всего пользователь ещё не писал боту
        logger.warning("grant: user_id=%s not notified: %r", user_id, e)
        lines.append("⚠️ Не удалось уведомить пользователя (возможно, он не начинал диалог с ботом).")
        if link:
            lines.append(f"Ссылка: {link}")
    else:
        lines.append("📨 Пользователь уведомлён.")
    return "\n".join(lines)

async def do_revoke(user_id: int, ledger, access, settings) -> str:
    revoked = await ledger.revoke(user_id, settings.channel_id)
    if not revoked:
        return f"⚠️ У пользователя {user_id} нет активной подписки."
    try:
        await access.membership.remove_member(settings.channel_id, user_id)
    except TelegramAPIError as e:
        text = f"♻️ Подписка отозвана, но удалить из канала не удалось: {e}"
    else:
        text = f"♻️ Подписка пользователя {user_id} отозвана, доступ к каналу закрыт."
    try:
        await access.notifier.notify(user_id, texts.SUBSCRIPTION_REVOKED)
    except Exception as e:
        logger.warning("revoke: user_id=%s not notified: %r", user_id, e)
    return text

async def expired_text(reconciliation, settings, now: int) -> str:
    expired = await reconciliation.expired_overview(now)
    if not expired:
        return "Истёкших активных подписок нет."
    lines = [
        f"{s.telegram_user_id} | {s.plan_code} | до {format_date_ru(s.end_at, settings.tz)}"
        for s in expired[:100]
    ]
    text = f"⌛️ Истёкшие подписки ({len(expired)}):\n" + "\n".join(lines)
    if len(text) > 3800:
        text = text[:3800] + "\n... (обрезано)"
    return text

def _full_name(info) -> str:
    return " ".join(p for p in ((info.first_name, info.last_name) if info else ()) if p) or "-"

def _html_name(info) -> str:
    return html.escape(_full_name(info))

def _chunks(items: list, size: int = 5):
    for i in range(0, len(items), size):
        yield i, items[i:i + size]

async def subscriber_cards(repo, settings, now: int) -> list[str]:
    """Карточки активных подписчиков для /listsubs."""
    cards = []
    subs = await repo.list_active_subscriptions(settings.channel_id, now)
    for idx, sub in enumerate(subs, start=1):
        info = await repo.get_user_info(sub.telegram_user_id)
        paid = await repo.get_last_successful_payment(sub.telegram_user_id)
        plan = PLANS.get(sub.plan_code)
        lines = [f"<b>{idx}.</b>", f"👤 {_html_name(info)}"]
        if info and info.username:
            lines.append(f"📱 @{html.escape(info.username)}")
        lines.append(f"🆔 <code>{sub.telegram_user_id}</code>")
        lines.append(f"📦 {plan.title if plan else sub.plan_code}")
        if paid and paid.paid_at:
            lines.append(f"💳 Оплата: {format_datetime_ru(paid.paid_at, settings.tz)}")
        if paid and paid.amount:
            lines.append(f"💰 {paid.amount // 100}₴")
        lines.append(f"⏰ До: <b>{format_datetime_ru(sub.end_at, settings.tz)}</b>")
        cards.append("\n".join(lines))
    return cards

async def payment_cards(repo, settings, limit: int) -> list[str]:
    """Карточки последних платежей со статусом валидации для /payments."""
    cards = []
    for idx, p in enumerate(await repo.list_recent_payments(limit), start=1):
        info = await repo.get_user_info(p.telegram_user_id)
        v = await repo.get_validation(p.invoice_id)
        paid_at = format_datetime_ru(p.paid_at, settings.tz) if p.paid_at else "-"
        v_status = v.status.value if v else "-"
        v_at = format_datetime_ru(v.confirmed_at, settings.tz) if v and v.confirmed_at else "-"
        lines = [f"<b>{idx}.</b>", f"👤 {_html_name(info)}"]
        if info and info.username:
            lines.append(f"📱 @{html.escape(info.username)}")
        lines += [
            f"🆔 <code>{p.telegram_user_id}</code>",
            f"📦 {p.plan_code}",
            f"💰 {p.amount // 100}₴",
            f"🧾 Статус: {p.status.value}",
            f"🕒 Создан: {format_datetime_ru(p.created_at, settings.tz)}",
            f"✅ Оплачен: {paid_at}",
            f"🔎 Валидация: {v_status} ({v_at})",
        ]
        cards.append("\n".join(lines))
    return cards

def parse_limit(text, default: int = 10, maximum: int = 50) -> int:
    arg = (text or "").split()
    if not arg or not arg[0].isdigit():
        return default
    return min(max(int(arg[0]), 1), maximum)

async def send_cards(message: Message, title: str, cards: list[str]) -> None:
    await message.answer(title, parse_mode="HTML")
    for i, chunk in _chunks(cards):
        await message.answer("\n\n────────────────\n\n".join(chunk), parse_mode="HTML")
        if i + len(chunk) < len(cards):
            await asyncio.sleep(0.1)

ADMIN_HELP = "\n".join([
    "🔧 <b>АДМИН-КОМАНДЫ</b>",
    "",
    "━━━━ <b>📋 Подписки</b> ━━━━",
    "",
    "/admins: <i>админ-панель</i>",
    "/listsubs: <i>список активных подписчиков</i>",
    "/checkexpired: <i>истёкшие подписки</i>",
    "/processexpired: <i>удалить истёкших из канала</i>",
    "/grantsub ID [ДНИ]: <i>выдать подписку</i>",
    "/revokesub ID: <i>забрать подписку</i>",
    "/payments [N]: <i>последние платежи и валидация</i>",
    "/checkpayments: <i>принудительная проверка оплат</i>",
    "/auditunpaid: <i>удалить неоплативших из канала</i>",
    "",
    "━━━━ <b>📤 Рассылка</b> ━━━━",
    "",
    "/broadcast: <i>рассылка с предпросмотром</i>",
    "/broadcast_cancel: <i>отменить рассылку</i>",
    "",
    "━━━━ <b>⚙️ Прочее</b> ━━━━",
    "",
    "/invitelink: <i>одноразовая ссылка на канал</i>",
    "/whoami: <i>узнать ID</i>",
])

# --- команды ---

@router.message(Command("admins"))
async def admins_cmd(message: Message, settings, state: FSMContext):
    if not is_admin(message.from_user.id, settings):
        return
    await state.clear()
    await message.answer("🛠 Админ-панель:", reply_markup=admins_keyboard())

@router.message(Command("adminhelp"))
async def adminhelp_cmd(message: Message, settings):
    if not is_admin(message.from_user.id, settings):
        return
    await message.answer(ADMIN_HELP, parse_mode="HTML")

@router.message(Command("listsubs"))
async def listsubs_cmd(message: Message, repo, settings, clock):
    if not is_admin(message.from_user.id, settings):
        return
    cards = await subscriber_cards(repo, settings, clock())
    if not cards:
        await message.answer("📭 Нет активных подписок.")
        return
    await send_cards(message, f"📋 <b>Активные подписки: {len(cards)}</b>", cards)

@router.message(Command("payments"))
async def payments_cmd(message: Message, command: CommandObject, repo, settings):
    if not is_admin(message.from_user.id, settings):
        return
    cards = await payment_cards(repo, settings, parse_limit(command.args))
    if not cards:
        await message.answer("📭 Нет платежей.")
        return
    await send_cards(message, f"📈 <b>Последние платежи: {len(cards)}</b>", cards)

@router.message(Command("grantsub"))
async def grantsub_cmd(message: Message, command: CommandObject, settings, ledger, payments, access, clock):
    if not is_admin(message.from_user.id, settings):
        return

    # /grantsub <user_id> [days]
    args = (command.args or "").split()
    user_id = parse_user_id(args[0]) if args else None
    days = int(args[1]) if len(args) > 1 and args[1].isdigit() else GRANT_DAYS_DEFAULT
    if user_id is None or days <= 0:
        await message.answer("Использование: /grantsub <user_id> [дней]")
        return

    await message.answer(await do_grant(user_id, days, ledger, payments, access, settings, clock()))

@router.message(Command("revokesub"))
async def revokesub_cmd(message: Message, command: CommandObject, settings, ledger, access):
    if not is_admin(message.from_user.id, settings):
        return

    user_id = parse_user_id(command.args)
    if user_id is None:
        await message.answer("Использование: /revokesub <user_id>")
        return

    await message.answer(await do_revoke(user_id, ledger, access, settings))

@router.message(Command("checkexpired"))
async def checkexpired_cmd(message: Message, settings, reconciliation, clock):
    if not is_admin(message.from_user.id, settings):
        return
    await message.answer(await expired_text(reconciliation, settings, clock()))

async def _run_job_cmd(message: Message, dispatcher, job: str):
    await message.answer("⏳ Запускаю…")
    report = await dispatcher.submit(JobTriggered(job))
    await message.answer(report.summary())

@router.message(Command("processexpired"))
async def processexpired_cmd(message: Message, settings, dispatcher):
    if not is_admin(message.from_user.id, settings):
        return
    await _run_job_cmd(message, dispatcher, EXPIRED_SWEEP)

@router.message(Command("checkpayments"))
async def checkpayments_cmd(message: Message, settings, dispatcher):
    if not is_admin(message.from_user.id, settings):
        return
    await _run_job_cmd(message, dispatcher, PAYMENTS_POLL)

@router.message(Command("auditunpaid"))
async def auditunpaid_cmd(message: Message, settings, dispatcher):
    if not is_admin(message.from_user.id, settings):
        return
    await _run_job_cmd(message, dispatcher, UNPAID_AUDIT)

@router.message(Command("invitelink"))
async def invitelink_cmd(message: Message, settings, access, clock):
    if not is_admin(message.from_user.id, settings):
        return
    link = await access.invite_link(message.from_user.id, clock())
    await message.answer(f"Ссылка: {link}" if link else "Не удалось создать ссылку. Проверьте права бота.")

# --- кнопки панели ---

@router.callback_query(F.data == "adm:back")
async def adm_back(call: CallbackQuery, settings, state: FSMContext):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return
    await state.clear()
    await call.message.edit_text("🛠 Админ-панель:", reply_markup=admins_keyboard())

@router.callback_query(F.data == "adm:check_expired")
async def adm_check_expired(call: CallbackQuery, settings, reconciliation, clock):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return
    await call.answer()
    await call.message.edit_text(
        await expired_text(reconciliation, settings, clock()), reply_markup=admins_back_keyboard()
    )

@router.callback_query(F.data.startswith("adm:job:"))
async def adm_job(call: CallbackQuery, settings, dispatcher):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return

    # adm:job:<job_name>
    job = call.data.split(":", 2)[2]
    if job not in (EXPIRED_SWEEP, PAYMENTS_POLL, UNPAID_AUDIT):
        await call.answer("Неизвестное действие", show_alert=True)
        return

    await call.answer("⏳ Запускаю…")
    report = await dispatcher.submit(JobTriggered(job))
    await call.message.edit_text(report.summary(), reply_markup=admins_back_keyboard())

@router.callback_query(F.data.startswith("adm:users:"))
async def adm_users_page(call: CallbackQuery, repo, settings):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return

    # adm:users:<action>:<page>
    _, _, action, page_s = call.data.split(":")
    page = int(page_s)

    users = await repo.list_users()
    await call.message.edit_text(
        f"Выбери пользователя для действия: {action}" if users else "Пользователей пока нет.",
        reply_markup=users_picker_keyboard(users, action=action, page=page),
    )

@router.callback_query(F.data.startswith("adm:pick:"))
async def adm_pick_user(call: CallbackQuery, repo, settings, ledger, payments, access, clock):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return

    # adm:pick:<action>:<user_id>
    _, _, action, user_id_s = call.data.split(":")
    user_id = int(user_id_s)
    now = clock()

    if action == "check":
        text = "🔎 Данные пользователя:\n\n" + await fmt_user(user_id, repo, settings, now)
    elif action == "grant":
        text = await do_grant(user_id, GRANT_DAYS_DEFAULT, ledger, payments, access, settings, now)
    elif action == "revoke":
        text = await do_revoke(user_id, ledger, access, settings)
    else:
        await call.answer("Неизвестное действие", show_alert=True)
        return

    await call.message.edit_text(text, reply_markup=admins_back_keyboard())

@router.callback_query(F.data.startswith("adm:manual:"))
async def adm_manual(call: CallbackQuery, settings, state: FSMContext):
    if not is_admin(call.from_user.id, settings):
        await call.answer("Нет доступа", show_alert=True)
        return

    # adm:manual:<action>
    _, _, action = call.data.split(":")
    if action == "check":
        await state.set_state(AdminFlow.waiting_user_id_for_check)
    elif action == "grant":
        await state.set_state(AdminFlow.waiting_user_id_for_grant)
    elif action == "revoke":
        await state.set_state(AdminFlow.waiting_user_id_for_revoke)
    else:
        await call.answer("Неизвестное действие", show_alert=True)
        return

    await call.message.edit_text("Введи user_id вручную:", reply_markup=admins_back_keyboard())

@router.message(AdminFlow.waiting_user_id_for_check)
async def adm_check_input(message: Message, repo, settings, state: FSMContext, clock):
    if not is_admin(message.from_user.id, settings):
        return
    user_id = parse_user_id(message.text)
    if user_id is None:
        await message.answer("Нужен user_id (число). Попробуй ещё раз:")
        return
    await state.clear()
    text = await fmt_user(user_id, repo, settings, clock())
    await message.answer("🔎 Данные пользователя:\n\n" + text, reply_markup=admins_keyboard())

@router.message(AdminFlow.waiting_user_id_for_grant)
async def adm_grant_input(message: Message, settings, state: FSMContext, ledger, payments, access, clock):
    if not is_admin(message.from_user.id, settings):
        return
    user_id = parse_user_id(message.text)
    if user_id is None:
        await message.answer("Нужен user_id (число). Попробуй ещё раз:")
        return
    await state.clear()
    text = await do_grant(user_id, GRANT_DAYS_DEFAULT, ledger, payments, access, settings, clock())
    await message.answer(text, reply_markup=admins_keyboard())

@router.message(AdminFlow.waiting_user_id_for_revoke)
async def adm_revoke_input(message: Message, settings, state: FSMContext, ledger, access):
    if not is_admin(message.from_user.id, settings):
        return
    user_id = parse_user_id(message.text)
    if user_id is None:
        await message.answer("Нужен user_id (число). Попробуй ещё раз:")
        return
    await state.clear()
    await message.answer(await do_revoke(user_id, ledger, access, settings), reply_markup=admins_keyboard())
