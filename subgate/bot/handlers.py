# /start, меню, оплата, вход в канал

import logging

from aiogram import Router, F
from aiogram.types import Message, CallbackQuery, ChatMemberUpdated
from aiogram.filters import CommandStart, Command, ChatMemberUpdatedFilter, JOIN_TRANSITION
from aiogram.exceptions import TelegramBadRequest

from subgate.bot.keyboards import main_menu_keyboard, plans_keyboard, pay_keyboard, channel_keyboard
from subgate.services import texts
from subgate.services.access import AccessCheck, AccessOutcome
from subgate.services.dispatcher import AccessCheckRequested, MemberJoined
from subgate.services.exceptions import GatewayError, UnknownPlanError

logger = logging.getLogger("bot")

router = Router()

_OUTCOME_TEXTS = {
    AccessOutcome.GRANTED: texts.ACCESS_GRANTED,
    AccessOutcome.CONFIRMED: texts.ACCESS_CONFIRMED,
    AccessOutcome.AWAITING_JOIN: texts.ACCESS_AWAITING_JOIN,
    AccessOutcome.PAYMENT_FOUND: texts.ACCESS_PAYMENT_FOUND,
    AccessOutcome.DENIED: texts.ACCESS_DENIED,
}


def access_answer(result: AccessCheck):
    """Текст + клавиатура для ответа на "проверить доступ"."""
    if result.outcome is AccessOutcome.DENIED:
        return texts.ACCESS_DENIED, plans_keyboard()

    text = texts.ACCESS_ADMIN if result.is_admin else _OUTCOME_TEXTS[result.outcome]
    if result.outcome is AccessOutcome.CONFIRMED:
        return text, None
    if not result.invite_link:
        return f"{text}\n\n{texts.ACCESS_NO_LINK}", None
    return text, channel_keyboard(result.invite_link)


async def _edit_or_answer(call: CallbackQuery, text: str, reply_markup=None):
    # сообщение могло быть с фото или уже с тем же текстом
    try:
        await call.message.edit_text(text, reply_markup=reply_markup)
    except TelegramBadRequest:
        await call.message.answer(text, reply_markup=reply_markup)


@router.message(CommandStart())
async def cmd_start(message: Message, repo, clock):
    user = message.from_user
    await repo.save_user_info(
        user.id,
        clock(),
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    await message.answer(texts.WELCOME, reply_markup=main_menu_keyboard())


@router.message(Command("pay"))
async def cmd_pay(message: Message):
    await message.answer(texts.SUBSCRIBE_NUDGE, reply_markup=plans_keyboard())


@router.message(Command("whoami"))
async def cmd_whoami(message: Message):
    await message.answer(f"Ваш Telegram ID: {message.from_user.id}")


@router.callback_query(F.data == "menu:subscribe")
async def cb_subscribe(call: CallbackQuery):
    await call.answer()
    await _edit_or_answer(call, texts.CHOOSE_PLAN, reply_markup=plans_keyboard())


@router.callback_query(F.data.startswith("buy:"))
async def cb_buy(call: CallbackQuery, payments, clock):
    # buy:<plan_code>
    plan_code = call.data.split(":", 1)[1]
    user_id = call.from_user.id

    try:
        link = await payments.start_purchase(user_id, plan_code, clock())
    except UnknownPlanError:
        await call.answer("Такого тарифа нет", show_alert=True)
        return
    except GatewayError as e:
        logger.error("invoice create failed user_id=%s plan=%s: %s", user_id, plan_code, e)
        await call.answer()
        await call.message.answer(texts.INVOICE_FAILED)
        return

    await call.answer()
    await _edit_or_answer(call, texts.INVOICE_READY, reply_markup=pay_keyboard(link.pay_url))


@router.callback_query(F.data == "menu:check")
async def cb_check_access(call: CallbackQuery, dispatcher):
    await call.answer()
    try:
        result = await dispatcher.submit(AccessCheckRequested(call.from_user.id))
    except Exception as e:
        logger.exception("access check failed user_id=%s: %r", call.from_user.id, e)
        await call.message.answer(texts.ACCESS_CHECK_FAILED)
        return

    text, markup = access_answer(result)
    await call.message.answer(text, reply_markup=markup)


@router.chat_member(ChatMemberUpdatedFilter(member_status_changed=JOIN_TRANSITION))
async def on_member_joined(event: ChatMemberUpdated, repo, dispatcher, settings, clock):
    chat = event.chat
    channel = settings.channel_id
    if str(chat.id) != channel and not (chat.username and f"@{chat.username}" == channel):
        return

    user = event.new_chat_member.user
    if user.is_bot:
        return

    await repo.save_user_info(
        user.id,
        clock(),
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
    )
    removed = await dispatcher.submit(MemberJoined(user.id, channel))
    logger.info("member joined: user_id=%s removed=%s", user.id, removed)
