# мастер рассылки: /broadcast -> получатели -> текст -> предпросмотр -> отправка

from aiogram import Router, F
from aiogram.types import Message, CallbackQuery
from aiogram.filters import Command
from aiogram.fsm.context import FSMContext

from subgate.bot.admin_handlers import is_admin
from subgate.bot.keyboards import broadcast_start_keyboard, broadcast_preview_keyboard
from subgate.bot.states import BroadcastFlow
from subgate.services.broadcast import (
    DATE_PLACEHOLDER,
    RECIPIENTS_ALL,
    RECIPIENTS_SELECTED,
    BroadcastSession,
)

router = Router()

SESSION_EXPIRED = "Сессия истекла. Начните заново: /broadcast"
ASK_MESSAGE = (
    "Теперь отправьте текст сообщения.\n\n"
    "<i>Можно использовать HTML-форматирование:</i>\n"
    "• <code>&lt;b&gt;жирный&lt;/b&gt;</code>\n"
    "• <code>&lt;i&gt;курсив&lt;/i&gt;</code>\n"
    "• <code>{date}</code>: дата окончания подписки\n\n"
    "Или отправьте /broadcast_cancel для отмены."
)


def preview_text(session: BroadcastSession) -> str:
    body = session.message.replace(DATE_PLACEHOLDER, "<i>[дата подписки]</i>")
    return (
        "📋 <b>ПРЕДПРОСМОТР</b>\n"
        f"Получателей: {len(session.recipients)}\n\n"
        "────────────────\n\n"
        f"{body}\n\n"
        "────────────────\n\n"
        "⚠️ Проверьте сообщение и нажмите \"Отправить\""
    )


async def load_session(state: FSMContext):
    return BroadcastSession.from_data(await state.get_data())


@router.message(Command("broadcast"))
async def broadcast_cmd(message: Message, settings, state: FSMContext, broadcaster, clock):
    if not is_admin(message.from_user.id, settings):
        return

    subscribers = await broadcaster.active_subscriber_ids(clock())
    if not subscribers:
        await message.answer("📭 Нет активных подписок для рассылки.")
        return

    await state.clear()
    await state.set_state(BroadcastFlow.choosing_recipients)
    await state.update_data(BroadcastSession().to_data())
    await message.answer(
        "📤 <b>Рассылка сообщений</b>\n\nВыберите, кому отправить сообщение:",
        parse_mode="HTML",
        reply_markup=broadcast_start_keyboard(len(subscribers)),
    )


@router.message(Command("broadcast_cancel"))
async def broadcast_cancel_cmd(message: Message, settings, state: FSMContext):
    if not is_admin(message.from_user.id, settings):
        return
    await state.clear()
    await message.answer("❌ Рассылка отменена.")


@router.callback_query(F.data == "bc:all")
async def bc_all(call: CallbackQuery, settings, state: FSMContext, broadcaster, clock):
    if not is_admin(call.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None:
        await call.answer(SESSION_EXPIRED, show_alert=True)
        return

    session.recipients_type = RECIPIENTS_ALL
    session.recipients = await broadcaster.active_subscriber_ids(clock())
    await state.update_data(session.to_data())
    await state.set_state(BroadcastFlow.waiting_message)
    await call.answer()
    await call.message.edit_text(
        f"📤 <b>Рассылка для {len(session.recipients)} подписчиков</b>\n\n" + ASK_MESSAGE,
        parse_mode="HTML",
    )


@router.callback_query(F.data == "bc:select")
async def bc_select(call: CallbackQuery, settings, state: FSMContext):
    if not is_admin(call.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None:
        await call.answer(SESSION_EXPIRED, show_alert=True)
        return

    session.recipients_type = RECIPIENTS_SELECTED
    await state.update_data(session.to_data())
    await state.set_state(BroadcastFlow.waiting_recipients)
    await call.answer()
    await call.message.edit_text(
        "👥 <b>Выбор получателей</b>\n\n"
        "Отправьте ID или @username через запятую:\n\n"
        "<code>123456789, @username, 987654321</code>\n\n"
        "Или отправьте /broadcast_cancel для отмены.",
        parse_mode="HTML",
    )


@router.message(BroadcastFlow.waiting_recipients, F.text)
async def bc_recipients_input(message: Message, settings, state: FSMContext, broadcaster):
    if not is_admin(message.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None:
        await state.clear()
        await message.answer(SESSION_EXPIRED)
        return

    found, not_found = await broadcaster.resolve_recipients(message.text)
    if not found:
        await message.answer(
            "❌ Не найдено ни одного пользователя.\n\n"
            "Попробуйте снова или /broadcast_cancel для отмены."
        )
        return

    session.recipients = found
    await state.update_data(session.to_data())
    await state.set_state(BroadcastFlow.waiting_message)

    text = f"✅ Найдено получателей: {len(found)}\n\n"
    if not_found:
        text += f"⚠️ Не найдены: {', '.join(not_found)}\n\n"
    text += "Теперь отправьте текст сообщения.\n\n<i>Используйте {date} для подстановки даты окончания подписки.</i>"
    await message.answer(text, parse_mode="HTML")


@router.message(BroadcastFlow.waiting_message, F.text)
async def bc_message_input(message: Message, settings, state: FSMContext):
    if not is_admin(message.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None:
        await state.clear()
        await message.answer(SESSION_EXPIRED)
        return

    session.message = message.text
    await state.update_data(session.to_data())
    await state.set_state(BroadcastFlow.preview)
    await message.answer(preview_text(session), parse_mode="HTML", reply_markup=broadcast_preview_keyboard())


@router.callback_query(F.data == "bc:confirm")
async def bc_confirm(call: CallbackQuery, settings, state: FSMContext, broadcaster):
    if not is_admin(call.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None or not session.message or not session.recipients:
        await call.answer(SESSION_EXPIRED, show_alert=True)
        return

    # сессию закрываем до отправки: повторное нажатие не запустит рассылку второй раз
    await state.clear()
    await call.answer()
    await call.message.edit_text("⏳ Отправка...")
    report = await broadcaster.send(session)
    await call.message.edit_text(report.summary())


@router.callback_query(F.data == "bc:edit")
async def bc_edit(call: CallbackQuery, settings, state: FSMContext):
    if not is_admin(call.from_user.id, settings):
        return
    session = await load_session(state)
    if session is None:
        await call.answer(SESSION_EXPIRED, show_alert=True)
        return

    session.message = ""
    await state.update_data(session.to_data())
    await state.set_state(BroadcastFlow.waiting_message)
    await call.answer()
    await call.message.edit_text("✏️ Отправьте новый текст сообщения:")


@router.callback_query(F.data == "bc:cancel")
async def bc_cancel(call: CallbackQuery, settings, state: FSMContext):
    if not is_admin(call.from_user.id, settings):
        return
    await state.clear()
    await call.answer()
    await call.message.edit_text("❌ Рассылка отменена.")
