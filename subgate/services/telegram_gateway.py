# внешние коллабораторы ядра: участники канала и отправка сообщений

from __future__ import annotations

import logging
from typing import Any, Optional

from aiogram import Bot
from aiogram.exceptions import TelegramAPIError

from subgate.bot.keyboards import plans_keyboard

logger = logging.getLogger("subgate.telegram")

# ошибки, при которых считаем, что пользователя в канале и так нет
_NOT_PARTICIPANT_MARKERS = (
    "USER_NOT_PARTICIPANT",
    "USER IS NOT A MEMBER",
    "USER_NOT_FOUND",
    "PARTICIPANT_ID_INVALID",
    "MEMBER NOT FOUND",
)

_NO_RIGHTS_MARKERS = (
    "CHAT_ADMIN_REQUIRED",
    "NOT ENOUGH RIGHTS",
    "BOT IS NOT A MEMBER",
    "NEED ADMIN RIGHTS",
)


class TelegramGroupMembership:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def get_membership_status(self, chat_id: str, user_id: int) -> str:
        member = await self.bot.get_chat_member(chat_id=chat_id, user_id=user_id)
        status = member.status
        return str(getattr(status, "value", status))

    async def remove_member(self, chat_id: str, user_id: int) -> None:
        """
        Бан + разбан = "кик" с возможностью вернуться позже.
        Ошибку бана пробрасываем (кроме "уже не участник"), иначе кажется,
        что удалили, хотя Telegram вернул 400/403.
        """
        try:
            await self.bot.ban_chat_member(chat_id=chat_id, user_id=user_id)
        except TelegramAPIError as e:
            desc = str(e).upper()
            if any(m in desc for m in _NOT_PARTICIPANT_MARKERS):
                logger.info("kick: user_id=%s is not a participant of %s", user_id, chat_id)
                return
            if any(m in desc for m in _NO_RIGHTS_MARKERS):
                logger.error(
                    "kick: bot has no rights to ban users in %s, make it an admin with 'Ban users'",
                    chat_id,
                )
            logger.error("kick: ban_chat_member failed chat_id=%s user_id=%s: %s", chat_id, user_id, e)
            raise

        try:
            await self.bot.unban_chat_member(chat_id=chat_id, user_id=user_id, only_if_banned=True)
        except TelegramAPIError as e:
            # не фатально: пользователь уже удалён
            logger.warning("kick: unban_chat_member failed chat_id=%s user_id=%s: %s", chat_id, user_id, e)

    async def create_single_use_invite(self, chat_id: str, user_id: int, expire_at: int) -> Optional[str]:
        try:
            invite = await self.bot.create_chat_invite_link(
                chat_id=chat_id,
                name=f"access-{user_id}-{expire_at}",
                expire_date=expire_at,
                member_limit=1,
                creates_join_request=False,
            )
            return invite.invite_link
        except TelegramAPIError as e:
            logger.error("invite: personal link failed user_id=%s: %s", user_id, e)

        # запасной вариант: общая ссылка канала
        try:
            return await self.bot.export_chat_invite_link(chat_id=chat_id)
        except TelegramAPIError as e:
            logger.error("invite: export_chat_invite_link failed: %s", e)
            return None


class TelegramNotifier:
    def __init__(self, bot: Bot):
        self.bot = bot

    async def notify(self, user_id: int, text: str, **options: Any) -> None:
        # plans_keyboard=True: приложить кнопки тарифов
        if options.pop("plans_keyboard", False):
            options.setdefault("reply_markup", plans_keyboard())
        await self.bot.send_message(chat_id=user_id, text=text, **options)
