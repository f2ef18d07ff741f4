import asyncio
import logging
from typing import Dict, List

from telegram import Update
from telegram.constants import ChatType
from telegram.ext import (
    Application,
    ChatMemberHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from core.agent import AgentHandle
from core.session import GroupInfo, InboundMessage

log = logging.getLogger(__name__)

GROUP_TYPES = {ChatType.GROUP, ChatType.SUPERGROUP}


class TelegramTransport:
    """Feeds Telegram text messages to the agent and sends its replies.

    The Bot API cannot enumerate a bot's chats, so groups are remembered as
    they show up in updates.
    """

    def __init__(self, handle: AgentHandle, token: str):
        self.handle = handle
        self.application = Application.builder().token(token).build()
        self._groups: Dict[str, str] = {}
        self._register_handlers()
        self._stop_event = asyncio.Event()
        handle.attach(self)

    def _register_handlers(self):
        self.application.add_handler(
            ChatMemberHandler(self.track_membership, ChatMemberHandler.MY_CHAT_MEMBER)
        )
        self.application.add_handler(MessageHandler(filters.TEXT, self.handle_message))

    def _remember_group(self, chat) -> None:
        if chat and chat.type in GROUP_TYPES:
            self._groups[str(chat.id)] = chat.title or str(chat.id)

    async def track_membership(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        change = update.my_chat_member
        if not change:
            return
        chat = change.chat
        if change.new_chat_member.status in {"left", "kicked"}:
            self._groups.pop(str(chat.id), None)
            log.info("left group %s", chat.id)
            return
        self._remember_group(chat)

    async def handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        message = update.effective_message
        user = update.effective_user
        chat = update.effective_chat
        if not message or not message.text or not user or not chat:
            return
        self._remember_group(chat)
        inbound = InboundMessage(
            chat_id=str(chat.id),
            sender_id=str(user.id),
            text=message.text,
            sequence_id=str(message.message_id),
            timestamp=message.date.timestamp(),
            author_is_self=user.id == context.bot.id,
        )
        try:
            await self.handle.dispatch([inbound])
        except Exception as exc:
            log.exception("Agent error: %s", exc)

    async def send_text(self, chat_id: str, text: str) -> None:
        await self.application.bot.send_message(chat_id=int(chat_id), text=text)

    async def list_groups(self) -> List[GroupInfo]:
        groups: List[GroupInfo] = []
        for chat_id, title in list(self._groups.items()):
            try:
                members = await self.application.bot.get_chat_member_count(int(chat_id))
            except Exception as exc:
                log.warning("Failed to count members of %s: %s", chat_id, exc)
                members = 0
            groups.append(GroupInfo(id=chat_id, name=title, member_count=members))
        return groups

    async def start(self):
        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling(
            allowed_updates=Update.ALL_TYPES, drop_pending_updates=True
        )
        try:
            await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()

    async def stop(self):
        self._stop_event.set()
