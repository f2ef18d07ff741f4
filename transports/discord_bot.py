import logging
from typing import List, Optional

import discord
from discord.ext import commands

from core.agent import AgentHandle
from core.session import GroupInfo, InboundMessage

log = logging.getLogger(__name__)


class DiscordTransport(commands.Bot):
    """Discord side of the detector: every guild text channel counts as a group."""

    def __init__(self, handle: AgentHandle, *, guild_id: Optional[int] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        super().__init__(command_prefix=commands.when_mentioned, intents=intents)
        self.handle = handle
        self.guild_id = guild_id
        handle.attach(self)

    async def on_ready(self):
        log.info("Discord bot ready as %s", self.user)

    async def on_message(self, message: discord.Message):
        if not message or not message.content:
            return
        inbound = InboundMessage(
            chat_id=str(message.channel.id),
            sender_id=str(message.author.id),
            text=message.content,
            sequence_id=str(message.id),
            timestamp=message.created_at.timestamp(),
            author_is_self=bool(self.user and message.author.id == self.user.id),
        )
        try:
            await self.handle.dispatch([inbound])
        except Exception as exc:
            log.exception("Agent error: %s", exc)

    async def send_text(self, chat_id: str, text: str) -> None:
        channel = self.get_channel(int(chat_id))
        if channel is None:
            channel = await self.fetch_channel(int(chat_id))
        await channel.send(text)

    def _guilds(self) -> List[discord.Guild]:
        if self.guild_id:
            guild = self.get_guild(self.guild_id)
            return [guild] if guild else []
        return list(self.guilds)

    async def list_groups(self) -> List[GroupInfo]:
        groups: List[GroupInfo] = []
        for guild in self._guilds():
            for channel in guild.text_channels:
                groups.append(
                    GroupInfo(
                        id=str(channel.id),
                        name=f"{guild.name} #{channel.name}",
                        member_count=guild.member_count or 0,
                    )
                )
        return groups


async def run_discord_bot(handle: AgentHandle, token: str, guild_id: Optional[int] = None):
    bot = DiscordTransport(handle, guild_id=guild_id)
    try:
        await bot.start(token)
    finally:
        await bot.close()
