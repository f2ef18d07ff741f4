import asyncio
import logging
import os
import signal
from pathlib import Path

from dotenv import load_dotenv

from core.agent import AgentHandle, make_factory
from core.config import DEFAULT_CONFIG_PATH, ConfigWatcher
from core.mappings import MappingStore
from core.resolver import NameResolver
from transports.discord_bot import run_discord_bot
from transports.telegram_bot import TelegramTransport

log = logging.getLogger("detector")

STATUS_INTERVAL = 300


async def report_status(handles, mappings: MappingStore, stop_event: asyncio.Event):
    while not stop_event.is_set():
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=STATUS_INTERVAL)
        except asyncio.TimeoutError:
            pass
        for name, handle in handles.items():
            status = handle.status()
            log.info(
                "%s status: %s | Characters learned: %d",
                name,
                status.get("status"),
                len(mappings.learned),
            )


async def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s :: %(message)s")

    telegram_token = os.getenv("TELEGRAM_TOKEN")
    discord_token = os.getenv("DISCORD_TOKEN")
    guild_id_raw = os.getenv("DISCORD_GUILD_ID")
    guild_id = int(guild_id_raw) if guild_id_raw and guild_id_raw.isdigit() else None
    owner_ids = [x.strip() for x in os.getenv("OWNER_IDS", "").split(",") if x.strip()]
    mappings_path = Path(os.getenv("MAPPINGS_PATH", "data/character-mappings.json"))
    config_path = Path(os.getenv("DETECTOR_CONFIG", str(DEFAULT_CONFIG_PATH)))

    if not telegram_token and not discord_token:
        raise SystemExit("Missing TELEGRAM_TOKEN or DISCORD_TOKEN.")
    if not owner_ids:
        log.warning("OWNER_IDS is empty; nobody can activate the bot")

    startup = ConfigWatcher(config_path, owner_ids=owner_ids).current
    mappings = MappingStore(mappings_path, seed=startup.static_mappings)
    resolver = NameResolver(
        mappings,
        min_interval=startup.resolver.min_interval,
        max_attempts=startup.resolver.max_attempts,
        backoff=startup.resolver.backoff,
        timeout=startup.resolver.timeout,
    )
    factory = make_factory(mappings, resolver)

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    handles = {}
    tasks = []
    telegram_transport = None
    if telegram_token:
        handles["telegram"] = AgentHandle(factory, ConfigWatcher(config_path, owner_ids=owner_ids))
        telegram_transport = TelegramTransport(handles["telegram"], telegram_token)
        tasks.append(asyncio.create_task(telegram_transport.start()))
    discord_task = None
    if discord_token:
        handles["discord"] = AgentHandle(factory, ConfigWatcher(config_path, owner_ids=owner_ids))
        discord_task = asyncio.create_task(
            run_discord_bot(handles["discord"], discord_token, guild_id)
        )

    log.info("Anime character detector started (%s)", ", ".join(handles))
    log.info("Commands: .a activate, .x deactivate, .status status")
    status_task = asyncio.create_task(report_status(handles, mappings, stop_event))

    await stop_event.wait()

    if telegram_transport is not None:
        await telegram_transport.stop()

    if discord_task is not None:
        discord_task.cancel()
        try:
            await discord_task
        except asyncio.CancelledError:
            pass

    await asyncio.gather(*tasks, status_task)
    for handle in handles.values():
        await handle.drain()
    await mappings.wait_pending()


if __name__ == "__main__":
    asyncio.run(main())
