# bot.py
import asyncio
import logging
import os
import signal
import sys

import psutil
from dotenv import load_dotenv
from telegram.ext import Application, CallbackQueryHandler, CommandHandler, MessageHandler, filters

# Ensure environment variables are loaded BEFORE importing modules that read them
load_dotenv(override=True)

from buybot import config
from buybot.chain_source import ChainEventSource, SolanaRpcClient
from buybot.conversation import ConversationTracker
from buybot.dispatcher import Dispatcher
from buybot.errors import StartupFailure
from buybot.market_data import MarketDataClient
from buybot.menu_handlers import (
    add_group,
    back_to_main_menu,
    error_handler,
    main_menu_handler,
    manual_buy,
    receive_photo,
    receive_text,
    remove_group,
    set_buy_image,
    set_buy_step,
    set_chart_url,
    set_emojis,
    set_layout,
    set_min_buy,
    set_supply,
    start,
    status,
    toggle_shuffle,
    track,
    untrack,
)
from buybot.rate_limiter import TokenBucket
from buybot.settings_store import SettingsStore
from buybot.tracker import BuyTracker

# Enable logging (configurable)
_level = getattr(logging, config.LOG_LEVEL, logging.WARNING)
logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=_level
)
# Quiet noisy libraries
for noisy in ("httpx", "httpcore", "telegram", "telegram.ext", "apscheduler", "asyncio"):
    logging.getLogger(noisy).setLevel(logging.WARNING)

logger = logging.getLogger("buybot")

POLL_JOB_NAME = "buy_poll"


def acquire_lock(lock_file: str) -> bool:
    if os.path.exists(lock_file):
        try:
            with open(lock_file, 'r') as f:
                pid = int(f.read())
            if psutil.pid_exists(pid):
                logger.error(f"Lock file exists for running process {pid}. Exiting.")
                return False
            logger.warning("Stale lock file found. Removing.")
            os.remove(lock_file)
        except (ValueError, FileNotFoundError):
            logger.warning("Corrupt or empty lock file found. Removing.")
            os.remove(lock_file)
    with open(lock_file, 'w') as f:
        f.write(str(os.getpid()))
    return True


def register_handlers(application: Application) -> None:
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("track", track))
    application.add_handler(CommandHandler("untrack", untrack))
    application.add_handler(CommandHandler("addgroup", add_group))
    application.add_handler(CommandHandler("removegroup", remove_group))
    application.add_handler(CommandHandler("setemojis", set_emojis))
    application.add_handler(CommandHandler("setlayout", set_layout))
    application.add_handler(CommandHandler("setbuystep", set_buy_step))
    application.add_handler(CommandHandler("setminbuy", set_min_buy))
    application.add_handler(CommandHandler("setsupply", set_supply))
    application.add_handler(CommandHandler("setcharturl", set_chart_url))
    application.add_handler(CommandHandler("setbuyimage", set_buy_image))
    application.add_handler(CommandHandler("toggle_shuffle", toggle_shuffle))
    application.add_handler(CommandHandler("buy", manual_buy))
    application.add_handler(CommandHandler("status", status))
    application.add_handler(CallbackQueryHandler(back_to_main_menu, pattern=r'^back_to_main_menu$'))
    application.add_handler(CallbackQueryHandler(main_menu_handler))  # Default handler
    application.add_handler(MessageHandler(filters.PHOTO, receive_photo))
    application.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, receive_text))
    application.add_error_handler(error_handler)


async def main() -> int:
    """Start the bot. Returns the process exit code."""
    token = config.TELEGRAM_BOT_TOKEN
    if not token:
        logger.error("TELEGRAM_BOT_TOKEN not found in environment or .env file!")
        return 1
    if not config.TOKEN_ADDRESS:
        logger.error("TOKEN_ADDRESS not set; nothing to track.")
        return 1

    store = SettingsStore(config.SETTINGS_FILE)
    try:
        store.load()
    except StartupFailure as e:
        logger.critical(f"{e}. Fix or move the file and restart.")
        return 1

    if not acquire_lock(config.LOCK_FILE):
        return 1

    application = None
    tracker = None
    started = False
    try:
        application = (
            Application.builder()
            .token(token)
            .read_timeout(config.SEND_TIMEOUT_SECONDS)
            .write_timeout(config.SEND_TIMEOUT_SECONDS)
            .connect_timeout(config.SEND_TIMEOUT_SECONDS)
            .build()
        )

        chat_limiter = TokenBucket(config.CHAT_RATE_LIMIT, config.RATE_LIMIT_INTERVAL_SECONDS,
                                   blocking=config.RATE_LIMIT_BLOCKING, max_wait=config.RATE_LIMIT_MAX_WAIT,
                                   name="telegram")
        market_limiter = TokenBucket(config.MARKET_RATE_LIMIT, config.RATE_LIMIT_INTERVAL_SECONDS,
                                     blocking=config.RATE_LIMIT_BLOCKING, max_wait=config.RATE_LIMIT_MAX_WAIT,
                                     name="dexscreener")
        source = ChainEventSource(SolanaRpcClient(config.SOLANA_RPC_ENDPOINT), config.TOKEN_ADDRESS,
                                  limit=config.SIGNATURE_FETCH_LIMIT)
        market = MarketDataClient(config.TOKEN_ADDRESS, limiter=market_limiter)
        dispatcher = Dispatcher(application.bot, store, chat_limiter)
        tracker = BuyTracker(source, store, market, dispatcher)

        application.bot_data.update(
            store=store,
            tracker=tracker,
            conversations=ConversationTracker(),
            chat_limiter=chat_limiter,
        )
        register_handlers(application)

        logger.info("Bot starting...")
        await application.initialize()
        await application.start()
        started = True
        if config.WEBHOOK_URL:
            await application.updater.start_webhook(
                listen="0.0.0.0",
                port=config.WEBHOOK_PORT,
                url_path="telegram",
                webhook_url=f"{config.WEBHOOK_URL}/telegram",
                secret_token=config.WEBHOOK_SECRET,
                drop_pending_updates=True,
            )
            logger.info(f"Webhook mode on port {config.WEBHOOK_PORT}")
        else:
            # Ensure webhook is removed and pending updates are dropped before polling
            await application.bot.delete_webhook(drop_pending_updates=True)
            await application.updater.start_polling()

        application.job_queue.run_repeating(
            tracker.job,
            interval=config.POLL_INTERVAL_SECONDS,
            first=1,
            name=POLL_JOB_NAME,
            job_kwargs={"max_instances": 1, "coalesce": True},
        )
        logger.info(f"Polling {config.TOKEN_ADDRESS} every {config.POLL_INTERVAL_SECONDS} seconds")

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                pass
        await stop_event.wait()
        logger.info("Bot stopping...")

    except (KeyboardInterrupt, SystemExit):
        logger.info("Bot stopping...")
    finally:
        if application:
            for job in application.job_queue.get_jobs_by_name(POLL_JOB_NAME):
                job.schedule_removal()
            if started:
                if application.updater.running:
                    await application.updater.stop()
            if tracker is not None:
                await tracker.drain(config.DRAIN_TIMEOUT_SECONDS)
            await store.flush()
            if started:
                await application.stop()
            await application.shutdown()
        if os.path.exists(config.LOCK_FILE):
            os.remove(config.LOCK_FILE)
        logger.info("Bot stopped and lock file removed.")
    return 0


if __name__ == '__main__':
    sys.exit(asyncio.run(main()))
