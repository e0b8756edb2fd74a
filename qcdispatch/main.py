"""Main entry point for the qcdispatch worker."""

import logging
import sys
from datetime import timedelta

from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from qcdispatch.channels.alerts import LogAdminAlertSink, TelegramAdminAlertSink
from qcdispatch.channels.gateway import DeliveryChannelGateway
from qcdispatch.channels.push import TelegramPushChannel
from qcdispatch.channels.realtime import OutboxRealtimeChannel
from qcdispatch.config import Config
from qcdispatch.db.migrations import run_migrations
from qcdispatch.db.repository import Repository
from qcdispatch.engine.deferred import JobQueueDeferrer
from qcdispatch.engine.dispatcher import NotificationDispatcher
from qcdispatch.engine.milestones import MilestoneDetector, load_rule_book
from qcdispatch.engine.retry import RetryCoordinator
from qcdispatch.engine.scheduler import ReminderScheduler
from qcdispatch.utils.constants import DEFAULT_RULE_BOOK
from qcdispatch.utils.error_handler import error_handler

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, Config.LOG_LEVEL),
    stream=sys.stdout,
)

logger = logging.getLogger(__name__)


async def heartbeat_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Job callback for the scheduler heartbeat."""
    scheduler: ReminderScheduler = context.bot_data["scheduler"]
    await scheduler.process_due()
    await scheduler.roll_forward_missed()


async def milestone_job(context: ContextTypes.DEFAULT_TYPE) -> None:
    """Job callback for milestone detection over every couple's latest metrics."""
    detector: MilestoneDetector = context.bot_data["detector"]
    await detector.detect_batch()


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Report delivery counters to the admin chat."""
    if not update.effective_chat or str(update.effective_chat.id) != Config.ADMIN_CHAT_ID:
        return

    dispatcher: NotificationDispatcher = context.bot_data["dispatcher"]
    counters = dispatcher.metrics_snapshot()
    if not counters:
        text = "No deliveries since startup."
    else:
        text = "\n".join(f"{name}: {count}" for name, count in sorted(counters.items()))

    await update.effective_message.reply_text(text)


async def post_init(application: Application) -> None:
    """Build the pipeline after the application is created."""
    # Initialize database
    await run_migrations(Config.DATABASE_PATH)

    repo = Repository(Config.DATABASE_PATH)
    await repo.connect()
    application.bot_data["repo"] = repo

    realtime = OutboxRealtimeChannel(repo)
    gateway = DeliveryChannelGateway(
        [realtime, TelegramPushChannel(application.bot, Config.APP_BASE_URL)]
    )

    if Config.ADMIN_CHAT_ID:
        alert_sink = TelegramAdminAlertSink(application.bot, int(Config.ADMIN_CHAT_ID))
    else:
        alert_sink = LogAdminAlertSink()

    deferrer = JobQueueDeferrer(application.job_queue)
    retry = RetryCoordinator(
        repo,
        gateway,
        deferrer,
        alert_sink,
        delays=Config.RETRY_DELAYS,
        max_retries=Config.MAX_RETRIES,
        store_attempts=Config.STORE_RETRY_ATTEMPTS,
    )
    dispatcher = NotificationDispatcher(
        repo,
        gateway,
        retry,
        deferrer,
        ttl=timedelta(hours=Config.NOTIFICATION_TTL_HOURS),
        low_priority_delay=timedelta(seconds=Config.LOW_PRIORITY_BATCH_DELAY),
        store_attempts=Config.STORE_RETRY_ATTEMPTS,
    )
    scheduler = ReminderScheduler(
        repo,
        dispatcher,
        window=timedelta(minutes=Config.DUE_WINDOW_MINUTES),
        store_attempts=Config.STORE_RETRY_ATTEMPTS,
    )

    rule_book = (
        load_rule_book(Config.DETECTION_RULES_PATH)
        if Config.DETECTION_RULES_PATH
        else DEFAULT_RULE_BOOK
    )
    detector = MilestoneDetector(
        repo,
        dispatcher,
        realtime,
        rule_book=rule_book,
        concurrency=Config.DETECTION_CONCURRENCY,
        store_attempts=Config.STORE_RETRY_ATTEMPTS,
    )

    application.bot_data.update(
        scheduler=scheduler, dispatcher=dispatcher, detector=detector
    )

    # Missed windows are lost, not fired late
    await scheduler.roll_forward_missed()

    # Deferred deliveries and retries only live in the job queue
    await dispatcher.resume_pending()

    job_queue = application.job_queue
    job_queue.run_repeating(
        heartbeat_job,
        interval=Config.HEARTBEAT_INTERVAL,
        first=10,  # Start after 10 seconds
        name="heartbeat",
    )
    logger.info(f"Heartbeat job scheduled (interval: {Config.HEARTBEAT_INTERVAL}s)")

    job_queue.run_repeating(
        milestone_job,
        interval=Config.MILESTONE_INTERVAL,
        first=30,
        name="milestones",
    )
    logger.info(f"Milestone job scheduled (interval: {Config.MILESTONE_INTERVAL}s)")

    logger.info("qcdispatch initialized successfully")


async def post_shutdown(application: Application) -> None:
    """Cleanup resources on shutdown."""
    repo: Repository = application.bot_data.get("repo")
    if repo:
        await repo.close()

    logger.info("qcdispatch shut down")


def main() -> None:
    """Start the worker."""
    # Validate configuration
    try:
        Config.validate()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    application = (
        Application.builder()
        .token(Config.TELEGRAM_BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )

    application.add_handler(CommandHandler("status", status_command))

    # Error handler
    application.add_error_handler(error_handler)

    logger.info("Starting qcdispatch...")
    application.run_polling(allowed_updates=["message"])


if __name__ == "__main__":
    main()
