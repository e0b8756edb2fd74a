"""Global error handler for the application and its jobs."""

import logging
import traceback

from telegram.ext import ContextTypes

from qcdispatch.utils.errors import DispatchError, StoreTransientError

logger = logging.getLogger(__name__)


def describe_job(context: ContextTypes.DEFAULT_TYPE) -> str:
    """Name of the job that raised, if the error came from the JobQueue."""
    job = getattr(context, "job", None)
    return job.name if job is not None and job.name else "update"


async def error_handler(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log errors raised by handlers and jobs.

    Store outages are expected to clear on the next pass, so they are logged
    without a traceback.
    """
    error = context.error
    source = describe_job(context)

    if isinstance(error, StoreTransientError):
        logger.warning(f"Store unavailable during {source}: {error}")
        return

    if isinstance(error, DispatchError):
        logger.error(f"Dispatch error in {source}: {error}")
        return

    logger.error(f"Exception while running {source}:", exc_info=error)

    # Log full traceback
    if error is not None:
        tb_string = "".join(traceback.format_exception(None, error, error.__traceback__))
        logger.debug(f"Traceback:\n{tb_string}")
