"""Helpers for logging errors that must not abort the current operation.

Used where a failure is recorded but execution continues: best-effort
cleanup of staging directories and per-generation deletes during retention.
"""

import logging


def log_and_continue(
    logger_instance: logging.Logger,
    error: Exception,
    context_message: str,
    log_level: str = "warning",
) -> None:
    """Log error but continue execution (for non-critical errors).

    Args:
        logger_instance: Logger instance to use
        error: The exception that was caught
        context_message: Context about where/why this error occurred
        log_level: Logging level to use (default: warning)

    Examples:
        >>> logger = logging.getLogger(__name__)
        >>> try:
        ...     shutil.rmtree(staging_dir)
        >>> except OSError as e:
        ...     log_and_continue(logger, e, "Failed to remove staging directory")
    """
    log_method = getattr(logger_instance, log_level, logger_instance.warning)
    log_method(f"{context_message}: {type(error).__name__}: {error}", exc_info=True)
