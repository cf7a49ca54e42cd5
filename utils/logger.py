"""
╔══════════════════════════════════════════╗
║       HELM — Utilities: Logger           ║
╚══════════════════════════════════════════╝

Console + rotating file logging for the orchestration core.
Every module logs through the shared "HELM" logger.
"""

import logging
import logging.handlers
import os

LOGGER_NAME = "HELM"


def setup_logger(config, base_dir):
    """Set up the HELM logger from a LoggingConfig.

    Console output stays terse (message only); the file gets timestamps
    and levels. Calling it twice is a no-op.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    log_level = getattr(logging, str(config.level).upper(), logging.INFO)
    logger.setLevel(log_level)

    console = logging.StreamHandler()
    console.setLevel(log_level)
    console.setFormatter(logging.Formatter("  %(message)s"))
    logger.addHandler(console)

    if config.file:
        log_file = os.path.join(base_dir, config.file)
        os.makedirs(os.path.dirname(log_file) or ".", exist_ok=True)
        # 5MB per file, 3 backups
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)

    return logger
