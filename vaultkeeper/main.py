"""Process entrypoint: load configuration, then run once or start the scheduler."""

import asyncio
import logging

from dotenv import load_dotenv

from vaultkeeper import configure_logging
from vaultkeeper.backup.executor import run_backups
from vaultkeeper.backup.storage import StorageError, create_storage
from vaultkeeper.config import Config, ConfigError
from vaultkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler


logger = logging.getLogger(__name__)


def check_storage(config: Config) -> bool:
    """
    Verify bucket access before the first run.

    A failure is only logged: each run reports its own storage errors.

    Returns:
        True if the bucket is reachable
    """
    try:
        create_storage(config).test_connection()
    except StorageError as e:
        logger.warning(f"Storage connection check failed: {e}")
        return False

    logger.info("Storage connection verified")
    return True


def main() -> int:
    """
    Start vaultkeeper.

    Returns:
        Process exit code: 1 for a fatal startup configuration error, else 0
    """
    load_dotenv()

    try:
        config = Config.from_env()
    except ConfigError as e:
        configure_logging()
        logger.error(f"Invalid configuration: {e}")
        return 1

    configure_logging(config.log_level, config.log_dir)

    try:
        config.validate_startup()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    if not config.is_local_mode:
        check_storage(config)

    if not config.cron_expression:
        # RUN_ON_STARTUP without a schedule: one run, then exit
        asyncio.run(run_backups(config))
        return 0

    try:
        init_scheduler(config)
    except ConfigError as e:
        logger.error(str(e))
        return 1

    try:
        start_scheduler()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()

    return 0
