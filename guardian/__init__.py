import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '2.3.0'

SUCCESS = 25
logging.addLevelName(SUCCESS, 'SUCCESS')

SESSION_LOG_NAME = 'guardian.log'


def log_success(logger, message, *args):
    """Emit a record at the SUCCESS level."""
    logger.log(SUCCESS, message, *args)


def configure_logging(config, verbose=False):
    """Configure the session log.

    Console output plus an append-only rotating file under ``config.log_dir``.
    Returns the SessionLogBuffer holding the trailing window used by run ledgers.
    """
    from guardian.backup.ledger import SessionLogBuffer

    os.makedirs(config.log_dir, exist_ok=True)

    log_level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(
        '[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(config.log_dir, SESSION_LOG_NAME),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    session_buffer = SessionLogBuffer()
    session_buffer.setLevel(logging.INFO)
    session_buffer.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in (console_handler, file_handler, session_buffer):
        root.addHandler(handler)

    # Chatty third-party loggers
    for noisy in ('botocore', 'boto3', 's3transfer', 'paramiko', 'urllib3', 'docker', 'apscheduler'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        "Logging configured (level: %s)", logging.getLevelName(log_level)
    )
    return session_buffer
