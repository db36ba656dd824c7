import logging
import sys

_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# httpx logs every request line at INFO, one per part step.
_NOISY_LOGGERS = ("httpx", "httpcore")


def _quiet_transport_loggers(level: int) -> None:
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def setup_default_logging():
    """Set up default logging configuration if none exists."""
    if logging.root.handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format=_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    _quiet_transport_loggers(logging.INFO)


def configure_logging(level=logging.INFO, log_file=None, transport_level=None):
    """Configure logging for the filestack_api package.

    Args:
        level: The logging level (default: logging.INFO)
        log_file: Optional path to a log file
        transport_level: Level for the httpx/httpcore loggers. Defaults to
            WARNING unless ``level`` is stricter.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format=_FORMAT,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )
    if transport_level is None:
        _quiet_transport_loggers(level)
    else:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(transport_level)


# Call setup_default_logging when this module is imported
setup_default_logging()
