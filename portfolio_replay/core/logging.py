import logging
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_HANDLER_NAME = "portfolio_replay.stdout"


def setup_logging(level: str = "INFO") -> None:
    """Send engine logs to stdout; calling it again only updates the level."""
    root_logger = logging.getLogger()
    if not any(handler.get_name() == _HANDLER_NAME for handler in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Per-request chatter from the price client and exporters
    for noisy in ("httpx", "httpcore", "opentelemetry.exporter"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
