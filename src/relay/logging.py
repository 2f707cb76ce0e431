"""Process-wide logging: console always, CloudWatch when enabled.

uvicorn is started with ``log_config=None``; its loggers are stripped of any
handlers here and propagate to the root, so server and relay lines share one
format and one destination.
"""

import logging
import os
from typing import Optional

_FORMAT = "%(asctime)s %(levelname)s [%(service)s] %(name)s: %(message)s"

# uvicorn installs handlers on these when it configures itself
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# chatty at DEBUG, rarely useful
_QUIET_LOGGERS = ("aiosqlite", "websockets", "watchtower")


class _ServiceFilter(logging.Filter):
    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service_name
        return True


def _cloudwatch_handler(service_name: str) -> Optional[logging.Handler]:
    log_group = os.environ.get("CLOUDWATCH_LOG_GROUP", "room-relay")
    try:
        import watchtower

        handler = watchtower.CloudWatchLogHandler(
            log_group_name=log_group,
            log_stream_name=service_name,
            use_queues=True,
            create_log_group=True,
        )
    except ImportError:
        logging.getLogger(__name__).warning(
            "watchtower not installed, CloudWatch logging disabled"
        )
        return None
    except Exception as e:
        logging.getLogger(__name__).warning("Failed to initialize CloudWatch logging: %s", e)
        return None

    logging.getLogger(__name__).info(
        "CloudWatch logging enabled: group=%s, stream=%s", log_group, service_name
    )
    return handler


def setup_logging(service_name: str = "room-relay", level: Optional[str] = None) -> None:
    """Configure root logging for the relay process.

    Args:
        service_name: Tag stamped on every line; also the CloudWatch stream name
        level: Root level; falls back to ``LOG_LEVEL`` then INFO

    Environment variables:
        LOG_LEVEL: Root log level (default: "INFO")
        ENABLE_CLOUDWATCH: Set to "true" to also ship logs to CloudWatch
        CLOUDWATCH_LOG_GROUP: Log group name (default: "room-relay")
    """
    root = logging.getLogger()
    root.setLevel((level or os.environ.get("LOG_LEVEL", "INFO")).upper())
    root.handlers.clear()

    formatter = logging.Formatter(_FORMAT)
    service = _ServiceFilter(service_name)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    console.addFilter(service)
    root.addHandler(console)

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers.clear()
        server_logger.propagate = True

    if root.level < logging.INFO:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)

    if os.environ.get("ENABLE_CLOUDWATCH", "").lower() == "true":
        handler = _cloudwatch_handler(service_name)
        if handler is not None:
            handler.setFormatter(formatter)
            handler.addFilter(service)
            root.addHandler(handler)
