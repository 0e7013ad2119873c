from __future__ import annotations

import logging

from channelplane.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_NOISY_LOGGERS = ("httpx", "httpcore", "arq.jobs")


def configure_logging() -> None:
    # Configure the root logger once per process; API and workers share the key=value message style.
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT, force=True)
    # Upstream client libraries log every request at INFO, which drowns reconciliation output.
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
