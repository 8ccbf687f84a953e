"""Entry point: python -m ventricle"""

import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from ventricle.core.config import VentricleConfig
from ventricle.core.daemon import VentricleDaemon

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_LEVEL_ENV = "VENTRICLE_LOG_LEVEL"

# Keys passed through ``extra=`` by the registry; written in this order.
STRUCTURED_FIELDS = ("event", "pulse_id", "anchor", "item_id", "url")


class StructuredFormatter(logging.Formatter):
    """Adds ``| {json}`` to lines logged with an ``event`` extra.

    Only the keys in STRUCTURED_FIELDS that were actually set are written.
    """

    def format(self, record):
        line = super().format(record)
        if not getattr(record, "event", None):
            return line
        fields = {key: getattr(record, key) for key in STRUCTURED_FIELDS if hasattr(record, key)}
        return f"{line} | {json.dumps(fields, default=str)}"


def log_level(config: VentricleConfig) -> int:
    """Level name from the environment, else from config. Unknown names mean INFO."""
    name = os.environ.get(LOG_LEVEL_ENV) or config.logging.level
    level = logging.getLevelName(str(name).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(config: VentricleConfig, console: Optional[bool] = None):
    """Log to ``logging.file`` and, on a terminal or when ``console`` is set, to stdout."""
    log_path = Path(config.logging.file).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = StructuredFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    handlers: List[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if console is None:
        # a redirected stdout already ends up in the log file
        console = sys.stdout.isatty()
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(level=log_level(config), handlers=handlers)


def main(config_path: Optional[str] = None):
    config = VentricleConfig.load(config_path)
    setup_logging(config)
    logging.getLogger("ventricle").debug(f"Loaded config from {config_path or 'default search path'}")
    VentricleDaemon(config=config).run()


if __name__ == "__main__":
    main(sys.argv[1] if len(sys.argv) > 1 else None)
