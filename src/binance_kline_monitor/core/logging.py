from __future__ import annotations

import logging

from rich.logging import RichHandler

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__.keys() | {"message", "asctime"}
)


class ExtraFieldsFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        extras = {key: value for key, value in record.__dict__.items() if key not in _RESERVED_ATTRS}
        if not extras:
            return message
        rendered = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        return f"{message} [{rendered}]"


def configure_logging(level: str = "INFO") -> None:
    handler = RichHandler(rich_tracebacks=True, show_path=False)
    handler.setFormatter(ExtraFieldsFormatter("%(name)s: %(message)s"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
