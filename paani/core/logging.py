# paani/core/logging.py
# JSON lines to stdout + levels

from __future__ import annotations
import json
import logging
import sys

_JSON_FMT = (
    '{"level":"%(levelname)s","ts":"%(asctime)s",'
    '"name":"%(name)s","msg":%(json_msg)s}'
)


class _JsonFormatter(logging.Formatter):
    """Escapes the message so quotes in log text don't break the JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if record.exc_info:
            msg = f"{msg}\n{self.formatException(record.exc_info)}"
        record.json_msg = json.dumps(msg, ensure_ascii=False)
        record.asctime = self.formatTime(record, self.datefmt)
        # the traceback is already inside json_msg, don't let Formatter append it raw
        return self.formatMessage(record)


def setup_logging(level: str = "INFO") -> None:
    logger = logging.getLogger()
    logger.handlers.clear()
    logger.setLevel(level.upper())

    h = logging.StreamHandler(sys.stdout)
    h.setFormatter(_JsonFormatter(_JSON_FMT))
    logger.addHandler(h)

    # apscheduler logs every job run at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
