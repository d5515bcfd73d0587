"""Per-task loggers that prefix every line with the tick / tweet / step it belongs to."""

from __future__ import annotations

import logging
from typing import Any, MutableMapping, Tuple, Union

LoggerLike = Union[logging.Logger, logging.LoggerAdapter]


class TaskLogger(logging.LoggerAdapter):
    """LoggerAdapter carrying task context; ``bind`` returns a narrower copy."""

    def __init__(self, logger: LoggerLike, **context: Any) -> None:
        if isinstance(logger, TaskLogger):
            context = {**logger.extra, **context}
            logger = logger.logger
        super().__init__(logger, context)

    def bind(self, **context: Any) -> TaskLogger:
        return TaskLogger(self, **context)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        if not self.extra:
            return msg, kwargs
        prefix = " ".join(f"{k}={v}" for k, v in self.extra.items() if v not in (None, ""))
        return f"[{prefix}] {msg}", kwargs
