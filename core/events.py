from __future__ import annotations

import json
import logging
from typing import Optional


EVENT_LOGGER_NAME = 'arr_declutter.events'


class EventBus:
    def __init__(self, *, structured_logs: bool = False, logger: Optional[logging.Logger] = None) -> None:
        self.structured_logs = structured_logs
        self.logger = logger or logging.getLogger(EVENT_LOGGER_NAME)

    def log(self, event: str, level: int = logging.INFO, **fields) -> None:
        payload = {"event": event, **fields}
        if self.structured_logs:
            try:
                self.logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
                return
            except (TypeError, ValueError):
                pass
        self.logger.log(level, f"{event}: {fields}")
