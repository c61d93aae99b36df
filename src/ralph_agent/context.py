"""Process-scoped state shared by the agent components."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from ralph_agent import __version__
from ralph_agent.config import Settings


@dataclass(slots=True)
class AgentContext:
    """Created once at process start and passed to whatever needs it."""

    settings: Settings
    agent_version: str = __version__
    _warned: set[str] = field(default_factory=set)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def agent_id(self) -> str:
        return self.settings.api.agent_id

    def warn_once(self, logger: logging.Logger, key: str, message: str, *args: object) -> bool:
        """Log ``message`` at WARNING the first time ``key`` is seen; return True if logged."""

        with self._lock:
            if key in self._warned:
                return False
            self._warned.add(key)
        logger.warning(message, *args)
        return True
