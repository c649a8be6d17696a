"""
Load-once handles for expensive engines (OCR readers, CNN models)
"""
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class EngineHandle:
    """
    Owns one lazily built engine
    The first caller builds it; concurrent callers wait for that same build
    instead of starting their own. A failed build is remembered and reported
    as an unavailable engine.
    """

    def __init__(self, factory: Callable[[], object], name: str = "engine"):
        self._factory = factory
        self.name = name
        self._engine = None
        self._error: Optional[Exception] = None
        self._lock = threading.Lock()

    def get(self):
        if self._engine is not None or self._error is not None:
            return self._engine

        with self._lock:
            if self._engine is None and self._error is None:
                try:
                    self._engine = self._factory()
                    logger.info(f"{self.name} loaded")
                except Exception as e:
                    self._error = e
                    logger.warning(f"{self.name} unavailable: {str(e)}")
        return self._engine

    @property
    def loaded(self) -> bool:
        return self._engine is not None

    @property
    def error(self) -> Optional[Exception]:
        return self._error
