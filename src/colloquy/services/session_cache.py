import logging
import threading
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class SessionCache:
    """
    Process-local map of session id -> provider conversation handle.

    Handles let providers with server-side chat state skip re-sending the full
    history. The cache is an optimization only: a miss means the caller falls
    back to full-history injection, and nothing here is ever persisted.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def get(self, session_id: str) -> Optional[Any]:
        with self._lock:
            return self._handles.get(session_id)

    def put(self, session_id: str, handle: Any) -> None:
        with self._lock:
            self._handles[session_id] = handle
        logger.debug("Cached provider handle for session %s", session_id)

    def evict(self, session_id: str) -> bool:
        with self._lock:
            removed = self._handles.pop(session_id, None) is not None
        if removed:
            logger.debug("Evicted provider handle for session %s", session_id)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._handles)
            self._handles.clear()
        if count:
            logger.info("Cleared %d cached provider handle(s)", count)
        return count

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
