"""Request/response correlation for the shared signal-cli channel.

Replies and notifications arrive interleaved on the same stdout stream.
Every request we write is registered here under its id; a line whose id
resolves is a reply, anything else is a notification.
"""

import logging
import threading
import uuid
from typing import Dict, Optional

logger = logging.getLogger(__name__)


def new_request_id() -> str:
    """Generate an opaque request id."""
    return str(uuid.uuid4())


class RpcCorrelator:
    """Maps in-flight request ids to the method that issued them.

    The writer side calls ``register`` and the reader side calls ``resolve``,
    so both are guarded by a lock.
    """

    def __init__(self):
        self._pending: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, request_id: str, method: str) -> None:
        with self._lock:
            self._pending[request_id] = method

    def resolve(self, request_id: Optional[str]) -> Optional[str]:
        """Look up and remove the method registered for ``request_id``.

        Args:
            request_id: Id carried by an incoming line, or None

        Returns:
            The method name if this line answers one of our requests,
            otherwise None. A second reply for the same id returns None.
        """
        if request_id is None:
            return None
        with self._lock:
            method = self._pending.pop(request_id, None)
        if method is None:
            logger.debug(f"No pending request for id {request_id}")
        return method

    def discard(self, request_id: str) -> None:
        """Forget a request whose write never reached the backend."""
        with self._lock:
            self._pending.pop(request_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)
