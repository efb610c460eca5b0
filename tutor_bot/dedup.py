import threading
from contextlib import contextmanager
from typing import Hashable, Iterator, Set

from tutor_bot.errors import DuplicateDelivery


class InFlightGuard:
    """Set of inbound message ids currently being handled.

    Messaging platforms redeliver a message when the acknowledgement is slow;
    the guard lets exactly one handler run per id at a time. It lives in
    process memory only, so a restart forgets every marker.
    """

    def __init__(self) -> None:
        self._in_flight: Set[Hashable] = set()
        self._lock = threading.Lock()

    def admit(self, message_id: Hashable) -> bool:
        """Mark `message_id` in flight. False if it already was."""
        with self._lock:
            if message_id in self._in_flight:
                return False
            self._in_flight.add(message_id)
            return True

    def release(self, message_id: Hashable) -> None:
        with self._lock:
            self._in_flight.discard(message_id)

    @contextmanager
    def hold(self, message_id: Hashable) -> Iterator[None]:
        """Keep `message_id` in flight for the duration of the block.

        Raises DuplicateDelivery if another handler already holds it. The
        marker is released on every exit path of the block.
        """
        if not self.admit(message_id):
            raise DuplicateDelivery(f"Message {message_id!r} is already being handled")
        try:
            yield
        finally:
            self.release(message_id)

    def __contains__(self, message_id: Hashable) -> bool:
        with self._lock:
            return message_id in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)
