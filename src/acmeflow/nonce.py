"""Replay-nonce supply shared by every signed request."""
import logging
import threading
from typing import Callable
from typing import Optional

logger = logging.getLogger(__name__)


class NonceStore:
    """Single cell holding the most recently observed ``Replay-Nonce``.

    A nonce is handed out at most once. When the cell is empty, `borrow`
    calls ``refresh`` while still holding the lock, so concurrent
    borrowers wait for one another instead of all fetching (or all
    reusing) the same value.

    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._nonce: Optional[str] = None

    def put(self, nonce: str) -> None:
        """Remember ``nonce``, replacing any unused one."""
        with self._lock:
            logger.debug('Storing nonce: %s', nonce)
            self._nonce = nonce

    def borrow(self, refresh: Callable[[], str]) -> str:
        """Take the held nonce, or obtain a new one with ``refresh``.

        :param refresh: Called with no arguments when the store is
            empty. Must return a fresh nonce and must not call back into
            this store.

        """
        with self._lock:
            if self._nonce is None:
                logger.debug('Requesting fresh nonce')
                return refresh()
            nonce, self._nonce = self._nonce, None
            return nonce

    def clear(self) -> None:
        """Drop the held nonce, if any."""
        with self._lock:
            self._nonce = None

    def __len__(self) -> int:
        return 0 if self._nonce is None else 1
