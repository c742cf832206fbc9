"""
Reconnect policy for the session state machine.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type

import aiohttp

from flipper_client.errors import TransportError

# Lost-connection conditions: the host went away mid-session, which usually
# means it is restarting. These never consume a retry attempt.
CONNECTION_LOST_ERRORS: Tuple[Type[BaseException], ...] = (
    ConnectionResetError,
    aiohttp.ServerDisconnectedError,
)


def is_connection_lost(error: Optional[BaseException]) -> bool:
    if isinstance(error, TransportError):
        error = error.cause
    return isinstance(error, CONNECTION_LOST_ERRORS)


@dataclass
class ReconnectPolicy:
    """
    Decides whether another automatic connection attempt is scheduled.

    Attributes:
        interval: Seconds to wait before each attempt
        max_attempts: Consecutive failed attempts allowed since the last
            successful connection
        always_retryable: Predicate for errors that bypass the attempt cap
    """

    interval: float = 5.0
    max_attempts: int = 5
    always_retryable: Callable[[Optional[BaseException]], bool] = field(default=is_connection_lost)

    def should_retry(self, error: Optional[BaseException], attempts: int) -> Tuple[bool, bool]:
        """
        Returns:
            (retry, counts_as_attempt)
        """
        if self.always_retryable(error):
            return True, False
        if attempts < self.max_attempts:
            return True, True
        return False, False
