"""
=============================================================================
SHUTDOWN COORDINATION
=============================================================================

Graceful shutdown has two halves:

    1. Stop accepting new connections   (close the listening socket)
    2. Drain in-flight sessions         (wait until every session ends)

The ORDER matters. If we waited first, a connection accepted during the
wait would register a new session and the wait could never be trusted.
Closing the listener first, and waiting for the accept loop to return,
guarantees the set of sessions we wait on can only shrink.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                        Drain Sequence                                │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │   initiate_shutdown()                                                │
    │        │                                                             │
    │        ├──► listener.close()         accept() starts failing         │
    │        ├──► listener.wait_stopped()  no more register() calls        │
    │        └──► wait for live == 0       sessions finish on their own    │
    │                                                                      │
    │   Session thread                                                     │
    │        with registration:            live -= 1 on every exit path    │
    │            read loop ...                                             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

Sessions are never interrupted. A session blocked in a read finishes
when its idle timeout fires, so shutdown takes at most one read timeout.

=============================================================================
"""

import logging
import threading
import time
from typing import Optional


logger = logging.getLogger(__name__)


class SessionRegistration:
    """
    Membership token for one session in the coordinator's live-set.

    Releasing it more than once has no effect, so it is safe to use as a
    context manager and still call complete() explicitly.
    """

    def __init__(self, coordinator: "ShutdownCoordinator"):
        self._coordinator = coordinator
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def complete(self):
        """Remove this session from the live-set (first call only)."""
        with self._lock:
            if self._released:
                return
            self._released = True
        self._coordinator._release()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.complete()
        return False


class ShutdownCoordinator:
    """
    Tracks in-flight sessions and drains them on shutdown.

    The live count is the only state shared across session threads. It is
    guarded by a Condition so that the drain can block until it hits zero
    without polling.

    Usage:
        coordinator = ShutdownCoordinator()
        coordinator.attach(socket_server)

        # acceptor thread, per connection
        registration = coordinator.register()

        # session thread
        with registration:
            ...

        # main thread, after SIGTERM
        coordinator.initiate_shutdown()
    """

    def __init__(self, listener=None):
        """
        Args:
            listener: Object with close() and wait_stopped(timeout) methods,
                      normally the SocketServer. May be attached later.
        """
        self._listener = listener
        self._live = 0
        self._condition = threading.Condition()
        self._shutdown_started = False
        # Set once the accept loop can no longer register sessions
        self._listener_stopped = threading.Event()

    def attach(self, listener):
        """Set the listener that is closed when shutdown starts."""
        self._listener = listener

    @property
    def live_count(self) -> int:
        """Number of sessions currently registered."""
        with self._condition:
            return self._live

    @property
    def is_shutting_down(self) -> bool:
        with self._condition:
            return self._shutdown_started

    def register(self) -> SessionRegistration:
        """
        Add one session to the live-set.

        Must be called before the session starts reading.
        """
        with self._condition:
            self._live += 1
            logger.debug(f"Session registered ({self._live} active)")
        return SessionRegistration(self)

    def _release(self):
        with self._condition:
            if self._live <= 0:
                # A token is released once, so this means a bookkeeping bug
                logger.error("Session released with no active registrations")
                return
            self._live -= 1
            logger.debug(f"Session completed ({self._live} active)")
            if self._live == 0:
                self._condition.notify_all()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """
        Block until no session is registered.

        Returns:
            True once the live count is zero, False if timeout expired.
        """
        with self._condition:
            return self._condition.wait_for(lambda: self._live == 0, timeout)

    def initiate_shutdown(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting and drain in-flight sessions.

        Only the first call closes the listener. Later or concurrent calls
        just wait for the drain.

        Args:
            timeout: Maximum seconds to wait for the drain. None = forever.

        Returns:
            True if every session finished, False if timeout expired.
        """
        with self._condition:
            first = not self._shutdown_started
            self._shutdown_started = True

        deadline = None if timeout is None else time.monotonic() + timeout

        if first:
            try:
                if self._listener is not None:
                    logger.info("Closing listener to stop accepting new connections...")
                    self._listener.close()
                    # Any connection accepted just before close gets registered
                    # before the accept loop returns.
                    self._listener.wait_stopped()
            finally:
                self._listener_stopped.set()
        elif not self._listener_stopped.wait(timeout):
            logger.warning("Shutdown timeout while the accept loop was still running")
            return False

        if deadline is not None:
            timeout = max(0.0, deadline - time.monotonic())

        logger.info(f"Waiting for active connections to finish ({self.live_count} active)...")
        drained = self.wait_idle(timeout)

        if drained:
            logger.info("All connections finished. Shutdown complete.")
        else:
            logger.warning(f"Shutdown timeout, {self.live_count} connections still active")
        return drained
