"""
=============================================================================
CORE NETWORKING COMPONENTS
=============================================================================

    SocketServer          Listening socket + accept loop (one thread)
    ConnectionSession     Read/timeout loop for one connection (one thread each)
    ShutdownCoordinator   Live-session count + drain on shutdown

Threads:

    main thread ───► waits for SIGINT/SIGTERM ───► initiate_shutdown()
    accept thread ─► accept() ─► register() ─► start session thread
    session threads ─► recv() / record / ... ─► close ─► complete()

=============================================================================
"""

from .socket_server import SocketServer
from .session import ConnectionSession, SessionState, format_address
from .shutdown import ShutdownCoordinator, SessionRegistration

__all__ = [
    "SocketServer",
    "ConnectionSession",
    "SessionState",
    "format_address",
    "ShutdownCoordinator",
    "SessionRegistration",
]
