"""
=============================================================================
HELLOCAPTURE - PASSIVE TCP HANDSHAKE CAPTURE
=============================================================================

A TCP listener that records whatever a client sends first (typically a
TLS ClientHello) and hangs up. It never answers.

    $ python -m hellocapture --port 60443 --timeout 15
    ... TCP listener started on 0.0.0.0:60443
    ... Received TLS ClientHello record remote_addr=127.0.0.1:51234 ...

=============================================================================
QUICK START
=============================================================================

    from hellocapture import CaptureServer, CaptureConfig

    server = CaptureServer(CaptureConfig(port=60443, read_timeout=15.0))
    server.run()  # Until Ctrl+C / SIGTERM, then waits for open connections

=============================================================================
"""

__version__ = "1.0.0"

from .server import CaptureServer
from .config import CaptureConfig
from .recorder import RecordLogger, HandshakeRecordLogger

__all__ = [
    "CaptureServer",
    "CaptureConfig",
    "RecordLogger",
    "HandshakeRecordLogger",
    "__version__",
]
