"""
=============================================================================
CONNECTION SESSION
=============================================================================

A session owns one accepted connection from accept to close. It never
writes to the peer; it only reads, records and eventually hangs up.

=============================================================================
TCP IS A BYTE STREAM
=============================================================================

TCP does not preserve message boundaries. A peer that sends a 517-byte
ClientHello might be read as one chunk or as several:

    recv() → 16 03 01 02 00 01 00 01 fc 03 03 ...   (whole record)

    recv() → 16 03 01                               (partial)
    recv() → 02 00 01 00 01 fc 03 03 ...            (the rest)

We do not reassemble anything. Each read is recorded as it came off the
socket: one record per read, exactly the bytes read, in order.

=============================================================================
SESSION STATE MACHINE
=============================================================================

                         ┌──────────┐
                         │ RUNNING  │◄──────┐
                         └────┬─────┘       │ data: record it,
                              │ recv()      │ re-arm deadline
                              ├─────────────┘
           ┌──────────────────┼──────────────────┐
           │ idle timeout     │ recv() == b""    │ other error
           ▼                  ▼                  ▼
     ┌───────────┐     ┌─────────────┐     ┌────────────┐
     │ TIMED_OUT │     │ PEER_CLOSED │     │ READ_ERROR │
     └─────┬─────┘     └──────┬──────┘     └─────┬──────┘
           └──────────────────┼──────────────────┘
                              ▼
                       ┌────────────┐
                       │ TERMINATED │  socket closed, registration released
                       └────────────┘

=============================================================================
IDLE TIMEOUT VS TOTAL TIMEOUT
=============================================================================

Python sockets apply settimeout() to each blocking call, which is exactly
an idle deadline: every recv() gets a fresh read_timeout window. A peer
trickling one byte every few seconds is never cut off; a peer that goes
quiet for read_timeout seconds is.

=============================================================================
"""

import socket
import time
import logging
from enum import Enum
from typing import Optional, Tuple

from ..recorder import RecordLogger
from .shutdown import SessionRegistration


logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session lifecycle states."""
    RUNNING = "running"          # Reading from the peer
    TIMED_OUT = "timed_out"      # No data within the idle window
    PEER_CLOSED = "peer_closed"  # Peer closed its side (EOF)
    READ_ERROR = "read_error"    # Any other transport failure
    TERMINATED = "terminated"    # Socket closed, registration released


def format_address(address) -> str:
    """
    Render a socket address as "ip:port".

    IPv6 hosts are bracketed ("[::1]:443"). Addresses that are not
    (host, port) tuples, like the empty name of a socketpair, are
    rendered with str().
    """
    if isinstance(address, tuple) and len(address) >= 2:
        host, port = address[0], address[1]
        if ":" in host:
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(address) if address else "-"


class ConnectionSession:
    """
    Read/timeout loop for one accepted connection.

    ┌─────────────────────────────────────────────────────────────────────┐
    │                    Session Responsibilities                          │
    ├─────────────────────────────────────────────────────────────────────┤
    │                                                                      │
    │  1. IDLE TIMEOUT                                                     │
    │     └── Re-arm the read deadline before every recv()                 │
    │                                                                      │
    │  2. RECORDING                                                        │
    │     └── One record_capture() call per successful read                │
    │     └── Exactly the bytes read, never the unused buffer tail         │
    │                                                                      │
    │  3. GUARANTEED CLEANUP                                               │
    │     └── Socket closed on every exit path                             │
    │     └── Registration released after the socket is closed             │
    │                                                                      │
    └─────────────────────────────────────────────────────────────────────┘

    Attributes:
        state: Current SessionState.
        outcome: The terminal cause (TIMED_OUT, PEER_CLOSED, READ_ERROR),
                 None while running.
        reads: Number of successful reads recorded.
        bytes_received: Total bytes recorded.
    """

    def __init__(
        self,
        sock: socket.socket,
        address: Tuple,
        record_logger: RecordLogger,
        registration: SessionRegistration,
        read_timeout: float,
        buffer_size: int = 4096,
    ):
        self.socket = sock
        self.address = address
        self.peer_address = format_address(address)
        self.record_logger = record_logger
        self.registration = registration
        self.read_timeout = read_timeout
        self.buffer_size = buffer_size

        self.state = SessionState.RUNNING
        self.outcome: Optional[SessionState] = None
        self.reads = 0
        self.bytes_received = 0
        self.created_at = time.time()

    @property
    def age(self) -> float:
        """Seconds since the connection was accepted."""
        return time.time() - self.created_at

    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.TERMINATED

    def run(self):
        """
        Run the session to completion.

        This is the thread target. It never raises: every failure ends
        this session only.
        """
        with self.registration:
            try:
                logger.info(f"Accepted connection from {self.peer_address}")
                self._read_loop()
            except Exception as e:
                # Record logger blew up; nothing else in the loop raises
                logger.exception(f"[{self.peer_address}] Session error: {e}")
                self._end(SessionState.READ_ERROR)
            finally:
                self.close()

    def _read_loop(self):
        while True:
            # ─────────────────────────────────────────────────────────────
            # RE-ARM THE IDLE DEADLINE
            # ─────────────────────────────────────────────────────────────
            try:
                self.socket.settimeout(self.read_timeout)
            except OSError as e:
                logger.error(
                    f"[{self.peer_address}] Error setting read deadline. "
                    f"Closing connection: {e}"
                )
                self._end(SessionState.READ_ERROR)
                return

            # ─────────────────────────────────────────────────────────────
            # READ
            # ─────────────────────────────────────────────────────────────
            try:
                data = self.socket.recv(self.buffer_size)
            except socket.timeout:
                logger.info(
                    f"[{self.peer_address}] Read timeout: No further data "
                    f"from client. Closing connection."
                )
                self._end(SessionState.TIMED_OUT)
                return
            except OSError as e:
                logger.error(
                    f"[{self.peer_address}] Error reading from client. "
                    f"Closing connection: {e}"
                )
                self._end(SessionState.READ_ERROR)
                return

            if not data:
                logger.info(f"[{self.peer_address}] Connection closed by client (EOF).")
                self._end(SessionState.PEER_CLOSED)
                return

            self.reads += 1
            self.bytes_received += len(data)
            self.record_logger.record_capture(self.peer_address, data)

    def _end(self, outcome: SessionState):
        self.outcome = outcome
        self.state = outcome

    def close(self):
        """Close the connection. Safe to call more than once."""
        if self.state == SessionState.TERMINATED:
            return

        try:
            self.socket.close()
        except OSError:
            pass  # Already gone

        self.state = SessionState.TERMINATED
        logger.info(
            f"[{self.peer_address}] Closing connection. "
            f"reads={self.reads} bytes={self.bytes_received} "
            f"outcome={self.outcome.value if self.outcome else 'none'} "
            f"age={self.age:.3f}s"
        )
