"""
pytest configuration and fixtures.
"""

import socket
import threading
import time
from typing import Callable, Generator, List, Tuple
import pytest

# Add src to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from hellocapture import CaptureServer, CaptureConfig, RecordLogger


class RecordingLogger(RecordLogger):
    """Record logger that keeps every capture in memory."""

    def __init__(self):
        self.records: List[Tuple[str, bytes]] = []
        self._condition = threading.Condition()

    def record_capture(self, peer_address: str, payload: bytes) -> None:
        with self._condition:
            self.records.append((peer_address, payload))
            self._condition.notify_all()

    @property
    def payloads(self) -> List[bytes]:
        with self._condition:
            return [payload for _, payload in self.records]

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        """Wait until at least `count` records have arrived."""
        with self._condition:
            return self._condition.wait_for(lambda: len(self.records) >= count, timeout)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll a condition that has no event to wait on."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def recorder() -> RecordingLogger:
    return RecordingLogger()


@pytest.fixture
def config() -> CaptureConfig:
    """Fast test configuration on an OS-assigned port."""
    return CaptureConfig(
        host="127.0.0.1",
        port=0,  # Let OS pick a free port
        read_timeout=0.3,
        log_level="WARNING",
    )


@pytest.fixture
def capture_server(config: CaptureConfig, recorder: RecordingLogger) -> Generator[CaptureServer, None, None]:
    """A started capture server, drained on teardown."""
    server = CaptureServer(config, record_logger=recorder)
    server.start()

    yield server

    server.shutdown(timeout=5.0)


@pytest.fixture
def connect(capture_server: CaptureServer) -> Generator[Callable[[], socket.socket], None, None]:
    """Factory for client sockets connected to the capture server."""
    clients: List[socket.socket] = []

    def _connect() -> socket.socket:
        client = socket.create_connection(capture_server.address, timeout=5.0)
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        client.close()
