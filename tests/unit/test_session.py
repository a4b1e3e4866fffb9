"""
Unit tests for the connection session read loop.
"""

import logging
import socket
import threading
import time

import pytest

from hellocapture.core.session import ConnectionSession, SessionState, format_address
from hellocapture.core.shutdown import ShutdownCoordinator


PEER = ("127.0.0.1", 50000)


class FlakySocket:
    """Socket double whose reads come from a script."""
    
    def __init__(self, script):
        self.script = list(script)
        self.closed = False
        self.timeouts = []
        self.fail_settimeout = False
    
    def settimeout(self, value):
        self.timeouts.append(value)
        if self.fail_settimeout:
            raise OSError(9, "Bad file descriptor")
    
    def recv(self, size):
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item
    
    def close(self):
        self.closed = True


@pytest.fixture
def coordinator() -> ShutdownCoordinator:
    return ShutdownCoordinator()


@pytest.fixture
def pair():
    server_side, client_side = socket.socketpair()
    yield server_side, client_side
    server_side.close()
    client_side.close()


def make_session(sock, recorder, coordinator, read_timeout=0.3, buffer_size=4096):
    return ConnectionSession(
        sock,
        PEER,
        record_logger=recorder,
        registration=coordinator.register(),
        read_timeout=read_timeout,
        buffer_size=buffer_size,
    )


def run_in_thread(session) -> threading.Thread:
    thread = threading.Thread(target=session.run, daemon=True)
    thread.start()
    return thread


class TestFormatAddress:
    """Tests for peer address rendering."""
    
    def test_ipv4(self):
        assert format_address(("192.0.2.1", 443)) == "192.0.2.1:443"
    
    def test_ipv6(self):
        assert format_address(("::1", 443, 0, 0)) == "[::1]:443"
    
    def test_unnamed(self):
        assert format_address("") == "-"


class TestReadLoop:
    """Tests for what gets recorded."""
    
    def test_each_read_recorded_in_order(self, pair, recorder, coordinator):
        """Test N reads produce N records with exactly the bytes read."""
        server_side, client_side = pair
        session = make_session(server_side, recorder, coordinator)
        thread = run_in_thread(session)
        
        chunks = [b"\x16\x03\x01", b"\x02\x00", b"\x01" * 100]
        for i, chunk in enumerate(chunks, start=1):
            client_side.sendall(chunk)
            assert recorder.wait_for(i)
        
        client_side.shutdown(socket.SHUT_WR)
        thread.join(timeout=5.0)
        
        assert recorder.payloads == chunks
        assert all(addr == "127.0.0.1:50000" for addr, _ in recorder.records)
        assert session.reads == 3
        assert session.bytes_received == 105
    
    def test_never_records_more_than_buffer_size(self, pair, recorder, coordinator):
        server_side, client_side = pair
        session = make_session(server_side, recorder, coordinator, buffer_size=4)
        
        client_side.sendall(b"ABCDEFGHIJ")
        client_side.shutdown(socket.SHUT_WR)
        session.run()
        
        assert b"".join(recorder.payloads) == b"ABCDEFGHIJ"
        assert all(len(payload) <= 4 for payload in recorder.payloads)
    
    def test_deadline_rearmed_before_each_read(self, recorder, coordinator):
        sock = FlakySocket([b"A", b"B", b""])
        session = make_session(sock, recorder, coordinator, read_timeout=7.0)
        
        session.run()
        
        assert sock.timeouts == [7.0, 7.0, 7.0]
        assert recorder.payloads == [b"A", b"B"]


class TestTermination:
    """Tests for the three terminal causes and cleanup."""
    
    def test_peer_close(self, pair, recorder, coordinator, caplog):
        """Test scenario: send X, send Y, close from the peer side."""
        caplog.set_level(logging.INFO, logger="hellocapture")
        server_side, client_side = pair
        session = make_session(server_side, recorder, coordinator)
        thread = run_in_thread(session)
        
        client_side.sendall(b"X")
        assert recorder.wait_for(1)
        client_side.sendall(b"Y")
        assert recorder.wait_for(2)
        client_side.close()
        thread.join(timeout=5.0)
        
        assert recorder.payloads == [b"X", b"Y"]
        assert session.outcome == SessionState.PEER_CLOSED
        assert session.state == SessionState.TERMINATED
        assert server_side.fileno() == -1
        assert "Connection closed by client (EOF)" in caplog.text
    
    def test_idle_timeout(self, pair, recorder, coordinator, caplog):
        """Test scenario: send AB, then go quiet past the idle timeout."""
        caplog.set_level(logging.INFO, logger="hellocapture")
        server_side, client_side = pair
        session = make_session(server_side, recorder, coordinator, read_timeout=0.2)
        thread = run_in_thread(session)
        
        client_side.sendall(b"AB")
        thread.join(timeout=5.0)
        
        assert not thread.is_alive()
        assert recorder.payloads == [b"AB"]
        assert session.outcome == SessionState.TIMED_OUT
        assert session.is_closed
        assert server_side.fileno() == -1
        assert "Read timeout" in caplog.text
    
    def test_timeout_is_idle_not_total(self, pair, recorder, coordinator):
        """Test that steady traffic outlives a single timeout window."""
        server_side, client_side = pair
        session = make_session(server_side, recorder, coordinator, read_timeout=0.3)
        thread = run_in_thread(session)
        
        for i in range(5):
            client_side.sendall(b"Z")
            assert recorder.wait_for(i + 1)
            time.sleep(0.1)
        
        assert thread.is_alive()
        client_side.close()
        thread.join(timeout=5.0)
        assert session.outcome == SessionState.PEER_CLOSED
        assert session.reads == 5
    
    def test_read_error(self, recorder, coordinator, caplog):
        caplog.set_level(logging.INFO, logger="hellocapture")
        sock = FlakySocket([b"hi", ConnectionResetError("reset by peer")])
        session = make_session(sock, recorder, coordinator)
        
        session.run()
        
        assert recorder.payloads == [b"hi"]
        assert session.outcome == SessionState.READ_ERROR
        assert sock.closed
        assert any(
            r.levelno == logging.ERROR and "Error reading from client" in r.getMessage()
            for r in caplog.records
        )
    
    def test_record_logger_failure_ends_session_only(self, coordinator):
        class BrokenLogger:
            def record_capture(self, peer_address, payload):
                raise RuntimeError("disk full")
        
        sock = FlakySocket([b"hi", b"never read"])
        session = make_session(sock, BrokenLogger(), coordinator)
        
        session.run()
        
        assert session.outcome == SessionState.READ_ERROR
        assert sock.closed
        assert coordinator.live_count == 0
    
    def test_registration_released_after_close(self, recorder):
        """Test deregistration happens after the socket is closed."""
        coordinator = ShutdownCoordinator()
        seen = {}
        
        class WatchingSocket(FlakySocket):
            def close(self):
                seen["live_at_close"] = coordinator.live_count
                super().close()
        
        session = make_session(WatchingSocket([b""]), recorder, coordinator)
        assert coordinator.live_count == 1
        
        session.run()
        
        assert seen["live_at_close"] == 1
        assert coordinator.live_count == 0
    
    def test_close_is_idempotent(self, recorder, coordinator):
        sock = FlakySocket([b""])
        session = make_session(sock, recorder, coordinator)
        
        session.run()
        session.close()
        
        assert session.state == SessionState.TERMINATED
    
    def test_deadline_failure_is_read_error(self, recorder, coordinator, caplog):
        """Test that a deadline that cannot be armed ends the session before any read."""
        sock = FlakySocket([b"never read"])
        sock.fail_settimeout = True
        session = make_session(sock, recorder, coordinator)
        
        session.run()
        
        assert session.outcome == SessionState.READ_ERROR
        assert session.state == SessionState.TERMINATED
        assert recorder.records == []
        assert sock.script == [b"never read"]
        assert sock.closed
        assert coordinator.live_count == 0
        assert "Error setting read deadline" in caplog.text
