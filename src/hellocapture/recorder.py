"""
=============================================================================
CAPTURE RECORD LOGGING
=============================================================================

Every successful read on a connection produces exactly one capture record.
The session does not care where records go; it only calls:

    record_logger.record_capture(peer_address, payload)

The default implementation writes each record to the standard logging
system, so routing records to a file, syslog or a log shipper is a matter
of logging configuration.

=============================================================================
WHAT IS RECORDED
=============================================================================

The listener is meant to sit where TLS clients connect, so records are
labelled as ClientHello records. The bytes are NOT parsed or validated:
whatever the peer sends is recorded verbatim, hex encoded.

    Received TLS ClientHello record remote_addr=203.0.113.7:51234
        raw_data_len=5 data_hex=1603010200

=============================================================================
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


# Records get their own logger so they can be routed apart from
# lifecycle messages:
#   logging.getLogger("hellocapture.records").addHandler(file_handler)
logger = logging.getLogger("hellocapture.records")


class RecordLogger(ABC):
    """
    Consumer of captured payloads.

    Implementations are called inline from the session's read loop, so
    record_capture() must return promptly.
    """

    @abstractmethod
    def record_capture(self, peer_address: str, payload: bytes) -> None:
        """
        Record one successful read.

        Args:
            peer_address: The peer as "ip:port".
            payload: Exactly the bytes returned by the read.
        """
        pass


@dataclass
class CaptureRecord:
    """One captured read, ready for serialization."""

    remote_addr: str
    data_hex: str
    raw_data_len: int
    timestamp: str

    @classmethod
    def from_payload(cls, peer_address: str, payload: bytes) -> "CaptureRecord":
        return cls(
            remote_addr=peer_address,
            data_hex=payload.hex(),
            raw_data_len=len(payload),
            timestamp=time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "msg": HandshakeRecordLogger.MESSAGE,
            "remote_addr": self.remote_addr,
            "data_hex": self.data_hex,
            "raw_data_len": self.raw_data_len,
            "timestamp": self.timestamp,
        }

    def to_text(self) -> str:
        """Format as key=value pairs for human reading."""
        return (
            f"{HandshakeRecordLogger.MESSAGE} "
            f"remote_addr={self.remote_addr} "
            f"raw_data_len={self.raw_data_len} "
            f"data_hex={self.data_hex}"
        )


class HandshakeRecordLogger(RecordLogger):
    """
    Default record logger: one log line per captured read.

    Usage:
        # Text format
        HandshakeRecordLogger()

        # JSON format (for ELK, Datadog, etc.)
        HandshakeRecordLogger(log_format="json")
    """

    MESSAGE = "Received TLS ClientHello record"

    def __init__(self, log_format: str = "text"):
        self.log_format = log_format

    def record_capture(self, peer_address: str, payload: bytes) -> None:
        record = CaptureRecord.from_payload(peer_address, payload)

        if self.log_format == "json":
            logger.info(json.dumps(record.to_dict()))
        else:
            logger.info(record.to_text())
