"""RTP packets over UDP with a small reordering jitter buffer."""

from __future__ import annotations

import logging
import secrets
import socket
import struct
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

log = logging.getLogger(__name__)

RTP_VERSION = 2
_HEADER = struct.Struct("!BBHII")
HEADER_SIZE = _HEADER.size

DEFAULT_SAMPLES_PER_FRAME = 160
DEFAULT_MAX_PACKET_SIZE = DEFAULT_SAMPLES_PER_FRAME + HEADER_SIZE
_RX_PACKETS = 5


class RtpError(Exception):
    """Raised when an RTP packet cannot be sent or received."""


@dataclass(frozen=True)
class RtpHeader:
    """Fixed 12-byte RTP header."""

    payload_type: int = 0
    sequence: int = 0
    timestamp: int = 0
    ssrc: int = 0
    marker: bool = False
    version: int = RTP_VERSION
    padding: bool = False
    extension: bool = False
    csrc_count: int = 0

    def pack(self) -> bytes:
        """Serialize to network byte order."""
        first = (
            ((self.version & 0x03) << 6)
            | (int(self.padding) << 5)
            | (int(self.extension) << 4)
            | (self.csrc_count & 0x0F)
        )
        second = (int(self.marker) << 7) | (self.payload_type & 0x7F)
        return _HEADER.pack(
            first,
            second,
            self.sequence & 0xFFFF,
            self.timestamp & 0xFFFFFFFF,
            self.ssrc & 0xFFFFFFFF,
        )

    @classmethod
    def unpack(cls, data: bytes) -> "RtpHeader":
        """Parse the header at the start of ``data``."""
        if len(data) < HEADER_SIZE:
            raise RtpError(f"runt RTP packet ({len(data)} bytes)")
        first, second, sequence, timestamp, ssrc = _HEADER.unpack_from(data)
        return cls(
            payload_type=second & 0x7F,
            sequence=sequence,
            timestamp=timestamp,
            ssrc=ssrc,
            marker=bool(second & 0x80),
            version=first >> 6,
            padding=bool(first & 0x20),
            extension=bool(first & 0x10),
            csrc_count=first & 0x0F,
        )


def _seq_after(seq: int, reference: int) -> bool:
    return 0 < ((seq - reference) & 0xFFFF) < 0x8000


Packet = Tuple[RtpHeader, bytes, Tuple[str, int]]


class RtpSession:
    """One UDP socket carrying an RTP stream, with a random SSRC."""

    JITTER_CAPACITY = 16

    def __init__(
        self,
        local_port: int = 0,
        samples_per_frame: int = DEFAULT_SAMPLES_PER_FRAME,
        max_packet_size: int = DEFAULT_MAX_PACKET_SIZE,
        host: str = "0.0.0.0",
    ) -> None:
        self.samples_per_frame = samples_per_frame
        self.max_packet_size = max_packet_size
        self.ssrc = secrets.randbits(32)
        self.sequence_number = secrets.randbits(16)
        self.timestamp_offset = secrets.randbits(32)

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.bind((host, local_port))
        except OSError as exc:
            sock.close()
            raise RtpError(f"RTP socket bind failed for port {local_port}: {exc}") from exc
        sock.setblocking(False)
        self._socket: Optional[socket.socket] = sock
        self._local_port = sock.getsockname()[1]

        self._lock = threading.Lock()
        self._jitter: Dict[int, Tuple[RtpHeader, bytes]] = {}
        self._last_played: Optional[int] = None
        log.info("RTP session created, SSRC 0x%08X, port %d", self.ssrc, self._local_port)

    @property
    def local_port(self) -> int:
        """Port the session is bound to."""
        return self._local_port

    def close(self) -> None:
        """Close the socket and drop buffered packets."""
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        with self._lock:
            self._jitter.clear()
            self._last_played = None

    def __enter__(self) -> "RtpSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_socket(self) -> socket.socket:
        if self._socket is None:
            raise RtpError("RTP session is closed")
        return self._socket

    def send_packet(
        self,
        remote_ip: str,
        remote_port: int,
        payload_type: int,
        timestamp: int,
        payload: bytes,
    ) -> RtpHeader:
        """Send one packet; ``timestamp`` is relative to the session offset."""
        sock = self._require_socket()
        if not remote_ip or remote_port == 0 or not payload:
            raise RtpError("invalid destination or empty payload")
        size = HEADER_SIZE + len(payload)
        if size > self.max_packet_size:
            raise RtpError(f"payload too large for RTP buffer ({size} > {self.max_packet_size})")

        header = RtpHeader(
            payload_type=payload_type & 0x7F,
            sequence=self.sequence_number,
            timestamp=(self.timestamp_offset + timestamp) & 0xFFFFFFFF,
            ssrc=self.ssrc,
        )
        self.sequence_number = (self.sequence_number + 1) & 0xFFFF
        try:
            sent = sock.sendto(header.pack() + bytes(payload), (remote_ip, remote_port))
        except OSError as exc:
            raise RtpError(f"sendto RTP failed: {exc}") from exc
        if sent != size:
            raise RtpError(f"partial RTP packet sent ({sent} / {size})")
        return header

    def receive_packet(self, bufsize: Optional[int] = None) -> Optional[Packet]:
        """Return ``(header, payload, (ip, port))`` or None when nothing is waiting."""
        sock = self._require_socket()
        size = self.max_packet_size * _RX_PACKETS if bufsize is None else bufsize
        if size < HEADER_SIZE:
            raise RtpError("receive buffer smaller than an RTP header")
        try:
            data, address = sock.recvfrom(size)
        except BlockingIOError:
            return None
        except OSError as exc:
            raise RtpError(f"recvfrom RTP failed: {exc}") from exc

        header = RtpHeader.unpack(data)
        if header.version != RTP_VERSION:
            raise RtpError(f"invalid RTP version: {header.version}")
        return header, data[HEADER_SIZE:], (address[0], address[1])

    def _earliest(self) -> int:
        anchor = (next(iter(self._jitter)) + 0x8000) & 0xFFFF
        return min(self._jitter, key=lambda seq: (seq - anchor) & 0xFFFF)

    def jitter_put(self, header: RtpHeader, payload: bytes) -> bool:
        """Buffer a received packet; late packets are dropped. Returns whether kept."""
        with self._lock:
            if self._last_played is not None and not _seq_after(
                header.sequence, self._last_played
            ):
                log.debug("dropping late RTP packet seq %d", header.sequence)
                return False
            self._jitter[header.sequence] = (header, bytes(payload))
            while len(self._jitter) > self.JITTER_CAPACITY:
                del self._jitter[self._earliest()]
            return True

    def jitter_get(self, header: Optional[RtpHeader] = None) -> Tuple[RtpHeader, bytes]:
        """Next packet in sequence order, or a silent frame following ``header``."""
        with self._lock:
            if self._jitter:
                seq = self._earliest()
                played = self._jitter.pop(seq)
                self._last_played = seq
                return played
        previous = header if header is not None else RtpHeader()
        silent = replace(
            previous,
            sequence=(previous.sequence + 1) & 0xFFFF,
            timestamp=(previous.timestamp + self.samples_per_frame) & 0xFFFFFFFF,
        )
        return silent, bytes(self.samples_per_frame)