"""Generation and parsing of the minimal SDP used for audio calls."""

from __future__ import annotations

import ipaddress
import logging
import secrets
from typing import Optional, Tuple

log = logging.getLogger(__name__)


class SdpError(ValueError):
    """Raised when an SDP body lacks usable connection or media information."""


def generate_sdp(
    user: str,
    local_ip: str,
    rtp_port: int,
    payload_type: int = 0,
    sample_rate: int = 8000,
    frame_ms: int = 20,
    session_id: Optional[int] = None,
    session_version: Optional[int] = None,
) -> str:
    """Build an SDP offer/answer for one PCMU audio stream."""
    if session_id is None:
        session_id = secrets.randbits(32)
    if session_version is None:
        session_version = secrets.randbits(32)
    lines = [
        "v=0",
        f"o={user} {session_id} {session_version} IN IP4 {local_ip}",
        "s=SIP Call",
        f"c=IN IP4 {local_ip}",
        "t=0 0",
        f"m=audio {rtp_port} RTP/AVP {payload_type}",
        f"a=rtpmap:{payload_type} PCMU/{sample_rate}",
        f"a=ptime:{frame_ms}",
        "a=sendrecv",
    ]
    return "".join(line + "\r\n" for line in lines)


def _find_line(body: str, prefix: str) -> Optional[str]:
    return next(
        (line.strip() for line in body.splitlines() if line.startswith(prefix)),
        None,
    )


def parse_sdp(body: str, expected_payload_type: int = 0) -> Tuple[str, int]:
    """Return the remote ``(ip, port)`` for audio described by ``body``."""
    if not body:
        raise SdpError("empty SDP body")

    c_line = _find_line(body, "c=")
    if c_line is None:
        raise SdpError("SDP 'c=' line not found")
    fields = c_line[2:].split()
    if len(fields) < 3 or fields[0] != "IN" or fields[1] != "IP4":
        raise SdpError(f"could not parse IP from SDP c-line: {c_line}")
    try:
        remote_ip = str(ipaddress.IPv4Address(fields[2]))
    except ValueError as exc:
        raise SdpError(f"invalid IP address in SDP c-line: {fields[2]}") from exc

    m_line = _find_line(body, "m=audio")
    if m_line is None:
        raise SdpError("SDP 'm=audio' line not found")
    tokens = m_line.split()
    if len(tokens) < 2 or tokens[0] != "m=audio" or not tokens[1].isdigit():
        raise SdpError(f"could not parse port from SDP m-line: {m_line}")
    port = int(tokens[1])
    if port > 0xFFFF:
        raise SdpError(f"port out of range in SDP m-line: {port}")

    payload_type = 0
    if len(tokens) >= 4 and tokens[2] == "RTP/AVP" and tokens[3].isdigit():
        payload_type = int(tokens[3])
    if payload_type != expected_payload_type:
        raise SdpError(f"unsupported payload type {payload_type} in SDP")
    if port == 0:
        raise SdpError("SDP media port is zero")

    log.info("SDP parsed remote %s:%d, payload type %d", remote_ip, port, payload_type)
    return remote_ip, port