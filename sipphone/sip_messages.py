"""Building and parsing of the SIP messages the phone exchanges."""

from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple, Union

SIP_VERSION = "SIP/2.0"
USER_AGENT = "SIPPhone/1.0"
ALLOWED_METHODS = "INVITE, ACK, CANCEL, OPTIONS, BYE"
MAX_FORWARDS = 70
BRANCH_MAGIC = "z9hG4bK"

REGISTER_LIMIT = 1024
INVITE_LIMIT = 2048
BYE_LIMIT = 1024

_HEADER_END = "\r\n\r\n"


class SipParseError(ValueError):
    """Raised when a SIP message has no usable start line."""


@dataclass(frozen=True)
class SipIdentity:
    """The local user as it appears in From, To and Contact headers."""

    user: str
    domain: str
    display_name: str = ""


def random_hex() -> str:
    """A random 32-bit value in lower-case hexadecimal, without leading zeros."""
    return f"{secrets.randbits(32):x}"


def new_branch() -> str:
    """A fresh Via branch parameter carrying the RFC 3261 magic cookie."""
    return BRANCH_MAGIC + random_hex()


def _split(text: str) -> Tuple[List[str], Optional[str]]:
    head, sep, body = text.partition(_HEADER_END)
    return head.split("\r\n"), (body if sep else None)


def _header_lines(lines: List[str]) -> Iterator[Tuple[str, str]]:
    current: Optional[List[str]] = None
    for line in lines:
        if line[:1] in (" ", "\t") and current is not None:
            current[1] += " " + line.strip()
            continue
        if current is not None:
            yield current[0], current[1]
            current = None
        name, colon, value = line.partition(":")
        if colon and name.strip():
            current = [name.strip(), value.strip()]
    if current is not None:
        yield current[0], current[1]


def parse_header(message: str, name: str) -> Optional[str]:
    """Value of the first header called ``name`` (case-insensitive), or None."""
    lines, _ = _split(message)
    wanted = name.lower()
    for header_name, value in _header_lines(lines[1:]):
        if header_name.lower() == wanted:
            return value
    return None


@dataclass(frozen=True)
class SipMessage:
    """A parsed SIP request or response."""

    start_line: str
    method: Optional[str] = None
    request_uri: Optional[str] = None
    status_code: Optional[int] = None
    reason: str = ""
    headers: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    body: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        """Value of the first header called ``name`` (case-insensitive), or None."""
        wanted = name.lower()
        return next(
            (value for header_name, value in self.headers if header_name.lower() == wanted),
            None,
        )

    def is_response(self) -> bool:
        """Whether this is a response rather than a request."""
        return self.status_code is not None

    def cseq(self) -> Optional[Tuple[int, str]]:
        """The CSeq ``(number, method)``, or None when absent or malformed."""
        value = self.header("CSeq")
        if value is None:
            return None
        tokens = value.split()
        if not tokens or not tokens[0].isdigit():
            return None
        return int(tokens[0]), (tokens[1] if len(tokens) > 1 else "")


def parse_message(text: Union[str, bytes]) -> SipMessage:
    """Parse a SIP message; the body is None when no blank line ends the headers."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    lines, body = _split(text)
    start_line = lines[0]
    headers = tuple(_header_lines(lines[1:]))

    if start_line.startswith(SIP_VERSION):
        parts = start_line.split(None, 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise SipParseError(f"could not parse status code from response: {start_line!r}")
        return SipMessage(
            start_line=start_line,
            status_code=int(parts[1]),
            reason=parts[2] if len(parts) > 2 else "",
            headers=headers,
            body=body,
        )

    parts = start_line.split()
    if not parts:
        raise SipParseError("could not parse method from request")
    return SipMessage(
        start_line=start_line,
        method=parts[0],
        request_uri=parts[1] if len(parts) > 1 else None,
        headers=headers,
        body=body,
    )


def _render(start_line: str, headers: List[str], body: str, limit: int) -> str:
    text = "".join(line + "\r\n" for line in [start_line, *headers]) + "\r\n" + body
    if len(text.encode("utf-8")) >= limit:
        raise ValueError(f"SIP message too large ({len(text)} >= {limit} bytes)")
    return text


def _via(local_ip: str, local_port: int, branch: str) -> str:
    return f"Via: {SIP_VERSION}/UDP {local_ip}:{local_port};branch={branch};rport"


def _local_from(identity: SipIdentity, from_tag: str) -> str:
    return (
        f'From: "{identity.display_name}" '
        f"<sip:{identity.user}@{identity.domain}>;tag={from_tag}"
    )


def build_register(
    identity: SipIdentity,
    local_ip: str,
    local_port: int,
    cseq: int,
    expires: int,
    branch: Optional[str] = None,
    from_tag: Optional[str] = None,
    call_id: Optional[str] = None,
) -> str:
    """A REGISTER request; missing branch, tag and Call-ID are generated."""
    branch = branch if branch is not None else new_branch()
    from_tag = from_tag if from_tag is not None else random_hex()
    call_id = call_id if call_id is not None else f"{random_hex()}-{random_hex()}"
    headers = [
        _via(local_ip, local_port, branch),
        f"Max-Forwards: {MAX_FORWARDS}",
        _local_from(identity, from_tag),
        f'To: "{identity.display_name}" <sip:{identity.user}@{identity.domain}>',
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} REGISTER",
        f"Contact: <sip:{identity.user}@{local_ip}:{local_port}>",
        f"Expires: {expires}",
        f"Allow: {ALLOWED_METHODS}",
        f"User-Agent: {USER_AGENT}",
        "Content-Length: 0",
    ]
    return _render(f"REGISTER sip:{identity.domain} {SIP_VERSION}", headers, "", REGISTER_LIMIT)


def build_invite(
    identity: SipIdentity,
    target_uri: str,
    local_ip: str,
    local_port: int,
    cseq: int,
    branch: str,
    from_tag: str,
    call_id: str,
    sdp: str,
) -> str:
    """An INVITE request carrying ``sdp`` as its body."""
    headers = [
        _via(local_ip, local_port, branch),
        f"Max-Forwards: {MAX_FORWARDS}",
        _local_from(identity, from_tag),
        f"To: <{target_uri}>",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} INVITE",
        f"Contact: <sip:{identity.user}@{local_ip}:{local_port}>",
        f"Allow: {ALLOWED_METHODS}",
        "Content-Type: application/sdp",
        f"User-Agent: {USER_AGENT}",
        f"Content-Length: {len(sdp.encode('utf-8'))}",
    ]
    return _render(f"INVITE {target_uri} {SIP_VERSION}", headers, sdp, INVITE_LIMIT)


def build_bye(
    identity: SipIdentity,
    remote_uri: str,
    local_ip: str,
    local_port: int,
    cseq: int,
    branch: str,
    from_tag: str,
    to_tag: str,
    call_id: str,
) -> str:
    """A BYE request ending the dialog identified by the tags and Call-ID."""
    headers = [
        _via(local_ip, local_port, branch),
        f"Max-Forwards: {MAX_FORWARDS}",
        _local_from(identity, from_tag),
        f"To: <{remote_uri}>;tag={to_tag}",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} BYE",
        f"User-Agent: {USER_AGENT}",
        "Content-Length: 0",
    ]
    return _render(f"BYE {remote_uri} {SIP_VERSION}", headers, "", BYE_LIMIT)