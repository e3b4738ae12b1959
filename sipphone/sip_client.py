"""SIP user agent: registration, outgoing and incoming calls over UDP."""

from __future__ import annotations

import logging
import select
import socket
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, List, Optional, Tuple

from .config import AppConfig
from .sdp import SdpError, generate_sdp, parse_sdp
from .sip_messages import (
    ALLOWED_METHODS,
    MAX_FORWARDS,
    SIP_VERSION,
    USER_AGENT,
    SipIdentity,
    SipMessage,
    SipParseError,
    build_bye,
    build_invite,
    build_register,
    new_branch,
    parse_message,
    random_hex,
)

log = logging.getLogger(__name__)

Address = Tuple[str, int]

RECEIVE_SIZE = 2047
RESPONSE_LIMIT = 2048
REREGISTER_FRACTION = 0.9


class CallState(IntEnum):
    """Call states, ordered as a call progresses."""

    IDLE = 0
    INVITING = 1
    INCOMING = 2
    RINGING = 3
    CONNECTING = 4
    ACTIVE = 5
    TERMINATING = 6
    ENDED = 7


@dataclass
class SipCallbacks:
    """Optional notifications for the application layer."""

    on_incoming_call: Optional[Callable[[str, str], None]] = None
    on_call_answered: Optional[Callable[[str], None]] = None
    on_call_ended: Optional[Callable[[str], None]] = None
    on_registration_status: Optional[Callable[[bool], None]] = None


class SipClientError(Exception):
    """Raised when the client cannot perform a requested operation."""


def _tag(value: Optional[str]) -> str:
    if not value:
        return ""
    _, found, rest = value.partition(";tag=")
    return rest.split(";", 1)[0].strip() if found else ""


def _uri(value: Optional[str]) -> str:
    if not value:
        return ""
    if "<" in value:
        return value.split("<", 1)[1].split(">", 1)[0].strip()
    return value.split(";", 1)[0].strip()


class SipClient:
    """A single-line SIP phone speaking UDP to one registrar/proxy."""

    def __init__(
        self,
        config: AppConfig,
        local_ip: str,
        audio=None,
        callbacks: Optional[SipCallbacks] = None,
        server_address: Optional[Address] = None,
    ) -> None:
        self.config = config
        self.local_ip = local_ip
        self.audio = audio
        self.callbacks = callbacks if callbacks is not None else SipCallbacks()
        self.identity = SipIdentity(
            user=config.sip_user,
            domain=config.sip_domain or config.sip_server_ip,
            display_name=config.sip_display_name,
        )
        if server_address is None:
            try:
                host = socket.gethostbyname(config.sip_server_ip)
            except OSError as exc:
                raise SipClientError(
                    f"failed to resolve server address {config.sip_server_ip}: {exc}"
                ) from exc
            server_address = (host, config.sip_server_port)
        self.server_address: Address = server_address
        self.local_sip_port = config.sip_local_port

        self._socket: Optional[socket.socket] = None
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._registered = False
        self._call_state = CallState.IDLE
        self._cseq = 1
        self._reset_dialog()

    # --- state -----------------------------------------------------------

    def _reset_dialog(self) -> None:
        self._call_id = ""
        self._local_tag = ""
        self._remote_tag = ""
        self._remote_uri = ""
        self._remote_target = ""
        self._remote_to_header = ""
        self._invite_cseq = 0
        self._invite_branch = ""
        self._pending_invite: Optional[Tuple[SipMessage, Address]] = None
        self._remote_rtp: Optional[Address] = None

    @property
    def call_state(self) -> CallState:
        """Current call state."""
        return self._call_state

    @property
    def is_registered(self) -> bool:
        """Whether the registrar accepted the last REGISTER."""
        return self._registered

    @property
    def local_rtp_port(self) -> int:
        """Local port offered for RTP media."""
        return self.config.rtp_local_port_base

    def remote_rtp_info(self) -> Address:
        """The peer's RTP ``(ip, port)`` once the call is connecting or active."""
        with self._lock:
            if self._call_state < CallState.CONNECTING or self._remote_rtp is None:
                raise SipClientError("no remote RTP information available")
            return self._remote_rtp

    def register_callbacks(self, callbacks: SipCallbacks) -> None:
        """Replace the application callbacks."""
        self.callbacks = callbacks

    # --- socket lifecycle ------------------------------------------------

    def open(self) -> None:
        """Create and bind the SIP UDP socket."""
        if self._socket is not None:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.bind(("0.0.0.0", self.config.sip_local_port))
        except OSError as exc:
            sock.close()
            raise SipClientError(f"SIP socket bind failed: {exc}") from exc
        self._socket = sock
        self.local_sip_port = sock.getsockname()[1]
        log.info("SIP socket bound to port %d", self.local_sip_port)

    def close(self) -> None:
        """Stop the re-registration timer and close the socket."""
        with self._lock:
            self._cancel_timer()
            if self._socket is not None:
                self._socket.close()
                self._socket = None

    def __enter__(self) -> "SipClient":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _send(self, text: str, address: Address) -> None:
        if self._socket is None:
            raise SipClientError("SIP socket is not open")
        try:
            self._socket.sendto(text.encode("utf-8"), address)
        except OSError as exc:
            raise SipClientError(f"sendto failed: {exc}") from exc

    # --- registration ----------------------------------------------------

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _schedule_reregistration(self) -> None:
        self._cancel_timer()
        delay = self.config.sip_registration_expiry * REREGISTER_FRACTION
        timer = threading.Timer(delay, self._on_registration_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _on_registration_timer(self) -> None:
        log.info("Registration timer expired, sending REGISTER")
        with self._lock:
            self._timer = None
            if self._socket is None:
                return
            try:
                self.send_register(initial=False)
            except SipClientError as exc:
                log.error("Re-registration failed: %s", exc)

    def start_registration(self) -> None:
        """Register now if the socket is open; otherwise ``run`` registers on start."""
        with self._lock:
            if self._socket is None:
                log.info("Registration will be sent once the SIP socket is open")
                return
            self.send_register(initial=True)

    def send_register(self, initial: bool = True) -> str:
        """Send a REGISTER to the server and return its text."""
        with self._lock:
            try:
                text = build_register(
                    self.identity,
                    self.local_ip,
                    self.local_sip_port,
                    self._cseq,
                    self.config.sip_registration_expiry,
                )
            except ValueError as exc:
                raise SipClientError(f"cannot build REGISTER: {exc}") from exc
            log.info("Sending %sREGISTER (CSeq: %d)", "" if initial else "re-", self._cseq)
            self._cseq += 1
            self._send(text, self.server_address)
            return text

    def _set_registered(self, registered: bool) -> None:
        self._registered = registered
        if registered:
            self._schedule_reregistration()
        else:
            self._cancel_timer()
        if self.callbacks.on_registration_status:
            self.callbacks.on_registration_status(registered)

    # --- calls -----------------------------------------------------------

    def _sdp(self) -> str:
        return generate_sdp(
            self.config.sip_user,
            self.local_ip,
            self.local_rtp_port,
            self.config.audio_codec_payload_type,
            self.config.audio_sample_rate,
            self.config.audio_frame_ms,
        )

    def initiate_call(self, target_uri: str) -> str:
        """Send an INVITE to ``target_uri``; returns the new Call-ID."""
        with self._lock:
            if not target_uri or self._call_state != CallState.IDLE or not self._registered:
                raise SipClientError(
                    f"cannot initiate call: state {self._call_state.name}, "
                    f"registered {self._registered}"
                )
            self._reset_dialog()
            self._remote_uri = target_uri
            self._call_state = CallState.INVITING
            self._call_id = f"{random_hex()}-{random_hex()}"
            self._local_tag = random_hex()
            log.info("Initiating call to %s, Call-ID: %s", target_uri, self._call_id)
            self._send_invite(target_uri)
            return self._call_id

    def _send_invite(self, target_uri: str) -> None:
        branch = new_branch()
        try:
            text = build_invite(
                self.identity,
                target_uri,
                self.local_ip,
                self.local_sip_port,
                self._cseq,
                branch,
                self._local_tag,
                self._call_id,
                self._sdp(),
            )
        except ValueError as exc:
            self._call_state = CallState.IDLE
            self._reset_dialog()
            raise SipClientError(f"cannot build INVITE: {exc}") from exc
        self._invite_cseq = self._cseq
        self._invite_branch = branch
        self._cseq += 1
        log.info("Sending INVITE (CSeq: %d)", self._invite_cseq)
        self._send(text, self.server_address)

    def answer_call(self) -> None:
        """Accept the ringing incoming call with 200 OK and our SDP."""
        with self._lock:
            if self._call_state != CallState.INCOMING or self._pending_invite is None:
                raise SipClientError(f"cannot answer call in state {self._call_state.name}")
            log.info("Answering incoming call, Call-ID: %s", self._call_id)
            request, address = self._pending_invite
            self._respond(request, address, 200, "OK", self._local_tag, self._sdp())
            self._call_state = CallState.CONNECTING

    def terminate_call(self) -> None:
        """Hang up the current call, sending BYE where a dialog exists."""
        with self._lock:
            if self._call_state not in (
                CallState.ACTIVE,
                CallState.CONNECTING,
                CallState.RINGING,
                CallState.INCOMING,
                CallState.INVITING,
            ):
                raise SipClientError(f"no call to terminate in state {self._call_state.name}")
            log.info("Terminating call %s in state %s", self._call_id, self._call_state.name)
            self._send_bye()
            self._call_state = CallState.TERMINATING
            self._stop_audio()
            self._end_call()

    def _send_bye(self) -> Optional[str]:
        if self._call_state < CallState.CONNECTING:
            return None
        try:
            text = build_bye(
                self.identity,
                self._remote_uri,
                self.local_ip,
                self.local_sip_port,
                self._cseq,
                new_branch(),
                self._local_tag,
                self._remote_tag,
                self._call_id,
            )
        except ValueError as exc:
            raise SipClientError(f"cannot build BYE: {exc}") from exc
        log.info("Sending BYE (CSeq: %d)", self._cseq)
        self._cseq += 1
        self._send(text, self.server_address)
        return text

    def _send_ack(self, success: bool) -> None:
        request_uri = self._remote_target or self._remote_uri
        branch = new_branch() if success else self._invite_branch
        to_header = self._remote_to_header or f"<{self._remote_uri}>"
        lines = [
            f"ACK {request_uri} {SIP_VERSION}",
            f"Via: {SIP_VERSION}/UDP {self.local_ip}:{self.local_sip_port};branch={branch};rport",
            f"Max-Forwards: {MAX_FORWARDS}",
            f'From: "{self.identity.display_name}" '
            f"<sip:{self.identity.user}@{self.identity.domain}>;tag={self._local_tag}",
            f"To: {to_header}",
            f"Call-ID: {self._call_id}",
            f"CSeq: {self._invite_cseq} ACK",
            f"User-Agent: {USER_AGENT}",
            "Content-Length: 0",
        ]
        self._send("".join(line + "\r\n" for line in lines) + "\r\n", self.server_address)

    def _respond(
        self,
        request: SipMessage,
        address: Address,
        status: int,
        reason: str,
        to_tag: Optional[str] = None,
        sdp: Optional[str] = None,
    ) -> str:
        lines: List[str] = [f"{SIP_VERSION} {status} {reason}"]
        lines += [f"Via: {value}" for name, value in request.headers if name.lower() == "via"]
        to_value = request.header("To") or ""
        if to_tag and ";tag=" not in to_value:
            to_value = f"{to_value};tag={to_tag}"
        for name, value in (
            ("From", request.header("From") or ""),
            ("To", to_value),
            ("Call-ID", request.header("Call-ID") or ""),
            ("CSeq", request.header("CSeq") or ""),
        ):
            lines.append(f"{name}: {value}")
        lines.append(f"Contact: <sip:{self.identity.user}@{self.local_ip}:{self.local_sip_port}>")
        lines.append(f"Allow: {ALLOWED_METHODS}")
        lines.append(f"User-Agent: {USER_AGENT}")
        body = sdp or ""
        if body:
            lines.append("Content-Type: application/sdp")
        lines.append(f"Content-Length: {len(body.encode('utf-8'))}")
        text = "".join(line + "\r\n" for line in lines) + "\r\n" + body
        if len(text.encode("utf-8")) >= RESPONSE_LIMIT:
            raise SipClientError(f"SIP response too large ({len(text)} bytes)")
        log.info("Sending %d %s", status, reason)
        self._send(text, address)
        return text

    def _start_audio(self) -> None:
        if self.audio is None:
            return
        try:
            self.audio.start(self.local_rtp_port)
        except Exception as exc:  # media failure must not break signalling
            log.error("Failed to start audio: %s", exc)

    def _stop_audio(self) -> None:
        if self.audio is None:
            return
        try:
            self.audio.stop()
        except Exception as exc:  # media failure must not break signalling
            log.warning("Failed to stop audio: %s", exc)

    def _end_call(self) -> None:
        call_id = self._call_id
        self._call_state = CallState.IDLE
        self._reset_dialog()
        if self.callbacks.on_call_ended:
            self.callbacks.on_call_ended(call_id)

    # --- incoming traffic ------------------------------------------------

    def handle_datagram(self, data, remote_addr: Address) -> Optional[SipMessage]:
        """Process one received SIP message; returns it, or None if unparsable."""
        try:
            message = parse_message(data)
        except SipParseError as exc:
            log.warning("Ignoring malformed SIP message: %s", exc)
            return None
        with self._lock:
            if message.is_response():
                self._handle_response(message)
            else:
                self._handle_request(message, remote_addr)
        return message

    def _handle_response(self, message: SipMessage) -> None:
        status = message.status_code or 0
        cseq = message.cseq()
        method = cseq[1].upper() if cseq else ""

        if method == "REGISTER":
            if status == 200:
                log.info("Registration successful")
                self._set_registered(True)
            else:
                log.warning("Registration failed with status %d", status)
                self._set_registered(False)
        elif method == "INVITE":
            if self._call_state not in (CallState.INVITING, CallState.RINGING):
                return
            if message.header("Call-ID") != self._call_id:
                return
            self._handle_invite_response(message, status)
        elif method == "BYE":
            if status != 200:
                log.warning("Non-200 response (%d) for BYE", status)
            self._call_state = CallState.IDLE
            self._call_id = ""

    def _handle_invite_response(self, message: SipMessage, status: int) -> None:
        to_header = message.header("To") or ""
        if 100 <= status < 200:
            self._remote_tag = _tag(to_header) or self._remote_tag
            if status == 180:
                self._call_state = CallState.RINGING
            return
        self._remote_to_header = to_header
        self._remote_tag = _tag(to_header)
        if status == 200:
            self._call_state = CallState.CONNECTING
            self._remote_target = _uri(message.header("Contact"))
            try:
                self._remote_rtp = parse_sdp(
                    message.body or "", self.config.audio_codec_payload_type
                )
            except SdpError as exc:
                log.error("Bad SDP in 200 OK (%s); terminating call", exc)
                self._send_bye()
                self._call_state = CallState.IDLE
                self._reset_dialog()
                return
            self._send_ack(success=True)
            self._call_state = CallState.ACTIVE
            self._start_audio()
            if self.callbacks.on_call_answered:
                self.callbacks.on_call_answered(self._call_id)
            return
        log.warning("INVITE rejected with status %d", status)
        self._call_state = CallState.ENDED
        self._send_ack(success=False)
        self._end_call()

    def _handle_request(self, message: SipMessage, address: Address) -> None:
        method = message.method or ""
        if method == "INVITE":
            self._handle_invite(message, address)
        elif method == "ACK":
            if self._call_state == CallState.CONNECTING:
                self._call_state = CallState.ACTIVE
                self._start_audio()
                if self.callbacks.on_call_answered:
                    self.callbacks.on_call_answered(self._call_id)
            else:
                log.warning("Unexpected ACK in state %s", self._call_state.name)
        elif method == "BYE":
            if CallState.CONNECTING <= self._call_state <= CallState.ACTIVE:
                self._call_state = CallState.TERMINATING
                self._stop_audio()
                self._respond(message, address, 200, "OK")
                self._end_call()
            else:
                self._respond(message, address, 481, "Call/Transaction Does Not Exist")
        elif method == "CANCEL":
            if self._call_state in (CallState.INCOMING, CallState.RINGING):
                self._respond(message, address, 200, "OK")
                if self._pending_invite is not None:
                    invite, invite_addr = self._pending_invite
                    self._respond(invite, invite_addr, 487, "Request Terminated", self._local_tag)
                self._end_call()
            else:
                self._respond(message, address, 481, "Call/Transaction Does Not Exist")
        elif method == "OPTIONS":
            self._respond(message, address, 200, "OK")
        else:
            log.warning("Unsupported SIP method %s", method)
            self._respond(message, address, 501, "Not Implemented")

    def _handle_invite(self, message: SipMessage, address: Address) -> None:
        if self._call_state != CallState.IDLE:
            self._respond(message, address, 486, "Busy Here")
            return
        if message.body is None:
            self._respond(message, address, 400, "Bad Request")
            return
        try:
            remote_rtp = parse_sdp(message.body, self.config.audio_codec_payload_type)
        except SdpError as exc:
            log.error("Bad SDP in INVITE: %s", exc)
            self._respond(message, address, 415, "Unsupported Media Type")
            return

        self._reset_dialog()
        from_header = message.header("From") or ""
        self._call_id = message.header("Call-ID") or ""
        self._remote_uri = _uri(from_header)
        self._remote_tag = _tag(from_header)
        self._remote_target = _uri(message.header("Contact")) or self._remote_uri
        self._local_tag = random_hex()
        self._remote_rtp = remote_rtp
        self._pending_invite = (message, address)
        self._call_state = CallState.INCOMING
        log.info("Incoming INVITE from %s, Call-ID: %s", from_header, self._call_id)

        self._respond(message, address, 100, "Trying")
        self._respond(message, address, 180, "Ringing", self._local_tag)
        if self.callbacks.on_incoming_call:
            self.callbacks.on_incoming_call(self._remote_uri, self._call_id)

    # --- event loop ------------------------------------------------------

    def poll(self, timeout: float = 1.0) -> bool:
        """Wait up to ``timeout`` seconds for one datagram and handle it."""
        if self._socket is None:
            raise SipClientError("SIP socket is not open")
        readable, _, _ = select.select([self._socket], [], [], timeout)
        if not readable:
            return False
        try:
            data, address = self._socket.recvfrom(RECEIVE_SIZE)
        except OSError as exc:
            log.error("recvfrom failed: %s", exc)
            return False
        if not data:
            return False
        self.handle_datagram(data, (address[0], address[1]))
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Open the socket, register, and process traffic until ``stop_event`` is set."""
        if self._socket is None:
            self.open()
        try:
            self.send_register(initial=True)
            while not stop_event.is_set():
                self.poll(1.0)
        finally:
            self.close()