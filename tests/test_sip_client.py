import socket

import pytest

from sipphone.config import AppConfig
from sipphone.sdp import generate_sdp
from sipphone.sip_client import CallState, SipCallbacks, SipClient, SipClientError
from sipphone.sip_messages import parse_message


class FakeAudio:
    def __init__(self):
        self.events = []

    def start(self, port):
        self.events.append(("start", port))

    def stop(self):
        self.events.append(("stop",))


def _udp():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(2.0)
    return sock


def _recv(sock):
    data, addr = sock.recvfrom(4096)
    return parse_message(data)


@pytest.fixture
def server():
    sock = _udp()
    yield sock
    sock.close()


@pytest.fixture
def peer():
    sock = _udp()
    yield sock
    sock.close()


@pytest.fixture
def events():
    return []


@pytest.fixture
def audio():
    return FakeAudio()


@pytest.fixture
def client(server, audio, events):
    callbacks = SipCallbacks(
        on_incoming_call=lambda uri, cid: events.append(("incoming", uri, cid)),
        on_call_answered=lambda cid: events.append(("answered", cid)),
        on_call_ended=lambda cid: events.append(("ended", cid)),
        on_registration_status=lambda ok: events.append(("registered", ok)),
    )
    config = AppConfig(sip_local_port=0)
    with SipClient(config, "127.0.0.1", audio, callbacks, server.getsockname()) as sip:
        yield sip


def _response(status, reason, method, cseq=1, call_id="reg", to="<sip:1000@x>", contact=None, body=""):
    lines = [
        f"SIP/2.0 {status} {reason}",
        "Via: SIP/2.0/UDP 127.0.0.1:5060;branch=z9hG4bKabc",
        "From: <sip:1000@x>;tag=1",
        f"To: {to}",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} {method}",
    ]
    if contact:
        lines.append(f"Contact: {contact}")
    return ("\r\n".join(lines) + "\r\n\r\n" + body).encode()


def _request(method, call_id="call-1", body=None, cseq=1):
    lines = [
        f"{method} sip:1000@127.0.0.1 SIP/2.0",
        "Via: SIP/2.0/UDP 10.0.0.5:5060;branch=z9hG4bKpeer",
        "From: \"Peer\" <sip:2000@example.com>;tag=peertag",
        "To: <sip:1000@127.0.0.1>",
        f"Call-ID: {call_id}",
        f"CSeq: {cseq} {method}",
        "Contact: <sip:2000@10.0.0.5:5060>",
    ]
    text = "\r\n".join(lines) + "\r\n"
    if body is not None:
        text += "\r\n" + body
    return text.encode()


def _register(client):
    client.handle_datagram(_response(200, "OK", "REGISTER"), ("127.0.0.1", 5060))


def test_initial_state(client):
    assert client.call_state is CallState.IDLE
    assert client.is_registered is False
    assert client.local_rtp_port == 16384
    with pytest.raises(SipClientError):
        client.remote_rtp_info()


def test_send_register_increments_cseq(client, server):
    client.send_register(True)
    first = _recv(server)
    client.send_register(False)
    second = _recv(server)
    assert first.method == "REGISTER"
    assert first.request_uri == "sip:192.168.1.100"
    assert first.cseq() == (1, "REGISTER")
    assert second.cseq() == (2, "REGISTER")
    assert first.header("Expires") == "3600"
    assert first.header("Contact") == f"<sip:1000@127.0.0.1:{client.local_sip_port}>"


def test_registration_status_changes(client, events):
    _register(client)
    assert client.is_registered is True
    client.handle_datagram(_response(401, "Unauthorized", "REGISTER"), ("127.0.0.1", 5060))
    assert client.is_registered is False
    assert events == [("registered", True), ("registered", False)]


def test_initiate_call_requires_registration(client):
    with pytest.raises(SipClientError):
        client.initiate_call("sip:2000@example.com")
    assert client.call_state is CallState.IDLE


def test_outgoing_call_full_flow(client, server, audio, events):
    _register(client)
    call_id = client.initiate_call("sip:2000@example.com")
    invite = _recv(server)
    assert invite.method == "INVITE"
    assert invite.header("Call-ID") == call_id
    assert client.call_state is CallState.INVITING
    assert "m=audio 16384 RTP/AVP 0" in invite.body

    client.handle_datagram(
        _response(180, "Ringing", "INVITE", invite.cseq()[0], call_id), server.getsockname()
    )
    assert client.call_state is CallState.RINGING

    sdp = generate_sdp("2000", "10.0.0.5", 4000)
    client.handle_datagram(
        _response(
            200, "OK", "INVITE", invite.cseq()[0], call_id,
            to="<sip:2000@example.com>;tag=abc",
            contact="<sip:2000@10.0.0.5:5060>", body=sdp,
        ),
        server.getsockname(),
    )
    ack = _recv(server)
    assert ack.method == "ACK"
    assert ack.request_uri == "sip:2000@10.0.0.5:5060"
    assert ack.cseq() == (invite.cseq()[0], "ACK")
    assert ack.header("To").endswith(";tag=abc")
    assert client.call_state is CallState.ACTIVE
    assert client.remote_rtp_info() == ("10.0.0.5", 4000)
    assert audio.events == [("start", 16384)]

    client.terminate_call()
    bye = _recv(server)
    assert bye.method == "BYE"
    assert bye.header("Call-ID") == call_id
    assert bye.header("To") == "<sip:2000@example.com>;tag=abc"
    assert client.call_state is CallState.IDLE
    assert audio.events[-1] == ("stop",)
    assert events[-2:] == [("answered", call_id), ("ended", call_id)]


def test_rejected_invite_returns_to_idle(client, server, events):
    _register(client)
    call_id = client.initiate_call("sip:2000@example.com")
    invite = _recv(server)
    client.handle_datagram(
        _response(486, "Busy Here", "INVITE", invite.cseq()[0], call_id, to="<sip:2000@x>;tag=t"),
        server.getsockname(),
    )
    ack = _recv(server)
    assert ack.method == "ACK"
    assert ack.cseq() == (invite.cseq()[0], "ACK")
    assert client.call_state is CallState.IDLE
    assert events[-1] == ("ended", call_id)


def test_ok_without_sdp_sends_bye(client, server):
    _register(client)
    call_id = client.initiate_call("sip:2000@example.com")
    invite = _recv(server)
    client.handle_datagram(
        _response(200, "OK", "INVITE", invite.cseq()[0], call_id, to="<sip:2000@x>;tag=t"),
        server.getsockname(),
    )
    assert _recv(server).method == "BYE"
    assert client.call_state is CallState.IDLE


def test_incoming_call_answer_and_remote_bye(client, peer, audio, events):
    addr = peer.getsockname()
    sdp = generate_sdp("2000", "10.0.0.5", 4002)
    client.handle_datagram(_request("INVITE", body=sdp), addr)
    trying = _recv(peer)
    ringing = _recv(peer)
    assert trying.status_code == 100
    assert ringing.status_code == 180
    assert ";tag=" in ringing.header("To")
    assert client.call_state is CallState.INCOMING
    assert events == [("incoming", "sip:2000@example.com", "call-1")]

    client.answer_call()
    ok = _recv(peer)
    assert ok.status_code == 200
    assert ok.header("Call-ID") == "call-1"
    assert ok.header("To") == ringing.header("To")
    assert "m=audio 16384 RTP/AVP 0" in ok.body
    assert client.call_state is CallState.CONNECTING
    assert client.remote_rtp_info() == ("10.0.0.5", 4002)

    client.handle_datagram(_request("ACK", body=""), addr)
    assert client.call_state is CallState.ACTIVE
    assert audio.events == [("start", 16384)]

    client.handle_datagram(_request("BYE", body="", cseq=2), addr)
    bye_ok = _recv(peer)
    assert bye_ok.status_code == 200
    assert bye_ok.cseq() == (2, "BYE")
    assert client.call_state is CallState.IDLE
    assert audio.events[-1] == ("stop",)
    assert events[-1] == ("ended", "call-1")


def test_invite_while_busy_gets_486(client, peer):
    addr = peer.getsockname()
    sdp = generate_sdp("2000", "10.0.0.5", 4002)
    client.handle_datagram(_request("INVITE", body=sdp), addr)
    _recv(peer)
    _recv(peer)
    client.handle_datagram(_request("INVITE", call_id="call-2", body=sdp), addr)
    assert _recv(peer).status_code == 486
    assert client.call_state is CallState.INCOMING


def test_invite_without_body_gets_400(client, peer):
    client.handle_datagram(_request("INVITE"), peer.getsockname())
    assert _recv(peer).status_code == 400
    assert client.call_state is CallState.IDLE


def test_invite_with_wrong_payload_gets_415(client, peer):
    sdp = generate_sdp("2000", "10.0.0.5", 4002, payload_type=8)
    client.handle_datagram(_request("INVITE", body=sdp), peer.getsockname())
    assert _recv(peer).status_code == 415
    assert client.call_state is CallState.IDLE


def test_cancel_pending_invite(client, peer, events):
    addr = peer.getsockname()
    client.handle_datagram(_request("INVITE", body=generate_sdp("2000", "10.0.0.5", 4002)), addr)
    _recv(peer)
    _recv(peer)
    client.handle_datagram(_request("CANCEL", body=""), addr)
    cancel_ok = _recv(peer)
    terminated = _recv(peer)
    assert cancel_ok.status_code == 200
    assert cancel_ok.cseq() == (1, "CANCEL")
    assert terminated.status_code == 487
    assert terminated.cseq() == (1, "INVITE")
    assert client.call_state is CallState.IDLE
    assert events[-1] == ("ended", "call-1")


@pytest.mark.parametrize(
    "method, status",
    [("OPTIONS", 200), ("BYE", 481), ("CANCEL", 481), ("SUBSCRIBE", 501)],
)
def test_out_of_call_requests(client, peer, method, status):
    client.handle_datagram(_request(method, body=""), peer.getsockname())
    reply = _recv(peer)
    assert reply.status_code == status
    assert reply.header("Call-ID") == "call-1"


def test_options_reply_lists_allowed_methods(client, peer):
    client.handle_datagram(_request("OPTIONS", body=""), peer.getsockname())
    assert _recv(peer).header("Allow") == "INVITE, ACK, CANCEL, OPTIONS, BYE"


def test_terminate_and_answer_without_call_raise(client):
    with pytest.raises(SipClientError):
        client.terminate_call()
    with pytest.raises(SipClientError):
        client.answer_call()


def test_malformed_datagram_is_ignored(client):
    assert client.handle_datagram(b"SIP/2.0 abc\r\n\r\n", ("127.0.0.1", 1)) is None
    assert client.call_state is CallState.IDLE


def test_poll_reads_from_socket(client, server):
    assert client.poll(0.01) is False
    server.sendto(_response(200, "OK", "REGISTER"), ("127.0.0.1", client.local_sip_port))
    assert client.poll(2.0) is True
    assert client.is_registered is True


def test_send_after_close_raises(client):
    client.close()
    with pytest.raises(SipClientError):
        client.send_register(True)
    with pytest.raises(SipClientError):
        client.poll(0.01)