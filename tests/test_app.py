import pytest

from sipphone.app import AppState, Application, main
from sipphone.config import AppConfig

REGISTER_OK = b"SIP/2.0 200 OK\r\nCSeq: 1 REGISTER\r\nContent-Length: 0\r\n\r\n"
REGISTER_DENIED = b"SIP/2.0 401 Unauthorized\r\nCSeq: 2 REGISTER\r\nContent-Length: 0\r\n\r\n"


@pytest.fixture
def app():
    application = Application(AppConfig(sip_local_port=0, rtp_local_port_base=0), "127.0.0.1")
    yield application
    if application.sip_client is not None:
        application.sip_client.close()
    if application.audio_pipeline is not None:
        application.audio_pipeline.close()


def test_initial_state_is_init(app):
    assert app.state == AppState.INIT


def test_first_step_waits_for_network(app):
    assert app.step() == AppState.WIFI_CONNECTING
    assert app.state == AppState.WIFI_CONNECTING


def test_network_starts_registration(app):
    app.on_wifi_connected()
    assert app.step() == AppState.SIP_REGISTERING


def test_registration_makes_idle(app):
    app.on_wifi_connected()
    app.step()
    app.on_sip_registered()
    assert app.step() == AppState.IDLE
    assert app.step() == AppState.IDLE


def test_registered_signal_alone_reaches_idle(app):
    app.on_sip_registered()
    assert app.step() == AppState.IDLE


def test_registrar_response_drives_state(app):
    app.sip_client.handle_datagram(REGISTER_OK, ("127.0.0.1", 5060))
    assert app.sip_client.is_registered
    assert app.step() == AppState.IDLE


def test_rejected_registration_clears_signal(app):
    app.sip_client.handle_datagram(REGISTER_OK, ("127.0.0.1", 5060))
    app.sip_client.handle_datagram(REGISTER_DENIED, ("127.0.0.1", 5060))
    assert app.sip_client.is_registered is False
    assert app.step() == AppState.WIFI_CONNECTING


def test_components_are_linked(app):
    assert app.sip_client.audio is app.audio_pipeline
    app.audio_pipeline.start(0)
    assert app.audio_pipeline.is_running
    app.audio_pipeline.stop()
    assert app.audio_pipeline.is_running is False


def test_main_runs_for_duration():
    argv = [
        "--server", "127.0.0.1",
        "--local-ip", "127.0.0.1",
        "--sip-port", "0",
        "--rtp-port", "0",
        "--duration", "0",
    ]
    assert main(argv) == 0


def test_main_rejects_odd_rtp_port():
    with pytest.raises(SystemExit) as info:
        main(["--rtp-port", "1", "--local-ip", "127.0.0.1"])
    assert info.value.code == 2