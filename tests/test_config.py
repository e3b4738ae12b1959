import dataclasses

import pytest

from sipphone.config import AppConfig


def test_default_frame_is_160_samples():
    assert AppConfig().samples_per_frame == 160


def test_tx_buffer_holds_header_and_frame():
    config = AppConfig()
    assert config.rtp_tx_buffer_size == config.samples_per_frame + 12


def test_rx_buffer_holds_five_packets():
    config = AppConfig()
    assert config.rtp_rx_buffer_size == config.rtp_tx_buffer_size * 5


def test_domain_defaults_to_server_ip():
    config = AppConfig(sip_server_ip="10.0.0.5")
    assert config.sip_domain == "10.0.0.5"


def test_explicit_domain_is_kept():
    config = AppConfig(sip_server_ip="10.0.0.5", sip_domain="example.com")
    assert config.sip_domain == "example.com"


def test_defaults_from_settings():
    config = AppConfig()
    assert config.sip_server_port == 5060
    assert config.sip_registration_expiry == 3600
    assert config.rtp_local_port_base == 16384
    assert config.audio_codec_payload_type == 0


def test_config_is_frozen():
    config = AppConfig(sip_user="1000")
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.sip_user = "2000"
    assert config.sip_user == "1000"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"rtp_local_port_base": 16385},
        {"sip_local_port": 70000},
        {"sip_server_port": -1},
        {"audio_frame_ms": 0},
        {"audio_sample_rate": -8000},
        {"audio_codec_payload_type": 200},
        {"sip_registration_expiry": -1},
    ],
)
def test_invalid_settings_rejected(kwargs):
    with pytest.raises(ValueError):
        AppConfig(**kwargs)