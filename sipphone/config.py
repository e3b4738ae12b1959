"""Application settings for the SIP phone."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

PASSWORD = "password"

_RTP_HEADER_SIZE = 12
_RX_PACKETS = 5


@dataclass(frozen=True)
class AppConfig:
    """Network, SIP and audio settings shared by every component."""

    wifi_ssid: str = "your_wifi_ssid"
    wifi_password: str = PASSWORD
    wifi_max_retry: int = 5

    sip_server_ip: str = "192.168.1.100"
    sip_server_port: int = 5060
    sip_user: str = "1000"
    sip_password: str = PASSWORD
    sip_display_name: str = "SIP Phone"
    sip_domain: Optional[str] = None
    sip_local_port: int = 5060
    sip_registration_expiry: int = 3600
    sip_retry_interval_ms: int = 5000

    rtp_local_port_base: int = 16384
    audio_sample_rate: int = 8000
    audio_codec_payload_type: int = 0
    audio_frame_ms: int = 20

    def __post_init__(self) -> None:
        if self.sip_domain is None:
            object.__setattr__(self, "sip_domain", self.sip_server_ip)
        for name in ("sip_server_port", "sip_local_port", "rtp_local_port_base"):
            port = getattr(self, name)
            if not 0 <= port <= 0xFFFF:
                raise ValueError(f"{name} out of range: {port}")
        if self.rtp_local_port_base % 2:
            raise ValueError("rtp_local_port_base must be an even number")
        if self.audio_sample_rate <= 0:
            raise ValueError("audio_sample_rate must be positive")
        if self.audio_frame_ms <= 0:
            raise ValueError("audio_frame_ms must be positive")
        if not 0 <= self.audio_codec_payload_type <= 0x7F:
            raise ValueError("audio_codec_payload_type must fit in 7 bits")
        if self.sip_registration_expiry < 0:
            raise ValueError("sip_registration_expiry must not be negative")

    @property
    def samples_per_frame(self) -> int:
        """Samples in one packetization interval."""
        return self.audio_sample_rate * self.audio_frame_ms // 1000

    @property
    def rtp_tx_buffer_size(self) -> int:
        """Bytes needed for one outgoing RTP packet (header plus G.711 frame)."""
        return self.samples_per_frame + _RTP_HEADER_SIZE

    @property
    def rtp_rx_buffer_size(self) -> int:
        """Receive buffer size, with room for several packets."""
        return self.rtp_tx_buffer_size * _RX_PACKETS