"""Full-duplex audio: capture, G.711 encoding and RTP sending, plus RTP
reception through a jitter buffer, decoding and playback."""

from __future__ import annotations

import logging
import struct
import threading
import time
from typing import List, Optional, Sequence, Tuple

from . import g711
from .codec import AudioCodec, CodecError
from .config import AppConfig
from .rtp import RtpError, RtpHeader, RtpSession
from .sip_client import SipClientError

log = logging.getLogger(__name__)

MIC_GAIN_DB = 30
VOLUME_PERCENT = 80
BYTES_PER_SAMPLE = 2
IDLE_INTERVAL_S = 0.1


class AudioPipelineError(Exception):
    """Raised when the pipeline is used in the wrong state or cannot start."""


def _pcm_bytes(samples: Sequence[int]) -> bytes:
    return struct.pack(f"<{len(samples)}h", *samples)


def _pcm_samples(data: bytes) -> List[int]:
    return list(struct.unpack(f"<{len(data) // BYTES_PER_SAMPLE}h", data))


class AudioDevice:
    """In-memory duplex device carrying 16-bit little-endian PCM.

    Capture data given to the constructor is read back in order; once it
    runs out, reads return silence. Played audio collects in ``playback``.
    """

    def __init__(self, capture: bytes = b"") -> None:
        self._capture = bytearray(capture)
        self.playback = bytearray()
        self._lock = threading.Lock()

    def read(self, size: int, timeout: Optional[float] = None) -> bytes:
        """Return ``size`` bytes of captured audio; this device never blocks."""
        with self._lock:
            chunk = bytes(self._capture[:size])
            del self._capture[:size]
        return chunk + bytes(size - len(chunk))

    def write(self, data: bytes) -> int:
        """Queue ``data`` for playback; returns the number of bytes taken."""
        with self._lock:
            self.playback.extend(data)
        return len(data)

    def clear(self) -> None:
        """Drop audio waiting to be played."""
        with self._lock:
            self.playback.clear()


class AudioPipeline:
    """Moves one frame of audio each way per packetization interval."""

    def __init__(
        self,
        device: AudioDevice,
        config: Optional[AppConfig] = None,
        codec: Optional[AudioCodec] = None,
    ) -> None:
        self.device = device
        self.config = config if config is not None else AppConfig()
        self.codec = codec
        self.rtp_session: Optional[RtpSession] = None
        self._sip_client = None
        self._running = False
        self._closed = False
        self._lock = threading.RLock()
        self._remote: Optional[Tuple[str, int]] = None
        self._timestamp = 0
        self._play_header: Optional[RtpHeader] = None

        self.device.clear()
        if codec is not None:
            try:
                codec.initialize()
            except CodecError as exc:
                raise AudioPipelineError(f"failed to initialize audio codec: {exc}") from exc
            try:
                codec.set_mic_gain(MIC_GAIN_DB)
                codec.set_volume(VOLUME_PERCENT)
            except CodecError as exc:
                log.warning("Codec gain/volume setup failed: %s", exc)
        log.info("Audio pipeline initialized")

    @property
    def _frame_bytes(self) -> int:
        return self.config.samples_per_frame * BYTES_PER_SAMPLE

    @property
    def is_running(self) -> bool:
        """Whether audio is flowing."""
        return self._running

    def set_sip_client(self, sip_client) -> None:
        """Link the SIP client that supplies the remote RTP destination."""
        self._sip_client = sip_client

    def start(self, local_rtp_port: int) -> None:
        """Open an RTP session on ``local_rtp_port`` and begin streaming."""
        with self._lock:
            if self._closed or self._running:
                raise AudioPipelineError("audio pipeline cannot start in its current state")
            if self._sip_client is None:
                raise AudioPipelineError("SIP client not set in audio pipeline")
            try:
                self.rtp_session = RtpSession(
                    local_rtp_port,
                    self.config.samples_per_frame,
                    self.config.rtp_tx_buffer_size,
                )
            except RtpError as exc:
                raise AudioPipelineError(
                    f"failed to create RTP session for port {local_rtp_port}: {exc}"
                ) from exc
            self._remote = None
            self._timestamp = 0
            self._play_header = None
            self._running = True
            log.info("Audio pipeline started, RTP on port %d", self.rtp_session.local_port)

    def stop(self) -> None:
        """Stop streaming, close the RTP session and clear pending playback."""
        with self._lock:
            if not self._running:
                raise AudioPipelineError("audio pipeline is not running")
            self._running = False
            if self.rtp_session is not None:
                self.rtp_session.close()
                self.rtp_session = None
            self.device.clear()
            log.info("Audio pipeline stopped")

    def close(self) -> None:
        """Stop if running and release the codec."""
        with self._lock:
            if self._closed:
                return
            if self._running:
                self.stop()
            if self.codec is not None and self.codec.initialized:
                try:
                    self.codec.close()
                except CodecError as exc:
                    log.error("Codec close failed: %s", exc)
            self._closed = True
            log.info("Audio pipeline deleted")

    def process_frame(self) -> Optional[RtpHeader]:
        """Handle one frame each way; returns the header of the packet sent, if any."""
        with self._lock:
            session = self.rtp_session
            if not self._running or session is None:
                raise AudioPipelineError("audio pipeline is not running")
            self._refresh_remote()
            sent = self._capture_and_send(session)
            self._receive_and_play(session)
            return sent

    def _refresh_remote(self) -> None:
        if self._remote is not None or self._sip_client is None:
            return
        try:
            self._remote = self._sip_client.remote_rtp_info()
        except SipClientError:
            log.debug("Waiting for remote RTP info from SIP client")
            return
        log.info("Remote RTP destination %s:%d", *self._remote)

    def _capture_and_send(self, session: RtpSession) -> Optional[RtpHeader]:
        timeout = 2 * self.config.audio_frame_ms / 1000
        try:
            data = self.device.read(self._frame_bytes, timeout)
        except OSError as exc:
            log.warning("Audio read failed: %s", exc)
            return None
        if len(data) != self._frame_bytes:
            log.warning("Audio read returned %d of %d bytes", len(data), self._frame_bytes)
            return None
        encoded = g711.encode(_pcm_samples(data), g711.G711Type.ULAW)
        if self._remote is None:
            return None
        header: Optional[RtpHeader] = None
        try:
            header = session.send_packet(
                self._remote[0],
                self._remote[1],
                self.config.audio_codec_payload_type,
                self._timestamp,
                encoded,
            )
        except RtpError as exc:
            log.error("RTP send failed: %s", exc)
        self._timestamp = (self._timestamp + self.config.samples_per_frame) & 0xFFFFFFFF
        return header

    def _receive_and_play(self, session: RtpSession) -> None:
        samples = self.config.samples_per_frame
        try:
            packet = session.receive_packet(self.config.rtp_rx_buffer_size)
        except RtpError as exc:
            log.error("RTP receive error: %s", exc)
            packet = None
        if packet is not None:
            header, payload, _ = packet
            if len(payload) != samples:
                log.warning("RTP packet with unexpected payload size %d", len(payload))
            else:
                session.jitter_put(header, payload)

        header, payload = session.jitter_get(self._play_header)
        self._play_header = header
        # The jitter buffer fills gaps with all-zero frames; play true silence for them.
        if len(payload) == samples and any(payload):
            frame = _pcm_bytes(g711.decode(payload, g711.G711Type.ULAW))
        else:
            frame = bytes(self._frame_bytes)
        try:
            written = self.device.write(frame)
        except OSError as exc:
            log.error("Audio write failed: %s", exc)
            return
        if written != len(frame):
            log.warning("Audio write partial (%d / %d)", written, len(frame))

    def run(self, stop_event: threading.Event) -> None:
        """Process frames at the packetization rate until ``stop_event`` is set."""
        interval = self.config.audio_frame_ms / 1000
        deadline = time.monotonic()
        while not stop_event.is_set():
            if not self._running:
                stop_event.wait(IDLE_INTERVAL_S)
                deadline = time.monotonic()
                continue
            try:
                self.process_frame()
            except AudioPipelineError:
                continue
            deadline += interval
            delay = deadline - time.monotonic()
            if delay > 0:
                stop_event.wait(delay)
            else:
                deadline = time.monotonic()