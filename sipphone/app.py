"""Application control: wires audio and SIP together and tracks overall state."""

from __future__ import annotations

import argparse
import logging
import socket
import threading
from enum import IntEnum
from typing import List, Optional

from .audio import AudioDevice, AudioPipeline, AudioPipelineError
from .config import AppConfig
from .sip_client import SipCallbacks, SipClient, SipClientError

log = logging.getLogger(__name__)

CONTROL_INTERVAL_S = 0.5
SIP_POLL_TIMEOUT_S = 1.0


class AppState(IntEnum):
    """Application states, ordered as start-up progresses."""

    INIT = 0
    WIFI_CONNECTING = 1
    SIP_REGISTERING = 2
    IDLE = 3
    IN_CALL = 4
    ERROR = 5


class Application:
    """Owns the audio pipeline and SIP client and drives the start-up sequence."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        local_ip: str = "127.0.0.1",
        audio_device: Optional[AudioDevice] = None,
    ) -> None:
        self.config = config if config is not None else AppConfig()
        self.local_ip = local_ip
        self._state = AppState.INIT
        self._wifi_connected = threading.Event()
        self._sip_registered = threading.Event()

        self.audio_pipeline: Optional[AudioPipeline]
        try:
            self.audio_pipeline = AudioPipeline(
                audio_device if audio_device is not None else AudioDevice(), self.config
            )
        except AudioPipelineError as exc:
            log.error("Failed to initialize audio pipeline: %s", exc)
            self.audio_pipeline = None

        self.sip_client: Optional[SipClient]
        try:
            self.sip_client = SipClient(
                self.config,
                local_ip,
                audio=self.audio_pipeline,
                callbacks=SipCallbacks(on_registration_status=self._on_registration_status),
            )
        except SipClientError as exc:
            log.error("Failed to initialize SIP client: %s", exc)
            self.sip_client = None

        if self.sip_client is not None and self.audio_pipeline is not None:
            self.audio_pipeline.set_sip_client(self.sip_client)

    @property
    def state(self) -> AppState:
        """Current application state."""
        return self._state

    def _on_registration_status(self, registered: bool) -> None:
        if registered:
            self._sip_registered.set()
        else:
            self._sip_registered.clear()

    def on_wifi_connected(self) -> None:
        """Signal that the network is up."""
        self._wifi_connected.set()

    def on_sip_registered(self) -> None:
        """Signal that the registrar accepted us."""
        self._sip_registered.set()

    def step(self) -> AppState:
        """Advance the state machine from the current signals; returns the new state."""
        if self._state == AppState.INIT:
            self._state = AppState.WIFI_CONNECTING
        if self._wifi_connected.is_set() and self._state < AppState.SIP_REGISTERING:
            log.info("Network connected, starting SIP registration")
            self._state = AppState.SIP_REGISTERING
            if self.sip_client is not None:
                try:
                    self.sip_client.start_registration()
                except SipClientError as exc:
                    log.error("Registration request failed: %s", exc)
        if self._sip_registered.is_set() and self._state < AppState.IDLE:
            log.info("SIP registered, application idle")
            self._state = AppState.IDLE
        return self._state

    def _poll_sip(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.sip_client.poll(SIP_POLL_TIMEOUT_S)
            except (SipClientError, OSError, ValueError) as exc:
                log.error("SIP poll failed: %s", exc)
                stop_event.wait(SIP_POLL_TIMEOUT_S)

    def run(self, stop_event: threading.Event) -> None:
        """Run SIP, audio and control loops until ``stop_event`` is set, then clean up."""
        threads: List[threading.Thread] = []
        try:
            if self.sip_client is not None:
                self.sip_client.open()
                threads.append(
                    threading.Thread(target=self._poll_sip, args=(stop_event,), name="sip")
                )
            if self.audio_pipeline is not None:
                threads.append(
                    threading.Thread(
                        target=self.audio_pipeline.run, args=(stop_event,), name="audio"
                    )
                )
            for thread in threads:
                thread.start()
            while True:
                self.step()
                if stop_event.wait(CONTROL_INTERVAL_S):
                    break
        finally:
            stop_event.set()
            for thread in threads:
                if thread.ident is not None:
                    thread.join()
            if self.sip_client is not None:
                self.sip_client.close()
            if self.audio_pipeline is not None:
                self.audio_pipeline.close()


def _detect_local_ip(server: str, port: int) -> str:
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
            probe.connect((server, port))
            return probe.getsockname()[0]
    except OSError:
        return "127.0.0.1"


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line entry point: run the phone until interrupted."""
    defaults = AppConfig()
    parser = argparse.ArgumentParser(prog="sipphone", description="SIP phone over UDP.")
    parser.add_argument("--server", default=defaults.sip_server_ip)
    parser.add_argument("--server-port", type=int, default=defaults.sip_server_port)
    parser.add_argument("--user", default=defaults.sip_user)
    parser.add_argument("--display-name", default=defaults.sip_display_name)
    parser.add_argument("--domain", default=None)
    parser.add_argument("--sip-port", type=int, default=defaults.sip_local_port)
    parser.add_argument("--rtp-port", type=int, default=defaults.rtp_local_port_base)
    parser.add_argument("--local-ip", default=None)
    parser.add_argument("--duration", type=float, default=None, help="seconds to run")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)

    try:
        config = AppConfig(
            sip_server_ip=args.server,
            sip_server_port=args.server_port,
            sip_user=args.user,
            sip_display_name=args.display_name,
            sip_domain=args.domain,
            sip_local_port=args.sip_port,
            rtp_local_port_base=args.rtp_port,
        )
    except ValueError as exc:
        parser.error(str(exc))

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    local_ip = args.local_ip or _detect_local_ip(config.sip_server_ip, config.sip_server_port)
    app = Application(config, local_ip)
    if app.sip_client is None:
        return 1

    stop_event = threading.Event()
    timer: Optional[threading.Timer] = None
    if args.duration is not None:
        timer = threading.Timer(args.duration, stop_event.set)
        timer.daemon = True
        timer.start()
    app.on_wifi_connected()
    try:
        app.run(stop_event)
    except KeyboardInterrupt:
        log.info("Interrupted, shutting down")
    except SipClientError as exc:
        log.error("SIP client failed: %s", exc)
        return 1
    finally:
        if timer is not None:
            timer.cancel()
    return 0