"""Control of an I2C-attached audio codec through a register-write callable."""

from __future__ import annotations

import logging
import time
from typing import Callable, Sequence, Tuple

log = logging.getLogger(__name__)

WriteRegister = Callable[[int, int], None]

CODEC_I2C_ADDRESS = 0x18
RESET_DELAY_S = 0.05

_RESET = (0x00, 0x00)
_INIT_SEQUENCE: Sequence[Tuple[int, int]] = (
    (0x04, 0x0C),  # clock manager: MCLK / 2
    (0x01, 0x50),  # clock manager: enable clocks
    (0x02, 0x00),  # system control: normal operation
    (0x03, 0x10),  # system control: I2S, 16 bit
    (0x1A, 0x0A),  # ADC control 1: enable ADC
    (0x1B, 0x00),  # ADC control 2: PGA gain 0 dB
    (0x1C, 0x6A),  # ADC control 3
    (0x27, 0x00),  # DAC control 1: enable DAC
    (0x2A, 0x30),  # DAC control 4: initial volume
)

MIC_GAIN_REGISTER = 0x1B
_VOLUME_STEPS = 33.0


class CodecError(Exception):
    """Raised when the codec cannot be configured."""


def _check_byte(name: str, value: int) -> None:
    if not 0 <= value <= 0xFF:
        raise CodecError(f"{name} out of 8-bit range: {value}")


def volume_register_value(volume_percent: int) -> int:
    """Map a volume of 0-100 % (larger values are clamped) to a register value."""
    _check_byte("volume", volume_percent)
    volume_percent = min(volume_percent, 100)
    return int((volume_percent / 100.0) * _VOLUME_STEPS)


def mic_gain_register_value(gain_db: int) -> int:
    """Map a microphone gain in dB to the PGA gain register value."""
    _check_byte("gain", gain_db)
    if gain_db >= 24:
        return 0x08
    if gain_db >= 21:
        return 0x07
    return 0x00


class AudioCodec:
    """An audio codec configured by writing its registers."""

    def __init__(
        self,
        write_register: WriteRegister,
        delay: Callable[[float], None] = time.sleep,
    ) -> None:
        self._write_register = write_register
        self._delay = delay
        self.initialized = False

    def _write(self, register: int, value: int) -> None:
        try:
            self._write_register(register, value)
        except OSError as exc:
            raise CodecError(
                f"write of 0x{value:02X} to register 0x{register:02X} failed: {exc}"
            ) from exc

    def initialize(self) -> None:
        """Reset the codec and send the initialization sequence."""
        log.info("Sending codec init sequence")
        failures = []
        for step, (register, value) in enumerate((_RESET, *_INIT_SEQUENCE)):
            try:
                self._write(register, value)
            except CodecError as exc:
                failures.append(str(exc))
            if step == 0:
                self._delay(RESET_DELAY_S)
        if failures:
            log.error("Codec init sequence failed")
            raise CodecError("codec init sequence failed: " + "; ".join(failures))
        self.initialized = True
        log.info("Codec initialized")

    def close(self) -> None:
        """Release the codec."""
        if not self.initialized:
            raise CodecError("codec is not initialized")
        self.initialized = False
        log.info("Codec deinitialized")

    def set_volume(self, volume_percent: int) -> int:
        """Compute the register value for a volume; returns it."""
        value = volume_register_value(volume_percent)
        log.info("Setting volume to %d%% (reg 0x%02X)", min(volume_percent, 100), value)
        return value

    def set_mic_gain(self, gain_db: int) -> int:
        """Write the microphone gain register; returns the value written."""
        value = mic_gain_register_value(gain_db)
        log.info("Setting mic gain to %ddB (reg 0x%02X)", gain_db, value)
        self._write(MIC_GAIN_REGISTER, value)
        return value