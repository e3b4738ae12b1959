import pytest

from sipphone.codec import (
    AudioCodec,
    CodecError,
    mic_gain_register_value,
    volume_register_value,
)

EXPECTED_SEQUENCE = [
    (0x00, 0x00),
    (0x04, 0x0C),
    (0x01, 0x50),
    (0x02, 0x00),
    (0x03, 0x10),
    (0x1A, 0x0A),
    (0x1B, 0x00),
    (0x1C, 0x6A),
    (0x27, 0x00),
    (0x2A, 0x30),
]


class Recorder:
    def __init__(self, failing=()):
        self.writes = []
        self.failing = set(failing)

    def __call__(self, register, value):
        self.writes.append((register, value))
        if register in self.failing:
            raise OSError("bus error")


def make_codec(failing=()):
    recorder = Recorder(failing)
    delays = []
    return AudioCodec(recorder, delays.append), recorder, delays


def test_initialize_sends_sequence_with_reset_delay():
    codec, recorder, delays = make_codec()
    codec.initialize()
    assert recorder.writes == EXPECTED_SEQUENCE
    assert delays == [0.05]
    assert codec.initialized is True


def test_initialize_failure_attempts_all_writes_then_raises():
    codec, recorder, _ = make_codec(failing={0x1A})
    with pytest.raises(CodecError):
        codec.initialize()
    assert recorder.writes == EXPECTED_SEQUENCE
    assert codec.initialized is False


def test_close_after_initialize_and_twice():
    codec, _, _ = make_codec()
    codec.initialize()
    codec.close()
    assert codec.initialized is False
    with pytest.raises(CodecError):
        codec.close()


def test_volume_full_and_clamped():
    assert volume_register_value(100) == 33
    assert volume_register_value(200) == volume_register_value(100)
    assert volume_register_value(0) == 0


def test_volume_is_monotonic():
    values = [volume_register_value(v) for v in range(0, 101)]
    assert values == sorted(values)


def test_volume_rejects_out_of_range():
    with pytest.raises(CodecError):
        volume_register_value(-1)
    with pytest.raises(CodecError):
        volume_register_value(256)


def test_set_volume_writes_nothing():
    codec, recorder, _ = make_codec()
    assert codec.set_volume(100) == 33
    assert recorder.writes == []


@pytest.mark.parametrize(
    "gain, expected",
    [(0, 0x00), (20, 0x00), (21, 0x07), (23, 0x07), (24, 0x08), (30, 0x08)],
)
def test_mic_gain_mapping(gain, expected):
    assert mic_gain_register_value(gain) == expected


def test_set_mic_gain_writes_pga_register():
    codec, recorder, _ = make_codec()
    assert codec.set_mic_gain(30) == 0x08
    assert recorder.writes == [(0x1B, 0x08)]


def test_set_mic_gain_write_failure_raises():
    codec, _, _ = make_codec(failing={0x1B})
    with pytest.raises(CodecError):
        codec.set_mic_gain(24)