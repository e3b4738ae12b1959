# sipphone

A compact SIP telephone. It registers with a SIP server over UDP and
renews the registration before it expires. It places and answers calls,
negotiates a single PCMU audio stream with SDP, and moves audio in RTP
packets through a pipeline that runs one frame per packetization interval.

It needs nothing beyond the Python standard library (Python 3.10 or later).

## Modules

- `sipphone.config` – `AppConfig`, a frozen dataclass holding the server,
  account, port and audio settings. The defaults are 8 kHz audio, 20 ms
  frames and payload type 0. The constructor validates the values and
  raises `ValueError` for ports out of range, an odd RTP port base and
  similar mistakes. If `sip_domain` is not given, it takes the value of
  `sip_server_ip`. The properties `samples_per_frame`, `rtp_tx_buffer_size`
  and `rtp_rx_buffer_size` derive the frame and buffer sizes.
- `sipphone.g711` – conversion between signed 16-bit samples and 8-bit
  codes: `linear16_to_ulaw`, `ulaw_to_linear16`, and the block functions
  `encode` and `decode`. This is a simplified u-law. It keeps the sign and
  the top seven magnitude bits and inverts the result, and it is not the
  logarithmic companding curve of the G.711 standard. `G711Type.ALAW` is
  listed, but `encode` and `decode` raise `G711Error` for it. They raise
  the same error for values out of range.
- `sipphone.rtp`:
  - `RtpHeader` is the 12-byte header, with `pack` and `unpack`.
  - `RtpSession` is a non-blocking UDP socket with a random SSRC, sequence
    number and timestamp offset. It provides `send_packet` and
    `receive_packet`.
  - The session has a reordering jitter buffer, used through `jitter_put`
    and `jitter_get`. It holds up to 16 packets and drops packets that
    arrive late. When the buffer is empty, `jitter_get` returns a silent
    frame.
  - `RtpSession` is a context manager.
- `sipphone.sdp` – `generate_sdp` builds an offer or answer for one PCMU
  stream. `parse_sdp` returns the remote `(ip, port)` and raises `SdpError`
  when the connection line or media line is missing, or when the payload
  type does not match.
- `sipphone.sip_messages`:
  - `parse_message` turns text into a `SipMessage`, with the methods
    `header`, `is_response` and `cseq`.
  - `parse_header` looks up a single header.
  - `build_register`, `build_invite` and `build_bye` render the requests.
  - `random_hex` and `new_branch` produce tags, Call-IDs and Via branches.
- `sipphone.sip_client` – `SipClient`, the registration and call state
  machine. It tracks `CallState` (from `IDLE` to `ENDED`) and reports
  through optional `SipCallbacks`: incoming call, call answered, call
  ended and registration status.
  - Outgoing calls: `initiate_call`.
  - Answering and hanging up: `answer_call` and `terminate_call`.
  - Socket handling: `open` and `close`, or use it as a context manager.
  - Receiving: `poll` handles one datagram, and `handle_datagram`
    processes a message you already hold. `run` loops until a
    `threading.Event` is set.
  - Incoming requests: it answers INVITE, ACK, BYE, CANCEL and OPTIONS.
    Any other method gets 501, and an INVITE during a call gets 486.
- `sipphone.codec`:
  - `AudioCodec` sends a reset and an initialization sequence of register
    writes through a `write_register(register, value)` callable that you
    supply. It also sets the microphone gain register and computes a
    volume value.
  - `volume_register_value` and `mic_gain_register_value` are the
    mappings it uses.
- `sipphone.audio`:
  - `AudioPipeline` reads a frame from an `AudioDevice`, encodes it and
    sends it to the remote RTP address that the linked `SipClient`
    reports. It then receives a packet, passes it through the jitter
    buffer, decodes it and writes it to the device.
  - `process_frame` does one step. `run` keeps the frame rate.
  - `AudioDevice` is an in-memory device. It reads back the capture bytes
    it was given, returns silence after those run out, and collects
    playback in `playback`.
- `sipphone.app` – `Application` ties the pipeline and the client
  together. It moves through the `AppState` values `INIT`,
  `WIFI_CONNECTING`, `SIP_REGISTERING` and `IDLE` as it is told the
  network is up and the registrar accepts it. It also provides `main`, the
  command-line entry point.

## Installing

```
pip install .
```

For the tests:

```
pip install .[test]
pytest
```

## Running

```
sipphone
```

This starts the application with the default settings. It binds the SIP
socket, registers with the server and processes SIP traffic until it is
interrupted. The options are:

| Option | Meaning |
| --- | --- |
| `--server`, `--server-port` | Registrar/proxy address |
| `--user`, `--display-name`, `--domain` | Account identity |
| `--sip-port` | Local SIP port |
| `--rtp-port` | Local RTP port (must be even) |
| `--local-ip` | Address advertised in Via, Contact and SDP. If omitted, it is detected from the route to the server. |
| `--duration SECONDS` | Stop after that many seconds |
| `-v`, `--verbose` | Debug logging |

The command exits with status 1 if the server address cannot be resolved.

## Using the pieces

Coding a frame of audio:

```python
from sipphone.g711 import G711Type, encode, decode

frame = [0, 1000, -1000, 32000] * 40
coded = encode(frame, G711Type.ULAW)        # 160 bytes
restored = decode(coded, G711Type.ULAW)     # 160 samples
```

Describing and reading a media session:

```python
from sipphone.sdp import generate_sdp, parse_sdp

body = generate_sdp("1000", "192.168.1.20", 16384, 0, 8000, 20, 1, 1)
remote_ip, remote_port = parse_sdp(body, 0)   # ("192.168.1.20", 16384)
```

RTP headers:

```python
from sipphone.rtp import RtpHeader

header = RtpHeader(payload_type=0, sequence=7, timestamp=160, ssrc=0x1234)
assert RtpHeader.unpack(header.pack()) == header
```

Driving the SIP client yourself:

```python
import threading
from sipphone.config import AppConfig
from sipphone.sip_client import SipCallbacks, SipClient

config = AppConfig(sip_server_ip="192.168.1.100")
callbacks = SipCallbacks(on_incoming_call=lambda uri, call_id: print("call from", uri))
client = SipClient(config, "192.168.1.20", callbacks=callbacks,
                   server_address=("192.168.1.100", 5060))
stop = threading.Event()
client.run(stop)   # opens the socket, sends REGISTER, handles traffic
```

Errors are raised as exceptions: `G711Error`, `RtpError`, `SdpError`,
`SipParseError`, `SipClientError`, `CodecError` and `AudioPipelineError`.

## What it does not do

- **No sound card.** The only `AudioDevice` is the in-memory one, so the
  `sipphone` command neither captures nor plays real sound.
- **No codec hardware.** The `sipphone` command attaches no `AudioCodec`.
  Driving real codec hardware needs a `write_register` function of your
  own.
- **No call control from the command line.** The command only registers
  and waits. Placing, answering and hanging up calls is done through
  `SipClient.initiate_call`, `answer_call` and `terminate_call` from your
  own code.
- **No digest authentication.** A 401 or 407 reply to REGISTER is treated
  as a failed registration.
- **No retransmission timers and no CANCEL.** Requests are not
  retransmitted, and hanging up before the call connects sends no CANCEL.
- **No A-law.** Only the simplified u-law described above is supported.