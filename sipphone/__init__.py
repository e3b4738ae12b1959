"""A small SIP telephone: registration and calls over UDP, SDP, RTP with a jitter buffer, u-law coding and a frame-driven audio pipeline."""

__version__ = "0.1.0"