[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "sipphone"
version = "0.1.0"
description = "A small SIP user agent with SDP negotiation, RTP media, u-law coding and a frame-driven audio pipeline"
requires-python = ">=3.10"
dependencies = []
keywords = ["sip", "rtp", "sdp", "voip", "g711", "ulaw", "telephony", "softphone"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Communications :: Internet Phone",
    "Topic :: Communications :: Telephony",
    "Topic :: Multimedia :: Sound/Audio",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
sipphone = "sipphone.app:main"

[tool.hatch.build.targets.wheel]
packages = ["sipphone"]

[tool.pytest.ini_options]
addopts = "-ra"
