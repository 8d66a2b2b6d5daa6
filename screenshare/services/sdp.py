"""Session description munging to bias encoders toward low latency."""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

BITRATE_HINTS = "x-google-max-bitrate=10000;x-google-min-bitrate=2000;x-google-start-bitrate=5000;"
H264_PROFILE = "profile-level-id=42e01f;level-asymmetry-allowed=1;packetization-mode=1"

_FMTP_PATTERN = re.compile(r"a=fmtp:(\d+) ")
_H264_RTPMAP_PATTERN = re.compile(r"^a=rtpmap:(\d+) H264\b[^\r\n]*(?=\r?\n|\Z)", re.M)


def optimize_sdp_for_latency(sdp: str) -> str:
    """Return ``sdp`` with bitrate hints and pinned H264 parameters.

    Every ``a=fmtp:<pt> `` line gets the bitrate hints placed directly after the
    payload type. Every H264 ``a=rtpmap`` line is followed by a new ``a=fmtp``
    line pinning the baseline profile. The H264 lines are inserted after the
    bitrate pass, so they do not carry the hints. Any failure returns the input
    unchanged.
    """

    try:
        newline = "\r\n" if "\r\n" in sdp else "\n"
        modified = _FMTP_PATTERN.sub(lambda match: f"a=fmtp:{match.group(1)} {BITRATE_HINTS}", sdp)
        return _H264_RTPMAP_PATTERN.sub(
            lambda match: f"{match.group(0)}{newline}a=fmtp:{match.group(1)} {H264_PROFILE}",
            modified,
        )
    except Exception as exc:  # noqa: BLE001 - never abort negotiation over munging
        logger.warning("Error optimizing SDP, using original: %s", exc)
        return sdp
