"""
Audio transcoding via the ffmpeg binary.

Completion services accept ``input_audio`` only as wav or mp3; voice notes
from chat apps are usually ogg/opus, so those are piped through ffmpeg.
"""

import base64
import logging
import shutil
import subprocess
from typing import Optional, Tuple

from relaybot.core.errors import AudioConversionError

logger = logging.getLogger(__name__)

FFMPEG_TIMEOUT_SEC = 60

# mime type -> wire format name
_PASSTHROUGH = {
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/wave": "wav",
    "audio/mp3": "mp3",
    "audio/mpeg": "mp3",
}


def passthrough_format(mime_type: str) -> Optional[str]:
    """Return ``wav``/``mp3`` when the mime type can be sent as is."""
    base = (mime_type or "").split(";")[0].strip().lower()
    return _PASSTHROUGH.get(base)


def convert_audio_to_mp3_base64(data_b64: str, ffmpeg: Optional[str] = None) -> str:
    """Transcode base64 audio of any ffmpeg-readable format to base64 mp3."""
    binary = ffmpeg or shutil.which("ffmpeg")
    if not binary:
        raise AudioConversionError("ffmpeg not found on PATH")
    raw = base64.b64decode(data_b64)
    try:
        proc = subprocess.run(
            [binary, "-hide_banner", "-loglevel", "error",
             "-i", "pipe:0", "-f", "mp3", "-ab", "64k", "pipe:1"],
            input=raw,
            capture_output=True,
            timeout=FFMPEG_TIMEOUT_SEC,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise AudioConversionError("ffmpeg timed out") from e
    if proc.returncode != 0:
        err = proc.stderr.decode("utf-8", errors="replace").strip()
        raise AudioConversionError(f"ffmpeg exited with {proc.returncode}: {err[:200]}")
    logger.debug("Transcoded audio %d -> %d bytes", len(raw), len(proc.stdout))
    return base64.b64encode(proc.stdout).decode("ascii")


def audio_for_wire(data_b64: str, mime_type: str) -> Tuple[str, str]:
    """Return ``(data, format)`` ready for an ``input_audio`` part."""
    fmt = passthrough_format(mime_type)
    if fmt:
        return data_b64, fmt
    return convert_audio_to_mp3_base64(data_b64), "mp3"
