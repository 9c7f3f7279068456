# timeouts.py
"""
Timeouts for external processes and storage calls, in seconds.

Every ffmpeg / ffprobe invocation gets a hard ceiling and the shared stall
timeout (no output on stdout/stderr for that long kills the process).
Values scale for 2GB / multi-hour inputs.
"""
import os
from decouple import config


def env(key, default=None):
    return os.getenv(key) or config(key, default=default)


# ffprobe metadata read
METADATA = float(env("TIMEOUT_METADATA", "60"))

# single frame grab
FRAME_EXTRACTION = float(env("TIMEOUT_FRAME_EXTRACTION", "30"))

# full audio track extraction (2GB ~ 10-15 min)
AUDIO_EXTRACTION = float(env("TIMEOUT_AUDIO_EXTRACTION", str(20 * 60)))

# one VAD chunk (~10s of audio)
AUDIO_CHUNK = float(env("TIMEOUT_AUDIO_CHUNK", "60"))

# PCM decode / pre-chunk window cut
PCM_CONVERSION = float(env("TIMEOUT_PCM_CONVERSION", str(5 * 60)))

# one scene detection pass (2+ hour videos take 20-40 min)
SCENE_DETECTION = float(env("TIMEOUT_SCENE_DETECTION", str(45 * 60)))

# loudnorm / band-pass preprocessing
AUDIO_PREPROCESSING = float(env("TIMEOUT_AUDIO_PREPROCESSING", str(10 * 60)))

# one ranged storage read
STORAGE_RANGE = float(env("TIMEOUT_STORAGE_RANGE", str(5 * 60)))

# no output for this long means the process is stuck
STALL = float(env("TIMEOUT_STALL", "45"))
