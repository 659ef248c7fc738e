"""
Media format and progress policy constants.

Centralized definitions of file extensions and the display-percent ranges.
"""

# Containers the working area may hold as finished output
OUTPUT_EXTENSIONS = ['.mp4', '.mp3']

# Container produced for each fetch mode
VIDEO_CONTAINER = 'mp4'
AUDIO_CONTAINER = 'mp3'

# Format token used in file names for audio-only jobs
AUDIO_ONLY_FORMAT = 'mp3'

# yt-dlp intermediates that are never served or recovered
# (per-format streams are additionally matched as ".f<id>." in utils)
PARTIAL_MARKERS = ['.part', '.ytdl', '.temp']

CONTENT_TYPES = {
    '.mp4': 'video/mp4',
    '.mp3': 'audio/mpeg',
    '.m4a': 'audio/mp4',
    '.webm': 'video/webm',
    '.mkv': 'video/x-matroska',
}

# Progress re-scaling: extractor 0-100 maps to display 0-90, the
# merge/transcode stage lives in [90, 100), 100 means validated output.
RETRIEVAL_PERCENT_CEILING = 90
MERGE_PERCENT = 95
COMPLETE_PERCENT = 100
FAILED_PERCENT = -1

# Binary unit table for byte counters in extractor output
BYTE_UNITS = {
    'B': 1,
    'KiB': 1024,
    'MiB': 1024 * 1024,
    'GiB': 1024 * 1024 * 1024,
}

# Canonical watch URL built from a video id
WATCH_URL_TEMPLATE = 'https://www.youtube.com/watch?v={video_id}'
