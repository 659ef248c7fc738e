import re
import time

from nanoid import generate

from downloads.service.constants import PARTIAL_MARKERS

JOB_ID_ALPHABET = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789'

_FORMAT_STREAM_RE = re.compile(r'\.f[0-9A-Za-z_-]+\.')

# Video and format ids end up in file names, so only a narrow set is allowed
SAFE_TOKEN_RE = re.compile(r'^[A-Za-z0-9_-]+$')


def generate_job_id():
    """Generate NanoID with A-Z a-z 0-9 alphabet"""
    return generate(JOB_ID_ALPHABET, size=21)


def is_safe_token(value):
    return isinstance(value, str) and bool(SAFE_TOKEN_RE.match(value))


def sanitize_title(title):
    """
    Replace every character outside [A-Za-z0-9] with an underscore.

    The replacement is 1:1, so "Foo: Bar!" becomes "Foo__Bar_".
    """
    return re.sub(r'[^A-Za-z0-9]', '_', title)


def build_display_file_name(title, video_id, ext):
    """
    Build the file name offered to the browser.

    Args:
        title: Video title, or None when metadata is unavailable
        video_id: Source video id, used for the fallback name
        ext: Container extension without the dot (e.g. 'mp4')

    Returns:
        str: sanitized title plus extension, or youtube-video-<id>.<ext>
    """
    if title:
        return f'{sanitize_title(title)}.{ext}'
    return f'youtube-video-{video_id}.{ext}'


def build_output_name(video_id, format_token, ext, timestamp_ms=None):
    """
    Name of a job's output file in the working area.

    The timestamp keeps retries of the same video/format pair apart.
    """
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f'{video_id}-{format_token}-{timestamp_ms}.{ext}'


def output_name_prefix(video_id, format_token):
    """Prefix shared by every output name of a video/format pair"""
    return f'{video_id}-{format_token}-'


def is_output_name_for(name, video_id, format_token, suffix):
    """
    True only for <video_id>-<format_token>-<digits><suffix>.

    Both ids may contain "-", so a bare prefix match could pick up the
    output of another video/format pair.
    """
    prefix = output_name_prefix(video_id, format_token)
    if not name.startswith(prefix):
        return False
    return bool(re.fullmatch(r'\d+' + re.escape(suffix), name[len(prefix):]))


def is_partial_name(name):
    """True for yt-dlp intermediates (.part, .ytdl, per-format .f137. streams)"""
    if any(marker in name for marker in PARTIAL_MARKERS):
        return True
    return bool(_FORMAT_STREAM_RE.search(name))


def format_duration(seconds):
    """
    Format a duration for display.

    Returns:
        str: 'H:MM:SS' or 'M:SS', 'Unknown' when seconds is empty
    """
    if not seconds:
        return 'Unknown'
    seconds = int(seconds)
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    remaining = seconds % 60
    if hours > 0:
        return f'{hours}:{minutes:02d}:{remaining:02d}'
    return f'{minutes}:{remaining:02d}'


def format_view_count(view_count):
    """Approximate view count bucket, e.g. 12345 -> '12K views'"""
    # round half up, like the browser client expects
    thousands = int((view_count or 0) / 1000 + 0.5)
    return f'{thousands}K views'


def format_size_mb(size):
    return f'{size / (1024 * 1024):.2f} MB'
