"""
Configuration adapter for download settings.

Centralizes access to Django settings and environment variables,
ensuring consistent configuration across CLI and web app.
"""

import shlex
from pathlib import Path

from django.conf import settings


def get_work_dir():
    """Get the working directory holding in-flight and finished output files"""
    return Path(settings.CLIPDROP_WORK_DIR)


def get_ytdlp_command():
    """
    Get the command used to spawn the extractor.

    Returns:
        list: argv prefix, e.g. ['yt-dlp'] or [python, '-m', 'yt_dlp']
    """
    command = settings.CLIPDROP_YTDLP_COMMAND
    if isinstance(command, str):
        return shlex.split(command)
    return list(command)


def get_ytdlp_extra_args():
    """
    Get additional yt-dlp command-line arguments from settings.

    Returns:
        list: extra arguments appended before the URL
    """
    args_string = settings.CLIPDROP_YTDLP_EXTRA_ARGS
    if not args_string:
        return []
    return shlex.split(args_string)


def get_ytdlp_proxy():
    """Get the proxy for yt-dlp (needed on cloud VMs where YouTube blocks requests)"""
    return settings.CLIPDROP_YTDLP_PROXY or None


def get_progress_interval():
    """Seconds between two progress stream polls"""
    return float(settings.CLIPDROP_PROGRESS_INTERVAL)


def get_terminal_retention_seconds():
    """Seconds a completed or failed job is kept when nobody retrieves it"""
    return int(settings.CLIPDROP_TERMINAL_RETENTION_SECONDS)


def get_retrieved_retention_seconds():
    """Seconds a retrieved job is kept so a repeated request still succeeds"""
    return int(settings.CLIPDROP_RETRIEVED_RETENTION_SECONDS)


def get_sweep_max_age_seconds():
    """Age after which an unreferenced file in the working area is deleted"""
    return int(settings.CLIPDROP_SWEEP_MAX_AGE_SECONDS)


def get_sweep_interval_minutes():
    """Minutes between two periodic sweeps"""
    return int(settings.CLIPDROP_SWEEP_INTERVAL_MINUTES)


def get_archive_backend():
    """
    Get the archive backend name.

    Returns:
        str: '' (disabled), 's3' or 'kv'
    """
    return (settings.CLIPDROP_ARCHIVE_BACKEND or '').lower()


def get_s3_options():
    """Get object storage options for the s3 archive backend"""
    return {
        'bucket': settings.CLIPDROP_S3_BUCKET,
        'prefix': settings.CLIPDROP_S3_PREFIX,
        'region': settings.CLIPDROP_S3_REGION,
        'endpoint_url': settings.CLIPDROP_S3_ENDPOINT_URL or None,
    }


def get_kv_url():
    """Get the base URL of the key-value database used by the kv archive backend"""
    return settings.CLIPDROP_KV_URL
