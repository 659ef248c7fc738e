"""
Extraction client wrapping yt-dlp.

- describe(): metadata-only extraction through the yt-dlp Python API
- fetch(): a yt-dlp subprocess that downloads, merges and transcodes one
  format, streaming its progress lines back to the caller
"""

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yt_dlp

from downloads.exceptions import (
    AccessDenied,
    ExtractionFailure,
    NotFoundError,
    OutputValidationFailure,
)
from downloads.service import config
from downloads.service.constants import BYTE_UNITS, WATCH_URL_TEMPLATE
from downloads.service.metadata import VideoFormat, VideoMetadata
from downloads.utils import format_duration, format_view_count, is_partial_name

# Our own progress line so both the percent and the byte counters are present
PROGRESS_TEMPLATE = (
    'download:[download] %(progress._percent_str)s '
    '%(progress._downloaded_bytes_str)s of %(progress._total_bytes_str)s'
)

_PERCENT_RE = re.compile(r'(\d+(?:\.\d+)?)%')
_BYTES_RE = re.compile(r'(\d+(?:\.\d+)?)\s*([A-Za-z]+) of ~?\s*(\d+(?:\.\d+)?)\s*([A-Za-z]+)')
_DOWNLOAD_DEST_RE = re.compile(r'^\[download\] Destination: (?P<path>.+)$')
_ALREADY_DOWNLOADED_RE = re.compile(r'^\[download\] (?P<path>.+) has already been downloaded')
_MERGER_DEST_RE = re.compile(r'^\[Merger\] Merging formats into "(?P<path>.+)"$')
_PP_DEST_RE = re.compile(
    r'^\[(?:ExtractAudio|VideoConvertor|VideoRemuxer)\].*Destination: (?P<path>.+)$'
)
_POSTPROCESS_RE = re.compile(
    r'^\[(Merger|ExtractAudio|VideoConvertor|VideoRemuxer|Fixup\w*|Metadata|EmbedThumbnail)\]'
)

_ACCESS_DENIED_MARKERS = (
    "confirm you're not a bot",
    'confirm your not a bot',
    'not a bot',
    'bot protection',
    'captcha',
    'http error 429',
    'too many requests',
    'sign in to confirm',
)

_UNRESOLVABLE_MARKERS = (
    'unsupported url',
    'is not a valid url',
    'video unavailable',
    'incomplete youtube id',
    'does not exist',
    'private video',
)


@dataclass
class FetchProgress:
    """One parsed progress tick"""

    percent: float
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    stage: str = 'download'


@dataclass
class FetchResult:
    """Validated output of a finished fetch"""

    path: Path
    file_size: int


def is_access_denied_message(message):
    """Check whether extractor output means the platform blocked automated access."""
    lowered = (message or '').lower()
    return any(marker in lowered for marker in _ACCESS_DENIED_MARKERS)


def _is_unresolvable_message(message):
    lowered = (message or '').lower()
    return any(marker in lowered for marker in _UNRESOLVABLE_MARKERS)


def _to_bytes(value, unit):
    return int(float(value) * BYTE_UNITS.get(unit, 1))


def parse_progress_line(line):
    """
    Parse one line of extractor output.

    The percent comes from the first "<float>%" in the line; byte counters
    are read opportunistically from "<value><unit> of <value><unit>".

    Returns:
        FetchProgress, or None when the line carries no percentage
    """
    percent_match = _PERCENT_RE.search(line)
    if not percent_match:
        return None

    progress = FetchProgress(percent=float(percent_match.group(1)))

    bytes_match = _BYTES_RE.search(line)
    if bytes_match:
        progress.downloaded_bytes = _to_bytes(bytes_match.group(1), bytes_match.group(2))
        progress.total_bytes = _to_bytes(bytes_match.group(3), bytes_match.group(4))

    return progress


def normalize_info(info):
    """
    Convert a yt-dlp info dict into VideoMetadata.

    Raises:
        ExtractionFailure: If the info dict lacks an id or any format
    """
    if not isinstance(info, dict) or not info.get('id'):
        raise ExtractionFailure('Failed to get video info: malformed extractor output')

    formats = []
    for f in info.get('formats') or []:
        format_id = f.get('format_id')
        if not format_id:
            continue
        resolution = f.get('resolution')
        if not resolution and f.get('vcodec') == 'none':
            resolution = 'audio only'
        formats.append(
            VideoFormat(
                format_id=str(format_id),
                format=f.get('format') or str(format_id),
                quality=f.get('format_note') or 'unknown',
                ext=f.get('ext') or '',
                resolution=resolution,
                filesize=f.get('filesize'),
                filesize_approx=f.get('filesize_approx'),
            )
        )

    if not formats:
        raise ExtractionFailure('Failed to get video info: no formats available')

    return VideoMetadata(
        id=str(info['id']),
        title=info.get('title') or '',
        thumbnail=info.get('thumbnail') or '',
        duration=format_duration(info.get('duration')),
        views=format_view_count(info.get('view_count')),
        formats=formats,
    )


class ExtractionClient:
    """Wraps the external extractor for describe and fetch."""

    def __init__(self, command=None, proxy=None, extra_args=None):
        self.command = list(command) if command else ['yt-dlp']
        self.proxy = proxy
        self.extra_args = list(extra_args or [])

    @classmethod
    def from_settings(cls):
        return cls(
            command=config.get_ytdlp_command(),
            proxy=config.get_ytdlp_proxy(),
            extra_args=config.get_ytdlp_extra_args(),
        )

    def describe(self, url, logger=None):
        """
        Fetch metadata and the format list for a URL without downloading.

        Args:
            url: Video page URL
            logger: Optional callable(str) for logging

        Returns:
            VideoMetadata

        Raises:
            AccessDenied: The platform rejected the request as automated traffic
            NotFoundError: The URL does not resolve to a video
            ExtractionFailure: Any other extractor failure or malformed output
        """

        def log(message):
            if logger:
                logger(message)

        ydl_opts = {
            'quiet': True,
            'no_warnings': True,
            'skip_download': True,
            'noplaylist': True,
        }
        if self.proxy:
            ydl_opts['proxy'] = self.proxy

        log(f'Describing: {url}')

        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                info = ydl.extract_info(url, download=False)
        except yt_dlp.utils.DownloadError as e:
            message = str(e)
            log(f'yt-dlp error: {message}')
            if is_access_denied_message(message):
                raise AccessDenied(message) from e
            if _is_unresolvable_message(message):
                raise NotFoundError(f'Could not retrieve video information: {message}') from e
            raise ExtractionFailure(f'Failed to get video info: {message}') from e

        if not info:
            raise NotFoundError('Could not retrieve video information')

        metadata = normalize_info(ydl.sanitize_info(info))
        log(f'Title: {metadata.title} ({len(metadata.formats)} formats)')
        return metadata

    def build_fetch_command(self, video_id, format_id, destination, is_audio_only=False):
        """
        Build the extractor argv for one fetch.

        The output template keeps the destination stem and lets yt-dlp pick
        intermediate extensions; the final container is fixed by the merge
        (video) or audio extraction (audio-only) step.
        """
        destination = Path(destination)
        output_template = str(destination.parent / f'{destination.stem}.%(ext)s')

        cmd = self.command + [
            '--newline',
            '--progress',
            '--progress-template',
            PROGRESS_TEMPLATE,
            '--no-playlist',
            '--retries',
            '10',
            '-o',
            output_template,
        ]

        if is_audio_only:
            cmd += [
                '-f',
                'bestaudio/best',
                '--extract-audio',
                '--audio-format',
                destination.suffix.lstrip('.') or 'mp3',
                '--audio-quality',
                '0',
            ]
        else:
            cmd += [
                '-f',
                f'{format_id}+bestaudio[ext=m4a]/best',
                '--merge-output-format',
                destination.suffix.lstrip('.') or 'mp4',
                # video stream is copied, only audio is re-encoded
                '--postprocessor-args',
                'Merger:-c:v copy -c:a aac -b:a 192k',
            ]

        if self.proxy:
            cmd += ['--proxy', self.proxy]

        cmd += self.extra_args
        cmd.append(WATCH_URL_TEMPLATE.format(video_id=video_id))
        return cmd

    def fetch(
        self,
        video_id,
        format_id,
        destination,
        on_progress=None,
        is_audio_only=False,
        on_destination=None,
        logger=None,
    ):
        """
        Download, merge and transcode one format into destination.

        Returns only once the extractor process has exited and the output
        file exists with a non-zero size; the extractor's own "100%" is not
        enough since merging may still be rewriting the file.

        Args:
            video_id: Source video id
            format_id: Format selector (ignored for audio-only)
            destination: Expected output path
            on_progress: Optional callable(FetchProgress)
            is_audio_only: Extract a compressed audio file instead of video
            on_destination: Optional callable(Path) called when the extractor
                announces a different final file
            logger: Optional callable(str) for logging

        Returns:
            FetchResult

        Raises:
            AccessDenied: The platform blocked automated access
            ExtractionFailure: The extractor exited non-zero or could not start
            OutputValidationFailure: The output is missing or empty after exit
        """

        def log(message):
            if logger:
                logger(message)

        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        cmd = self.build_fetch_command(video_id, format_id, destination, is_audio_only)
        log(f'Running: {" ".join(cmd)}')

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                errors='replace',
                env={**os.environ, 'PYTHONUNBUFFERED': '1'},
            )
        except OSError as e:
            raise ExtractionFailure(f'Failed to start download process: {e}') from e

        final_path = destination
        downloaded_path = None
        last_error = None
        access_denied = False

        def repoint(path):
            nonlocal final_path
            path = Path(path.strip().strip('"'))
            if path != final_path:
                log(f'Output re-pointed to {path}')
                final_path = path
                if on_destination:
                    on_destination(path)

        with process:
            # readline() instead of iterating, to get each line as soon as it is written
            for line in iter(process.stdout.readline, ''):
                line = line.strip()
                if not line:
                    continue

                if line.startswith('ERROR:'):
                    last_error = line[len('ERROR:'):].strip()
                    log(line)
                if is_access_denied_message(line):
                    access_denied = True

                match = _MERGER_DEST_RE.match(line) or _PP_DEST_RE.match(line)
                if match:
                    repoint(match.group('path'))

                match = _DOWNLOAD_DEST_RE.match(line) or _ALREADY_DOWNLOADED_RE.match(line)
                if match:
                    downloaded_path = Path(match.group('path').strip())
                    continue

                if _POSTPROCESS_RE.match(line):
                    log(line)
                    if on_progress:
                        on_progress(FetchProgress(percent=100.0, stage='postprocess'))
                    continue

                if line.startswith('[download]'):
                    progress = parse_progress_line(line)
                    if progress and on_progress:
                        on_progress(progress)

            returncode = process.wait()

        log(f'yt-dlp process exited with code {returncode}')

        if returncode != 0:
            if access_denied:
                raise AccessDenied(last_error)
            raise ExtractionFailure(
                f'Failed to download video: {last_error or f"extractor exited with code {returncode}"}'
            )

        # single-file formats skip the merge step and keep their own extension
        if not final_path.exists() and downloaded_path is not None:
            if downloaded_path.exists() and not is_partial_name(downloaded_path.name):
                repoint(str(downloaded_path))

        if not final_path.exists():
            raise OutputValidationFailure(f'Download file not found: {final_path.name}')

        file_size = final_path.stat().st_size
        if file_size == 0:
            raise OutputValidationFailure(f'Download file is empty: {final_path.name}')

        log(f'Download successful: {final_path} ({file_size} bytes)')
        return FetchResult(path=final_path, file_size=file_size)
