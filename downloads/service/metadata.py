"""
Video metadata types and the metadata cache.

Metadata is written on every successful describe and read when a fetch
job is created or a display file name is derived.
"""

from dataclasses import asdict, dataclass, field
from typing import List, Optional

from django.core.cache import caches


@dataclass
class VideoFormat:
    """One downloadable encoding of a video"""

    format_id: str
    format: str = ''
    quality: str = 'unknown'
    ext: str = ''
    resolution: Optional[str] = None
    filesize: Optional[int] = None
    filesize_approx: Optional[int] = None

    @property
    def is_audio_only(self):
        return self.resolution == 'audio only'


@dataclass
class VideoMetadata:
    """Descriptive metadata for a video, as returned to clients"""

    id: str
    title: str
    thumbnail: str = ''
    duration: str = 'Unknown'
    views: str = '0K views'
    formats: List[VideoFormat] = field(default_factory=list)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        formats = [VideoFormat(**f) for f in data.get('formats', [])]
        return cls(
            id=data['id'],
            title=data.get('title', ''),
            thumbnail=data.get('thumbnail', ''),
            duration=data.get('duration', 'Unknown'),
            views=data.get('views', '0K views'),
            formats=formats,
        )


class MetadataCache:
    """
    Keyed lookup from video id to VideoMetadata.

    Backed by a Django cache alias. Entries never expire; unbounded growth
    is accepted.
    """

    KEY_PREFIX = 'video-metadata'

    def __init__(self, alias='metadata'):
        self._cache = caches[alias]

    def _key(self, video_id):
        return f'{self.KEY_PREFIX}:{video_id}'

    def store(self, metadata):
        self._cache.set(self._key(metadata.id), metadata.to_dict(), timeout=None)
        return metadata

    def get(self, video_id):
        """
        Args:
            video_id: Source video identifier

        Returns:
            VideoMetadata or None if the video was never described
        """
        if not video_id:
            return None
        data = self._cache.get(self._key(video_id))
        if data is None:
            return None
        return VideoMetadata.from_dict(data)
