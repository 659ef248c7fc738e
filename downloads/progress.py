"""
Progress notification channels.

One channel per open progress stream. A channel polls the job registry on a
fixed interval and yields payloads until the job reaches a terminal state or
the channel is closed. Closing a channel never affects the job itself.
"""

import json
import logging
import threading

from downloads.exceptions import ClipDropError
from downloads.jobs import Job
from downloads.service.constants import COMPLETE_PERCENT, FAILED_PERCENT

logger = logging.getLogger(__name__)

NOT_FOUND_MESSAGE = 'Download not found'
LOST_MESSAGE = 'Download was lost during processing'


def sse_event(payload):
    """Encode a payload as one server-sent event"""
    return f'data: {json.dumps(payload)}\n\n'


class ProgressChannel:
    """
    Polls one job and yields progress payloads.

    Iterating the channel yields SSE-encoded strings; ``payloads()`` yields
    the raw dicts. The channel is also its own cancellation token:
    ``close()`` wakes the poller and ends the stream, and is called both when
    the stream finishes and when the HTTP response is closed after a client
    disconnect.
    """

    def __init__(self, registry, job_id, interval=1.0, on_close=None):
        self.registry = registry
        self.job_id = job_id
        self.interval = interval
        self._cancel = threading.Event()
        self._on_close = on_close
        self._close_lock = threading.Lock()

    @property
    def closed(self):
        return self._cancel.is_set()

    def close(self):
        with self._close_lock:
            if self._cancel.is_set():
                return
            self._cancel.set()
        logger.debug('Progress channel for %s closed', self.job_id)
        if self._on_close:
            self._on_close(self)

    def _progress_payload(self, snapshot):
        payload = {'percent': snapshot.percent, 'state': snapshot.state}
        if snapshot.downloaded_bytes is not None:
            payload['downloadedBytes'] = snapshot.downloaded_bytes
        if snapshot.total_bytes is not None:
            payload['totalBytes'] = snapshot.total_bytes
        return payload

    def _completed_payload(self, snapshot):
        # re-check the file, a completed job may have lost its output since
        try:
            self.registry.resolve_for_retrieval(self.job_id)
        except ClipDropError as e:
            return {'error': e.message, 'percent': FAILED_PERCENT}
        snapshot = self.registry.snapshot(self.job_id) or snapshot
        payload = {
            'percent': COMPLETE_PERCENT,
            'fileName': snapshot.display_file_name,
            'completed': True,
        }
        if snapshot.file_size is not None:
            payload['fileSize'] = snapshot.file_size
        return payload

    def payloads(self):
        """
        Yield payload dicts until a terminal payload or close().

        The first payload is sent immediately; later ones once per interval.
        """
        seen = False
        try:
            while not self._cancel.is_set():
                snapshot = self.registry.snapshot(self.job_id)

                if snapshot is None:
                    yield {'error': LOST_MESSAGE if seen else NOT_FOUND_MESSAGE, 'percent': 0}
                    return
                seen = True

                if snapshot.is_success:
                    yield self._completed_payload(snapshot)
                    return

                if snapshot.state == Job.STATE_FAILED:
                    yield {
                        'error': snapshot.error or 'Download failed',
                        'percent': snapshot.percent,
                    }
                    return

                yield self._progress_payload(snapshot)

                if self._cancel.wait(self.interval):
                    return
        finally:
            self.close()

    def __iter__(self):
        for payload in self.payloads():
            yield sse_event(payload)


class ChannelManager:
    """Tracks open progress channels so they can all be closed at shutdown."""

    def __init__(self, registry, interval=1.0):
        self.registry = registry
        self.interval = interval
        self._channels = set()
        self._lock = threading.Lock()

    def open(self, job_id):
        channel = ProgressChannel(self.registry, job_id, self.interval, on_close=self._discard)
        with self._lock:
            self._channels.add(channel)
        return channel

    def _discard(self, channel):
        with self._lock:
            self._channels.discard(channel)

    @property
    def active_count(self):
        with self._lock:
            return len(self._channels)

    def close_all(self):
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.close()
        return len(channels)
