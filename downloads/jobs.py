"""
Download job registry.

The registry is the single owner of every in-flight and recently finished
job. Request handlers, background tasks and progress streams only go
through its methods; none of them touch a Job directly.

Lifecycle:
    created -> running -> complete -> retrieved -> purged
    created/running -> failed -> purged
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from django.utils import timezone

from downloads.exceptions import (
    ClipDropError,
    ExtractionFailure,
    JobFailed,
    JobNotFound,
    JobNotReady,
    OutputMissing,
    OutputValidationFailure,
    ValidationError,
    VideoNotFound,
)
from downloads.service.constants import (
    AUDIO_CONTAINER,
    AUDIO_ONLY_FORMAT,
    COMPLETE_PERCENT,
    FAILED_PERCENT,
    MERGE_PERCENT,
    OUTPUT_EXTENSIONS,
    RETRIEVAL_PERCENT_CEILING,
    VIDEO_CONTAINER,
)
from downloads.utils import (
    build_display_file_name,
    build_output_name,
    generate_job_id,
    is_output_name_for,
    is_partial_name,
    is_safe_token,
    output_name_prefix,
)

logger = logging.getLogger(__name__)


@dataclass
class Job:
    """Mutable job record, only ever touched while holding the registry lock."""

    STATE_CREATED = 'created'
    STATE_RUNNING = 'running'
    STATE_COMPLETE = 'complete'
    STATE_RETRIEVED = 'retrieved'
    STATE_FAILED = 'failed'
    STATE_PURGED = 'purged'

    ACTIVE_STATES = (STATE_CREATED, STATE_RUNNING)
    SUCCESS_STATES = (STATE_COMPLETE, STATE_RETRIEVED)

    job_id: str
    video_id: str
    format_id: Optional[str]
    is_audio_only: bool
    output_key: str
    title: Optional[str]
    display_file_name: str
    created_at: datetime
    state: str = STATE_CREATED
    percent: int = 0
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    file_size: Optional[int] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    retrieved_at: Optional[datetime] = None
    purge_after: Optional[datetime] = None

    @property
    def format_token(self):
        return AUDIO_ONLY_FORMAT if self.is_audio_only else self.format_id

    @property
    def is_active(self):
        return self.state in self.ACTIVE_STATES

    def snapshot(self):
        return JobSnapshot(
            job_id=self.job_id,
            video_id=self.video_id,
            format_id=self.format_id,
            is_audio_only=self.is_audio_only,
            state=self.state,
            percent=self.percent,
            downloaded_bytes=self.downloaded_bytes,
            total_bytes=self.total_bytes,
            file_size=self.file_size,
            output_key=self.output_key,
            display_file_name=self.display_file_name,
            error=self.error,
            created_at=self.created_at,
            finished_at=self.finished_at,
            purge_after=self.purge_after,
        )


@dataclass(frozen=True)
class JobSnapshot:
    """Read-only copy of a Job handed to observers."""

    job_id: str
    video_id: str
    format_id: Optional[str]
    is_audio_only: bool
    state: str
    percent: int
    downloaded_bytes: Optional[int]
    total_bytes: Optional[int]
    file_size: Optional[int]
    output_key: str
    display_file_name: str
    error: Optional[str]
    created_at: datetime
    finished_at: Optional[datetime]
    purge_after: Optional[datetime]

    @property
    def is_success(self):
        return self.state in Job.SUCCESS_STATES


@dataclass
class SweepReport:
    """Outcome of one sweep pass"""

    purged_jobs: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    errors: List[Tuple[str, str]] = field(default_factory=list)


class _ProgressSubscription:
    """
    One-shot progress listener handed to the extraction client.

    Closed as soon as the fetch returns, so a late callback from the
    extractor can never touch a finished or purged job.
    """

    def __init__(self, registry, job_id):
        self._registry = registry
        self._job_id = job_id
        self._active = True

    def __call__(self, progress):
        if not self._active:
            return
        if progress.stage == 'postprocess':
            self._registry.report_postprocessing(self._job_id)
        else:
            self._registry.report_progress(
                self._job_id,
                progress.percent,
                downloaded_bytes=progress.downloaded_bytes,
                total_bytes=progress.total_bytes,
            )

    def on_destination(self, path):
        if self._active:
            self._registry.repoint_output(self._job_id, path)

    def close(self):
        self._active = False


class JobRegistry:
    """
    Owns the set of download jobs.

    Args:
        store: FileSystemBlobStore over the working directory
        metadata_cache: MetadataCache with describe results
        extractor: ExtractionClient running the fetches
        archive_store: Optional BlobStore completed files are published to
        dispatcher: callable(job_id) that schedules run_job() in the background
        purge_scheduler: callable(job_id, delay_seconds) scheduling purge_job()
        terminal_retention: Seconds a complete/failed job is kept
        retrieved_retention: Seconds a retrieved job is kept
        sweep_max_age: Age in seconds after which unreferenced files are deleted
        clock: callable returning an aware datetime
    """

    def __init__(
        self,
        store,
        metadata_cache,
        extractor,
        archive_store=None,
        dispatcher=None,
        purge_scheduler=None,
        terminal_retention=1800,
        retrieved_retention=300,
        sweep_max_age=3600,
        clock=None,
    ):
        self._store = store
        self._metadata = metadata_cache
        self._extractor = extractor
        self._archive = archive_store
        self._dispatcher = dispatcher or self.run_job
        self._purge_scheduler = purge_scheduler
        self.terminal_retention = terminal_retention
        self.retrieved_retention = retrieved_retention
        self.sweep_max_age = sweep_max_age
        self._clock = clock or timezone.now

        self._lock = threading.RLock()
        self._jobs = {}
        self._issued_ids = set()
        self._closed = False

    @property
    def store(self):
        return self._store

    @property
    def metadata_cache(self):
        return self._metadata

    def describe_video(self, url):
        """
        Describe a URL and cache the result for later fetches.

        Raises:
            ValidationError: Missing url
            AccessDenied, NotFoundError, ExtractionFailure: from the extractor
        """
        if url is not None and not isinstance(url, str):
            raise ValidationError('Invalid url')
        url = (url or '').strip()
        if not url:
            raise ValidationError('Missing required field: url')
        metadata = self._extractor.describe(url, logger=self._job_logger('describe'))
        self._metadata.store(metadata)
        logger.info('Described %s: %s (%d formats)', metadata.id, metadata.title, len(metadata.formats))
        return metadata

    def available_files(self):
        """
        Finished output files in the working area, newest first.

        Partial files, empty files and outputs of still-active jobs are left out.
        """
        with self._lock:
            active_stems = [Path(job.output_key).stem for job in self._jobs.values() if job.is_active]
        files = [
            blob
            for blob in self._store.list()
            if Path(blob.key).suffix in OUTPUT_EXTENSIONS
            and not is_partial_name(blob.key)
            and blob.size > 0
            and not any(blob.key.startswith(stem) for stem in active_stems)
        ]
        return sorted(files, key=lambda blob: blob.modified_at, reverse=True)

    def _new_job_id(self):
        job_id = generate_job_id()
        while job_id in self._issued_ids:
            job_id = generate_job_id()
        self._issued_ids.add(job_id)
        return job_id

    def _job_logger(self, job_id):
        def log(message):
            logger.debug('[%s] %s', job_id, message)

        return log

    def create_job(self, video_id, format_id=None, is_audio_only=False):
        """
        Register a new job and start its fetch in the background.

        Returns immediately with the job id; the extraction runs on a worker.

        Raises:
            ValidationError: Missing or unsafe video/format id
            VideoNotFound: The video was never described
            ExtractionFailure: The fetch could not be dispatched
        """
        if isinstance(format_id, int) and not isinstance(format_id, bool):
            format_id = str(format_id)
        if not video_id:
            raise ValidationError('Missing required field: videoId')
        if not is_audio_only and not format_id:
            raise ValidationError('Missing required field: formatId')
        if not is_safe_token(video_id):
            raise ValidationError(f'Invalid videoId: {video_id}')
        if not is_audio_only and not is_safe_token(format_id):
            raise ValidationError(f'Invalid formatId: {format_id}')

        metadata = self._metadata.get(video_id)
        if metadata is None:
            raise VideoNotFound()

        format_token = AUDIO_ONLY_FORMAT if is_audio_only else format_id
        container = AUDIO_CONTAINER if is_audio_only else VIDEO_CONTAINER
        now = self._clock()

        with self._lock:
            if self._closed:
                raise ExtractionFailure('Download service is shutting down')
            job_id = self._new_job_id()
            job = Job(
                job_id=job_id,
                video_id=video_id,
                format_id=None if is_audio_only else format_id,
                is_audio_only=is_audio_only,
                output_key=build_output_name(
                    video_id, format_token, container, int(now.timestamp() * 1000)
                ),
                title=metadata.title,
                display_file_name=build_display_file_name(metadata.title, video_id, container),
                created_at=now,
            )
            self._jobs[job_id] = job

        logger.info('Created job %s for %s (format %s)', job_id, video_id, format_token)

        try:
            self._dispatcher(job_id)
        except Exception as e:
            logger.exception('Failed to dispatch job %s', job_id)
            self.fail_job(job_id, f'Failed to start download: {e}')
            raise ExtractionFailure(f'Failed to start download: {e}') from e

        return job_id

    def run_job(self, job_id):
        """
        Run the extraction for a created job. Executed by the background worker.

        Extraction errors become a failed job; nothing is raised.

        Returns:
            The job state after the run, or None for an unknown job
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning('Job %s vanished before it started', job_id)
                return None
            if job.state != Job.STATE_CREATED:
                logger.warning('Job %s already started (state %s)', job_id, job.state)
                return job.state
            job.state = Job.STATE_RUNNING
            job.started_at = self._clock()
            destination = self._store.path_for(job.output_key)
            video_id = job.video_id
            format_id = job.format_id
            is_audio_only = job.is_audio_only

        subscription = _ProgressSubscription(self, job_id)
        succeeded = False
        try:
            self._extractor.fetch(
                video_id,
                format_id,
                destination,
                on_progress=subscription,
                is_audio_only=is_audio_only,
                on_destination=subscription.on_destination,
                logger=self._job_logger(job_id),
            )
            succeeded = True
        except ClipDropError as e:
            logger.warning('Job %s failed: %s', job_id, e.message)
            self.fail_job(job_id, e.message)
        except Exception as e:
            logger.exception('Job %s crashed', job_id)
            self.fail_job(job_id, f'Unexpected error: {e}')
        finally:
            subscription.close()

        if succeeded:
            self.complete_job(job_id)

        with self._lock:
            job = self._jobs.get(job_id)
            return job.state if job else Job.STATE_PURGED

    def report_progress(self, job_id, raw_percent, downloaded_bytes=None, total_bytes=None):
        """
        Apply an extractor progress tick.

        The raw 0-100 value is scaled into [0, 90]; the percent never moves
        backwards and terminal jobs ignore the update.

        Returns:
            bool: True if the job was updated
        """
        display = int(raw_percent * RETRIEVAL_PERCENT_CEILING // 100)
        display = max(0, min(RETRIEVAL_PERCENT_CEILING, display))

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                return False
            job.percent = max(job.percent, display)
            if downloaded_bytes is not None:
                job.downloaded_bytes = downloaded_bytes
            if total_bytes is not None:
                job.total_bytes = total_bytes
            return True

    def report_postprocessing(self, job_id):
        """Move an active job into the merge/transcode range."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                return False
            job.percent = max(job.percent, MERGE_PERCENT)
            return True

    def repoint_output(self, job_id, path):
        """Follow the extractor when it announces a different final file."""
        try:
            key = self._store.key_for(path)
        except ValueError:
            logger.warning('Job %s: ignoring destination outside the working area: %s', job_id, path)
            return False

        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                return False
            if key != job.output_key:
                logger.info('Job %s output re-pointed: %s -> %s', job_id, job.output_key, key)
                job.output_key = key
                ext = Path(key).suffix.lstrip('.')
                job.display_file_name = build_display_file_name(job.title, job.video_id, ext)
            return True

    def complete_job(self, job_id):
        """
        Mark a job complete after re-validating its output.

        A missing or empty output fails the job instead.

        Returns:
            bool: True if the job is now complete
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                return False

            info = self._store.stat(job.output_key)
            if info is None:
                self._fail_locked(job, f'Download file not found: {job.output_key}')
                return False
            if info.size == 0:
                self._fail_locked(job, OutputValidationFailure.default_message)
                return False

            now = self._clock()
            job.state = Job.STATE_COMPLETE
            job.percent = COMPLETE_PERCENT
            job.file_size = info.size
            job.finished_at = now
            job.purge_after = now + timedelta(seconds=self.terminal_retention)
            output_key = job.output_key

        logger.info('Job %s complete: %s (%d bytes)', job_id, output_key, info.size)
        self._publish(job_id, output_key)
        return True

    def _publish(self, job_id, key):
        if self._archive is None:
            return
        try:
            self._archive.put(key, self._store.path_for(key))
        except Exception:
            # the working copy is still served
            logger.exception('Job %s: failed to archive %s to %s', job_id, key, self._archive.name)
            return
        logger.info('Job %s archived %s to %s', job_id, key, self._archive.name)

    def fail_job(self, job_id, cause):
        """
        Move an active job to the failure state.

        Returns:
            bool: True if the job was failed by this call
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_active:
                return False
            self._fail_locked(job, cause)
            return True

    def _fail_locked(self, job, cause):
        now = self._clock()
        job.state = Job.STATE_FAILED
        job.percent = FAILED_PERCENT
        job.error = cause or 'Download failed'
        job.finished_at = now
        job.purge_after = now + timedelta(seconds=self.terminal_retention)
        logger.warning('Job %s failed: %s', job.job_id, job.error)

    def resolve_for_retrieval(self, job_id):
        """
        Resolve a finished job to the key of its backing file.

        When the recorded file is gone, the newest non-partial file with the
        same video/format prefix and extension is adopted instead.

        Returns:
            str: key in the working store

        Raises:
            JobNotFound: Unknown or purged job
            JobFailed: The job failed
            JobNotReady: The job is still created/running
            OutputMissing: The file vanished and nothing could be recovered
            OutputValidationFailure: The file is empty
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state == Job.STATE_PURGED:
                raise JobNotFound()
            if job.state == Job.STATE_FAILED:
                raise JobFailed(f'Download failed: {job.error}')
            if job.is_active:
                raise JobNotReady(f'Download is not ready yet ({job.percent}%)')

            info = self._store.stat(job.output_key)
            if info is None:
                info = self._recover_output(job)
                if info is None:
                    raise OutputMissing()
                logger.info('Job %s recovered output %s -> %s', job_id, job.output_key, info.key)
                job.output_key = info.key

            if info.size == 0:
                raise OutputValidationFailure()
            return job.output_key

    def _recover_output(self, job):
        prefix = output_name_prefix(job.video_id, job.format_token)
        ext = Path(job.output_key).suffix
        candidates = [
            blob
            for blob in self._store.list(prefix)
            if is_output_name_for(blob.key, job.video_id, job.format_token, ext)
            and not is_partial_name(blob.key) and blob.size > 0
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda blob: blob.modified_at)

    def mark_retrieved(self, job_id):
        """
        Record a retrieval and schedule the purge after the short window.

        The job stays resolvable until then, so a repeated request for the
        same file still succeeds.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state not in Job.SUCCESS_STATES:
                return False
            now = self._clock()
            job.state = Job.STATE_RETRIEVED
            job.retrieved_at = now
            job.purge_after = now + timedelta(seconds=self.retrieved_retention)

        if self._purge_scheduler is not None:
            try:
                self._purge_scheduler(job_id, self.retrieved_retention)
            except Exception:
                # the periodic sweep purges it instead
                logger.exception('Failed to schedule purge of job %s', job_id)
        return True

    def snapshot(self, job_id):
        """
        Returns:
            JobSnapshot or None for an unknown/purged job
        """
        with self._lock:
            job = self._jobs.get(job_id)
            return job.snapshot() if job else None

    def list_jobs(self):
        with self._lock:
            snapshots = [job.snapshot() for job in self._jobs.values()]
        return sorted(snapshots, key=lambda s: s.created_at)

    def has_issued(self, job_id):
        with self._lock:
            return job_id in self._issued_ids

    def purge_job(self, job_id, force=False):
        """
        Remove a finished job and its backing file.

        Active jobs are never purged. Without force, the job must be past its
        purge deadline. The file is kept while another job still references it.

        Returns:
            bool: True if the job was purged
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_active:
                return False
            if not force and (job.purge_after is None or self._clock() < job.purge_after):
                return False

            del self._jobs[job_id]
            job.state = Job.STATE_PURGED
            key = job.output_key
            shared = any(other.output_key == key for other in self._jobs.values())

        if not shared:
            try:
                self._store.delete(key)
            except OSError as e:
                logger.warning('Job %s purged but %s could not be deleted: %s', job_id, key, e)
        logger.info('Purged job %s', job_id)
        return True

    def sweep(self, max_age=None, dry_run=False, keep_partial=False):
        """
        Purge expired jobs, then delete stale unreferenced working files.

        A file is never deleted while its name starts with the output stem of
        a job still in the registry, whatever its age. Per-file errors are
        recorded and the pass continues.

        Args:
            max_age: File age threshold in seconds (default sweep_max_age)
            dry_run: Report what would be removed without removing it
            keep_partial: Never delete in-progress intermediates, for callers
                that cannot see the jobs of the serving process

        Returns:
            SweepReport
        """
        if max_age is None:
            max_age = self.sweep_max_age
        report = SweepReport()
        now = self._clock()

        with self._lock:
            expired = [
                job.job_id
                for job in self._jobs.values()
                if not job.is_active and job.purge_after is not None and job.purge_after <= now
            ]

        for job_id in expired:
            if dry_run or self.purge_job(job_id):
                report.purged_jobs.append(job_id)

        # purged jobs are already gone from the map, except in a dry run
        purged = set(report.purged_jobs)
        with self._lock:
            live_stems = [
                Path(job.output_key).stem
                for job in self._jobs.values()
                if job.job_id not in purged
            ]

        try:
            blobs = self._store.list()
        except OSError as e:
            logger.error('Sweep could not list %s: %s', self._store.root, e)
            report.errors.append(('', str(e)))
            return report

        for blob in blobs:
            if any(blob.key.startswith(stem) for stem in live_stems):
                report.skipped.append(blob.key)
                continue
            if keep_partial and is_partial_name(blob.key):
                report.skipped.append(blob.key)
                continue
            if (now - blob.modified_at).total_seconds() < max_age:
                continue
            if dry_run:
                report.deleted.append(blob.key)
                continue
            try:
                self._store.delete(blob.key)
            except OSError as e:
                logger.warning('Sweep failed to delete %s: %s', blob.key, e)
                report.errors.append((blob.key, str(e)))
                continue
            report.deleted.append(blob.key)

        if report.purged_jobs or report.deleted or report.errors:
            logger.info(
                'Sweep: %d jobs purged, %d files deleted, %d errors',
                len(report.purged_jobs),
                len(report.deleted),
                len(report.errors),
            )
        return report

    def shutdown(self):
        """
        Stop accepting jobs.

        Returns:
            list: ids of jobs still active at shutdown (they are lost)
        """
        with self._lock:
            self._closed = True
            active = [job.job_id for job in self._jobs.values() if job.is_active]
        if active:
            logger.warning('Shutting down with %d active jobs', len(active))
        return active
