import atexit
import logging
import os
import sys
import threading

from django.apps import AppConfig, apps
from django.conf import settings

logger = logging.getLogger(__name__)


def _is_server_process():
    """False for management commands and the runserver autoreload watcher"""
    argv = sys.argv
    if len(argv) > 1 and os.path.basename(argv[0]) == 'manage.py':
        if argv[1] != 'runserver':
            return False
        return '--noreload' in argv or os.environ.get('RUN_MAIN') == 'true'
    return True


def build_job_registry():
    """Build the job registry from settings"""
    from downloads import tasks
    from downloads.jobs import JobRegistry
    from downloads.service import config
    from downloads.service.extract import ExtractionClient
    from downloads.service.metadata import MetadataCache
    from downloads.service.storage import get_archive_store, get_working_store

    return JobRegistry(
        store=get_working_store(),
        metadata_cache=MetadataCache(),
        extractor=ExtractionClient.from_settings(),
        archive_store=get_archive_store(),
        dispatcher=tasks.dispatch_fetch,
        purge_scheduler=tasks.schedule_purge,
        terminal_retention=config.get_terminal_retention_seconds(),
        retrieved_retention=config.get_retrieved_retention_seconds(),
        sweep_max_age=config.get_sweep_max_age_seconds(),
    )


class DownloadsConfig(AppConfig):
    name = 'downloads'
    verbose_name = 'Downloads'

    registry = None
    channels = None
    consumer = None

    def ready(self):
        """Create the job registry and channel manager, start the worker in server processes"""
        from downloads.progress import ChannelManager
        from downloads.service import config

        self._worker_lock = threading.Lock()
        self.registry = build_job_registry()
        self.channels = ChannelManager(self.registry, config.get_progress_interval())

        if settings.CLIPDROP_START_WORKER and _is_server_process():
            self.start_worker()

        atexit.register(self.shutdown)

    def start_worker(self):
        """
        Start the huey consumer on threads inside this process.

        Jobs live in this process's memory, so the consumer cannot run as a
        separate `run_huey` process.
        """
        from huey.contrib.djhuey import HUEY

        from downloads.tasks import InProcessConsumer

        with self._worker_lock:
            if self.consumer is not None or HUEY.immediate:
                return self.consumer
            self.consumer = InProcessConsumer(
                HUEY,
                workers=settings.CLIPDROP_WORKER_THREADS,
                worker_type='thread',
                periodic=True,
            )
            self.consumer.start()
            logger.info('Started in-process worker with %d threads', settings.CLIPDROP_WORKER_THREADS)
            return self.consumer

    def shutdown(self):
        if self.channels is not None:
            self.channels.close_all()
        if self.registry is not None:
            self.registry.shutdown()
        with self._worker_lock:
            if self.consumer is not None:
                # running extractions are lost with the process anyway
                self.consumer.stop(graceful=False)
                self.consumer = None


def get_app_config():
    return apps.get_app_config('downloads')


def get_job_registry():
    return get_app_config().registry


def get_channel_manager():
    return get_app_config().channels
