"""
Management command to clean up the download working directory.

Removes output files left behind by failed, abandoned or never-retrieved
downloads. The web process runs the same sweep periodically, including
yt-dlp intermediates; this command runs outside it and cannot tell which
intermediates still belong to a running fetch, so it leaves them alone.
"""

from django.core.management.base import BaseCommand, CommandError

from downloads.apps import get_job_registry
from downloads.service import config
from downloads.utils import format_size_mb


def _plural(count, singular, plural):
    return singular if count == 1 else plural


class Command(BaseCommand):
    help = 'Delete stale files from the download working directory'

    def add_arguments(self, parser):
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show what would be deleted without actually deleting',
        )
        parser.add_argument(
            '--force',
            action='store_true',
            help='Delete files without confirmation',
        )
        parser.add_argument(
            '--max-age',
            type=int,
            default=config.get_sweep_max_age_seconds() // 60,
            help='Minimum age in minutes before a file is considered stale '
            f'(default: {config.get_sweep_max_age_seconds() // 60})',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        force = options['force']
        max_age_minutes = options['max_age']

        # jobs of the serving process are invisible here; a finished file is
        # only safe to delete once its job would have been purged anyway
        min_age_minutes = -(-config.get_terminal_retention_seconds() // 60)
        if max_age_minutes < min_age_minutes:
            raise CommandError(f'--max-age must be at least {min_age_minutes} minutes')

        registry = get_job_registry()
        store = registry.store

        preview = registry.sweep(max_age=max_age_minutes * 60, dry_run=True, keep_partial=True)
        if not preview.deleted:
            self.stdout.write(
                self.style.SUCCESS(
                    f'No files older than {max_age_minutes} minutes in {store.root}'
                )
            )
            return

        count = len(preview.deleted)
        self.stdout.write(
            f'\nFound {count} stale {_plural(count, "file", "files")} in {store.root}:'
        )
        self.stdout.write('=' * 80)

        total_size = 0
        for key in preview.deleted:
            info = store.stat(key)
            size = info.size if info else 0
            total_size += size
            self.stdout.write(f'{key:60} | {format_size_mb(size):>12}')

        self.stdout.write('=' * 80)
        self.stdout.write(f'Total size: {format_size_mb(total_size)}\n')

        if dry_run:
            self.stdout.write(
                self.style.WARNING(f'DRY RUN: Would delete {count} {_plural(count, "file", "files")}')
            )
            self.stdout.write('Run without --dry-run to actually delete')
            return

        if not force:
            response = input(f'\nDelete these {count} {_plural(count, "file", "files")}? [y/N]: ')
            if response.lower() != 'y':
                self.stdout.write('Cancelled')
                return

        report = registry.sweep(max_age=max_age_minutes * 60, keep_partial=True)

        for key in report.deleted:
            self.stdout.write(self.style.SUCCESS(f'✓ Deleted: {key}'))
        for key, error in report.errors:
            self.stdout.write(self.style.ERROR(f'✗ Failed to delete {key or store.root}: {error}'))

        deleted = len(report.deleted)
        self.stdout.write(
            self.style.SUCCESS(
                f'\n✓ Deleted {deleted} of {count} {_plural(count, "file", "files")}'
            )
        )
