"""
Django management command for describing a video URL.

Prints the title, duration and available formats, the same data the
info endpoint returns. Nothing is downloaded.
"""

import json
from dataclasses import asdict

from django.core.management.base import BaseCommand, CommandError

from downloads.exceptions import AccessDenied, ClipDropError
from downloads.service.extract import ExtractionClient
from downloads.utils import format_size_mb


class Command(BaseCommand):
    help = 'Show metadata and available formats for a video URL (nothing is downloaded)'

    def add_arguments(self, parser):
        parser.add_argument('url', type=str, help='Video page URL')
        parser.add_argument('--verbose', action='store_true', help='Enable verbose output')
        parser.add_argument('--json', action='store_true', help='Output result as JSON')
        parser.add_argument(
            '--audio-only',
            action='store_true',
            help='Only list audio-only formats',
        )

    def handle(self, *args, **options):
        url = options['url']
        verbose = options['verbose']
        output_json = options['json']

        def log(message):
            if verbose and not output_json:
                self.stdout.write(self.style.NOTICE(message))

        client = ExtractionClient.from_settings()
        try:
            metadata = client.describe(url, logger=log)
        except AccessDenied as e:
            raise CommandError(f'Access denied: {e.message}')
        except ClipDropError as e:
            raise CommandError(e.message)

        formats = metadata.formats
        if options['audio_only']:
            formats = [f for f in formats if f.is_audio_only]

        if output_json:
            data = metadata.to_dict()
            data['formats'] = [asdict(f) for f in formats]
            self.stdout.write(json.dumps(data, indent=2))
            return

        self.stdout.write(self.style.SUCCESS(metadata.title or metadata.id))
        self.stdout.write(f'Id: {metadata.id}')
        self.stdout.write(f'Duration: {metadata.duration}')
        self.stdout.write(f'Views: {metadata.views}')
        self.stdout.write(f'\n{len(formats)} formats:')
        for fmt in formats:
            size = fmt.filesize or fmt.filesize_approx
            size_str = format_size_mb(size) if size else '?'
            self.stdout.write(
                f'  {fmt.format_id:>10}  {fmt.ext:5}  {fmt.resolution or "":12}  '
                f'{fmt.quality:10}  {size_str}'
            )
