"""
Service layer for video downloads.

This module contains the extractor wrapper, blob stores and metadata cache,
independent of request handling. These are used by:
- The job registry and its Huey background tasks (downloads/jobs.py, downloads/tasks.py)
- The CLI management commands (management/commands/describe.py, sweep_downloads.py)
"""
