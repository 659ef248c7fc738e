"""
Error taxonomy for the download pipeline.

Each error carries the HTTP status the request handlers answer with, so
views can translate any failure into a JSON ``{"error": ...}`` payload
without a per-view mapping table.
"""


class ClipDropError(Exception):
    """Base class for all application errors."""

    status_code = 500
    default_message = 'Unexpected error'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class ValidationError(ClipDropError):
    """Missing or malformed request fields. Never retried."""

    status_code = 400
    default_message = 'Invalid request'


class NotFoundError(ClipDropError):
    """An identifier that does not resolve to anything."""

    status_code = 404
    default_message = 'Not found'


class VideoNotFound(NotFoundError):
    """Metadata for a video id was never fetched via describe."""

    default_message = 'Video information not found'


class JobNotFound(NotFoundError):
    """Unknown or already purged job id."""

    default_message = 'Download not found - please try downloading again'


class JobFailed(NotFoundError):
    """The job reached the failure state; there is nothing to retrieve."""

    default_message = 'Download failed - please try downloading again'


class OutputMissing(NotFoundError):
    """A completed job whose backing file vanished and could not be recovered."""

    default_message = 'Download file not found on server - please try downloading again'


class JobNotReady(ClipDropError):
    """The job has not reached 100% yet."""

    status_code = 409
    default_message = 'Download is not ready yet'


class ExtractionFailure(ClipDropError):
    """The extractor exited non-zero or produced malformed output."""

    status_code = 500
    default_message = 'Failed to fetch video information'


class AccessDenied(ExtractionFailure):
    """
    The upstream platform rejected the request as automated traffic.

    The message always mentions "bot protection" so clients can switch to
    their remediation view instead of the generic error view.
    """

    default_message = (
        "YouTube's bot protection is active. Please try a different video, "
        'or try again in a few minutes.'
    )

    def __init__(self, message=None):
        if message and 'bot protection' not in message.lower():
            message = f'{self.default_message} ({message})'
        super().__init__(message)


class OutputValidationFailure(ExtractionFailure):
    """The output file was missing or empty at the declared-complete boundary."""

    default_message = 'Download file is empty'
