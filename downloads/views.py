import json
import logging
from pathlib import Path

from django.http import FileResponse, HttpResponse, JsonResponse, StreamingHttpResponse
from django.utils.http import content_disposition_header
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from downloads.apps import get_channel_manager, get_job_registry
from downloads.exceptions import (
    ClipDropError,
    JobNotFound,
    NotFoundError,
    OutputMissing,
    OutputValidationFailure,
    ValidationError,
)
from downloads.service.constants import CONTENT_TYPES
from downloads.utils import format_size_mb, is_partial_name

logger = logging.getLogger(__name__)


def _error_response(error):
    return JsonResponse({'error': error.message}, status=error.status_code)


def _parse_body(request):
    """
    Read a JSON or form-encoded request body into a dict.

    Raises:
        ValidationError: Malformed JSON or a non-object payload
    """
    if request.content_type == 'application/json':
        if not request.body:
            return {}
        try:
            data = json.loads(request.body)
        except ValueError as e:
            raise ValidationError('Invalid JSON body') from e
        if not isinstance(data, dict):
            raise ValidationError('Request body must be a JSON object')
        return data
    return request.POST.dict()


def _as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _content_type_for(key):
    return CONTENT_TYPES.get(Path(key).suffix.lower(), 'application/octet-stream')


def _file_response(request, store, key, file_name):
    """
    Serve a blob as an attachment, or only its headers for HEAD.

    Raises:
        OutputMissing: The blob vanished
        OutputValidationFailure: The blob is empty or unreadable
    """
    info = store.stat(key)
    if info is None:
        raise OutputMissing()
    if info.size == 0:
        raise OutputValidationFailure()

    content_type = _content_type_for(key)

    if request.method == 'HEAD':
        response = HttpResponse(content_type=content_type)
        response['Content-Disposition'] = content_disposition_header(True, file_name)
        response['Content-Length'] = str(info.size)
        return response

    try:
        handle = store.get(key)
    except OSError as e:
        raise OutputValidationFailure(f'Failed to read download file: {e}') from e

    response = FileResponse(handle, as_attachment=True, filename=file_name, content_type=content_type)
    response['Content-Length'] = str(info.size)
    return response


@csrf_exempt
@require_POST
def video_info_view(request):
    """
    Describe a video URL.

    Params:
        url (required): Video page URL

    Returns:
        JSON metadata {id, title, thumbnail, duration, views, formats[]}
    """
    try:
        data = _parse_body(request)
        metadata = get_job_registry().describe_video(data.get('url'))
    except ClipDropError as e:
        logger.warning('Describe failed: %s', e.message)
        return _error_response(e)
    return JsonResponse(metadata.to_dict())


@csrf_exempt
@require_POST
def download_start_view(request):
    """
    Start a download job for a described video.

    Params:
        videoId (required): Video id returned by the info endpoint
        formatId (required unless isAudioOnly): Format to fetch
        isAudioOnly (optional): Fetch an mp3 of the best audio instead

    Returns:
        JSON {jobId}
    """
    try:
        data = _parse_body(request)
        job_id = get_job_registry().create_job(
            data.get('videoId'),
            format_id=data.get('formatId'),
            is_audio_only=_as_bool(data.get('isAudioOnly')),
        )
    except ClipDropError as e:
        return _error_response(e)
    return JsonResponse({'jobId': job_id})


@require_GET
def download_progress_view(request, job_id):
    """
    SSE endpoint that streams progress for a download job.

    Each event is a JSON payload with at least 'percent'; the stream ends
    after a 'completed' or 'error' payload.
    """
    channel = get_channel_manager().open(job_id)
    response = StreamingHttpResponse(channel, content_type='text/event-stream')
    response['Cache-Control'] = 'no-cache'
    response['X-Accel-Buffering'] = 'no'
    return response


@require_http_methods(['GET', 'HEAD'])
def download_file_view(request, job_id):
    """
    Serve the finished file of a job.

    HEAD only checks availability and does not count as a retrieval.
    """
    registry = get_job_registry()
    try:
        key = registry.resolve_for_retrieval(job_id)
        snapshot = registry.snapshot(job_id)
        if snapshot is None:
            # purged between the two lookups
            raise JobNotFound()
        response = _file_response(request, registry.store, key, snapshot.display_file_name)
    except ClipDropError as e:
        if request.method == 'HEAD':
            return HttpResponse(status=e.status_code)
        return _error_response(e)

    if request.method == 'GET':
        registry.mark_retrieved(job_id)
        logger.info('Serving %s for job %s as %s', key, job_id, snapshot.display_file_name)
    return response


@require_GET
def available_files_view(request):
    """List finished files in the working area, newest first"""
    files = [
        {'name': blob.key, 'size': format_size_mb(blob.size)}
        for blob in get_job_registry().available_files()
    ]
    return JsonResponse({'files': files})


@require_GET
def direct_download_view(request, filename):
    """Serve a finished file from the working area by name"""
    store = get_job_registry().store
    try:
        if is_partial_name(filename):
            raise NotFoundError('File not found')
        try:
            store.path_for(filename)
        except ValueError as e:
            raise NotFoundError('File not found') from e
        if store.stat(filename) is None:
            raise NotFoundError('File not found')
        response = _file_response(request, store, filename, filename)
    except ClipDropError as e:
        return _error_response(e)
    logger.info('Direct serving %s', filename)
    return response
