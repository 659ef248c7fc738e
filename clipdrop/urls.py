"""
URL configuration for clipdrop project.

All endpoints live under /api/videos/ and answer JSON, an SSE stream or a
file attachment.
"""

from django.urls import path

from downloads.views import (
    available_files_view,
    direct_download_view,
    download_file_view,
    download_progress_view,
    download_start_view,
    video_info_view,
)

urlpatterns = [
    path('api/videos/info', video_info_view, name='video_info'),
    path('api/videos/download', download_start_view, name='download_start'),
    path(
        'api/videos/download-progress/<str:job_id>',
        download_progress_view,
        name='download_progress',
    ),
    path('api/videos/download/<str:job_id>', download_file_view, name='download_file'),
    path('api/videos/available-files', available_files_view, name='available_files'),
    path(
        'api/videos/direct-download/<str:filename>',
        direct_download_view,
        name='direct_download',
    ),
]
