"""
WSGI config for clipdrop project.

Exposes the WSGI callable as a module-level variable named ``application``.
The download worker runs inside this process, so the server must run a
single process (threads are fine), e.g.:

    gunicorn clipdrop.wsgi --workers 1 --threads 8
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'clipdrop.settings')

application = get_wsgi_application()
