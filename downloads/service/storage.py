"""
Blob storage backends.

Uniform put/get/stat/delete/list contract over:
- the local working directory the extractor writes into,
- S3-compatible object storage (boto3),
- an HTTP key-value database (Replit DB protocol) storing base64 payloads.
"""

import base64
import io
import json
import mimetypes
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from urllib.parse import quote

import boto3
import requests
from botocore.exceptions import ClientError

from downloads.service import config


@dataclass
class BlobInfo:
    """Metadata about one stored blob"""

    key: str
    size: int
    modified_at: datetime


class BlobStore:
    """Contract shared by every backend."""

    name = 'base'

    def put(self, key, source_path):
        """Store the file at source_path under key."""
        raise NotImplementedError

    def get(self, key):
        """
        Open a stored blob for reading.

        Returns:
            A binary file-like object; the caller closes it.

        Raises:
            FileNotFoundError: If no blob is stored under key
        """
        raise NotImplementedError

    def stat(self, key) -> Optional[BlobInfo]:
        """Return BlobInfo for key, or None if it does not exist."""
        raise NotImplementedError

    def delete(self, key) -> bool:
        """Delete key. Returns False when there was nothing to delete."""
        raise NotImplementedError

    def list(self, prefix='') -> List[BlobInfo]:
        raise NotImplementedError

    def exists(self, key):
        return self.stat(key) is not None


class FileSystemBlobStore(BlobStore):
    """Flat directory of files; keys are plain file names."""

    name = 'filesystem'

    def __init__(self, root):
        self.root = Path(root)

    def ensure_root(self):
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def path_for(self, key):
        """
        Map a key to its path inside the root.

        Raises:
            ValueError: If key is not a plain file name
        """
        key = str(key)
        if not key or Path(key).name != key or key in ('.', '..'):
            raise ValueError(f'Invalid blob key: {key!r}')
        return self.root / key

    def key_for(self, path):
        """Map a path inside the root back to its key."""
        path = Path(path)
        if path.parent.resolve() != self.root.resolve():
            raise ValueError(f'{path} is outside of {self.root}')
        return path.name

    def put(self, key, source_path):
        self.ensure_root()
        target = self.path_for(key)
        source_path = Path(source_path)
        if source_path.resolve() != target.resolve():
            shutil.copy2(source_path, target)
        return key

    def get(self, key):
        return open(self.path_for(key), 'rb')

    def stat(self, key):
        path = self.path_for(key)
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        if not path.is_file():
            return None
        return BlobInfo(
            key=key,
            size=st.st_size,
            modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
        )

    def delete(self, key):
        try:
            self.path_for(key).unlink()
            return True
        except FileNotFoundError:
            return False

    def list(self, prefix=''):
        if not self.root.exists():
            return []
        blobs = []
        for path in self.root.iterdir():
            if not path.name.startswith(prefix):
                continue
            try:
                info = self.stat(path.name)
            except OSError:
                # vanished between iterdir() and stat()
                continue
            if info is not None:
                blobs.append(info)
        return blobs


class S3BlobStore(BlobStore):
    """S3-compatible object storage bucket, keys optionally namespaced by a prefix."""

    name = 's3'

    def __init__(self, bucket, prefix='', region=None, endpoint_url=None, client=None):
        self._bucket = bucket
        self._prefix = prefix.strip('/') + '/' if prefix else ''
        self._s3_client = client or boto3.client(
            's3', region_name=region, endpoint_url=endpoint_url
        )

    def _object_key(self, key):
        return f'{self._prefix}{key}'

    def put(self, key, source_path):
        content_type = mimetypes.guess_type(str(source_path))[0] or 'application/octet-stream'
        self._s3_client.upload_file(
            str(source_path),
            self._bucket,
            self._object_key(key),
            ExtraArgs={'ContentType': content_type},
        )
        return key

    def get(self, key):
        try:
            response = self._s3_client.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey'):
                raise FileNotFoundError(key) from e
            raise
        return response['Body']

    def stat(self, key):
        try:
            head = self._s3_client.head_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            if e.response.get('Error', {}).get('Code') in ('404', 'NoSuchKey'):
                return None
            raise
        return BlobInfo(key=key, size=head['ContentLength'], modified_at=head['LastModified'])

    def delete(self, key):
        if self.stat(key) is None:
            return False
        self._s3_client.delete_object(Bucket=self._bucket, Key=self._object_key(key))
        return True

    def list(self, prefix=''):
        paginator = self._s3_client.get_paginator('list_objects_v2')
        blobs = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._object_key(prefix)):
            for obj in page.get('Contents', []):
                blobs.append(
                    BlobInfo(
                        key=obj['Key'][len(self._prefix):],
                        size=obj['Size'],
                        modified_at=obj['LastModified'],
                    )
                )
        return blobs

    def presigned_url(self, key, expires_in=900):
        """
        Generate a temporary download URL for key.

        Args:
            key: Blob key
            expires_in: URL expiry in seconds (default 15 minutes)

        Returns:
            str: presigned URL
        """
        return self._s3_client.generate_presigned_url(
            ClientMethod='get_object',
            Params={'Bucket': self._bucket, 'Key': self._object_key(key)},
            ExpiresIn=expires_in,
        )


class KeyValueBlobStore(BlobStore):
    """
    Blobs kept in an HTTP key-value database.

    Each value is a JSON record ``{data, contentType, fileName, timestamp}``
    where ``data`` is the base64-encoded file and ``timestamp`` is in
    milliseconds.
    """

    name = 'kv'

    def __init__(self, base_url, session=None, timeout=30):
        if not base_url:
            raise ValueError('Key-value store URL is not configured')
        self._base_url = base_url.rstrip('/')
        self._session = session or requests.Session()
        self._timeout = timeout

    def _url(self, key):
        return f'{self._base_url}/{quote(key, safe="")}'

    def _read_record(self, key):
        response = self._session.get(self._url(key), timeout=self._timeout)
        if response.status_code == 404:
            return None
        response.raise_for_status()
        try:
            record = json.loads(response.text)
        except ValueError:
            return None
        if (
            not isinstance(record, dict)
            or not isinstance(record.get('data'), str)
            or not isinstance(record.get('timestamp'), (int, float))
        ):
            return None
        return record

    def put(self, key, source_path):
        source_path = Path(source_path)
        record = {
            'data': base64.b64encode(source_path.read_bytes()).decode('ascii'),
            'contentType': mimetypes.guess_type(source_path.name)[0] or 'application/octet-stream',
            'fileName': source_path.name,
            'timestamp': int(time.time() * 1000),
        }
        response = self._session.post(
            self._base_url, data={key: json.dumps(record)}, timeout=self._timeout
        )
        response.raise_for_status()
        return key

    def get(self, key):
        record = self._read_record(key)
        if record is None:
            raise FileNotFoundError(key)
        return io.BytesIO(base64.b64decode(record['data']))

    def stat(self, key):
        record = self._read_record(key)
        if record is None:
            return None
        return BlobInfo(
            key=key,
            size=len(base64.b64decode(record['data'])),
            modified_at=datetime.fromtimestamp(record['timestamp'] / 1000, tz=timezone.utc),
        )

    def delete(self, key):
        if self._read_record(key) is None:
            return False
        response = self._session.delete(self._url(key), timeout=self._timeout)
        response.raise_for_status()
        return True

    def list(self, prefix=''):
        response = self._session.get(
            self._base_url, params={'prefix': prefix}, timeout=self._timeout
        )
        response.raise_for_status()
        blobs = []
        for key in response.text.splitlines():
            if not key:
                continue
            info = self.stat(key)
            if info is not None:
                blobs.append(info)
        return blobs


def get_working_store():
    """Filesystem store over the configured working directory"""
    return FileSystemBlobStore(config.get_work_dir())


def get_archive_store():
    """
    Build the configured archive store.

    Returns:
        BlobStore or None when archiving is disabled
    """
    backend = config.get_archive_backend()
    if not backend:
        return None
    if backend == 's3':
        options = config.get_s3_options()
        if not options['bucket']:
            raise ValueError('CLIPDROP_S3_BUCKET must be set for the s3 archive backend')
        return S3BlobStore(**options)
    if backend == 'kv':
        return KeyValueBlobStore(config.get_kv_url())
    raise ValueError(f'Unknown archive backend: {backend}')
