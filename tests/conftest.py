"""
Shared pytest fixtures for vaultkeeper tests.

This module provides fixtures for:
- Config construction against temporary directories
- An in-memory storage gateway
- Mock S3 bucket (moto)
- Temporary source file trees
- A fake pg_dump executable
- HTTP transports for remote file sources
"""

import asyncio
import io
import os
import stat
import zipfile
from dataclasses import replace

import boto3
import httpx
import pytest
from moto import mock_aws

from vaultkeeper.backup.storage import StorageError
from vaultkeeper.config import Config, FilesSettings, StorageSettings


FILES_HOST = 'https://files.example.com'


class FakeStorage:
    """In-memory stand-in for S3Storage's async gateway methods."""

    bucket_name = 'test-bucket'

    def __init__(self, existing=None, fail_keys=None, fail_listing=False):
        self.objects = {key: b'' for key in (existing or [])}
        self.fail_keys = set(fail_keys or [])
        self.fail_listing = fail_listing
        self.put_calls = []
        self.list_calls = []

    async def put(self, local_path, key):
        if key in self.fail_keys:
            raise StorageError(f"S3 upload failed (InternalError): {key}")
        with open(local_path, 'rb') as f:
            self.objects[key] = f.read()
        self.put_calls.append(key)
        return key

    async def list_keys(self, prefix):
        self.list_calls.append(prefix)
        if self.fail_listing:
            return set()
        return {key[len(prefix):] for key in self.objects if key.startswith(prefix)}


@pytest.fixture
def fake_storage():
    return FakeStorage()


@pytest.fixture
def make_storage():
    return FakeStorage


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def make_config(work_dir):
    """
    Build a Config rooted in the test's temporary directory.

    Keyword arguments override Config fields; 'files' may be a dict of
    FilesSettings overrides.
    """
    def _make(**overrides):
        files_overrides = overrides.pop('files', {})
        config = Config(
            work_dir=str(work_dir),
            storage=StorageSettings(bucket='test-bucket', region='us-east-1',
                                    access_key='test_key', secret_key='test_secret'),
            files=replace(FilesSettings(), **files_overrides)
        )
        return replace(config, **overrides)

    return _make


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a source tree:
    - a.txt
    - b.log
    - nested/c.txt
    - nested/deeper/d.bin
    """
    root = tmp_path / 'source'
    (root / 'nested' / 'deeper').mkdir(parents=True)

    (root / 'a.txt').write_text('Content A')
    (root / 'b.log').write_text('Log content')
    (root / 'nested' / 'c.txt').write_text('Nested content')
    (root / 'nested' / 'deeper' / 'd.bin').write_bytes(b'\x00\x01\x02')

    return root


@pytest.fixture
def mock_s3():
    """
    Mock S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def fake_pg_dump(tmp_path):
    """
    Install a fake pg_dump executable and return its directory.

    Call with the body of a shell script.
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    def _install(body):
        script = bin_dir / 'pg_dump'
        script.write_text('#!/bin/sh\n' + body + '\n')
        script.chmod(script.stat().st_mode | stat.S_IEXEC | stat.S_IXGRP | stat.S_IXOTH)
        return str(bin_dir)

    return _install


def build_zip(files):
    """Return zip archive bytes containing {name: content}."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', zipfile.ZIP_DEFLATED) as zipf:
        for name, content in files.items():
            zipf.writestr(name, content)
    return buffer.getvalue()


def listing_transport(count, failing=(), tracker=None):
    """
    MockTransport serving /listing.json with `count` descriptors.

    Files named in `failing` answer 500. When given, `tracker` receives
    'in_flight' and 'peak' counters for file downloads.
    """
    names = [f"file{i:02d}.txt" for i in range(count)]
    listing = [
        {'fileName': name, 'size': len(f"data-{name}"), 'url': f"{FILES_HOST}/files/{name}"}
        for name in names
    ]

    async def handler(request):
        if request.url.path == '/listing.json':
            return httpx.Response(200, json=listing)

        name = request.url.path.rsplit('/', 1)[-1]
        if tracker is not None:
            tracker['in_flight'] += 1
            tracker['peak'] = max(tracker['peak'], tracker['in_flight'])
            await asyncio.sleep(0.01)
            tracker['in_flight'] -= 1

        if name in failing:
            return httpx.Response(500)
        return httpx.Response(200, content=f"data-{name}".encode())

    return httpx.MockTransport(handler)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every vaultkeeper setting from the environment."""
    for key in list(os.environ):
        if key.startswith(('AWS_', 'BACKUP_', 'FILES_', 'R2_', 'S3_', 'LOG_')) or key in (
            'DATABASE_CONFIGS', 'PG_DUMP_PATH', 'DUMP_TIMEOUT', 'LOCAL_BACKUP_PATH',
            'STORAGE_PROVIDER', 'CRON_JOB_INTERVAL', 'RUN_ON_STARTUP', 'DOWNLOAD_BATCH_SIZE',
            'ARCHIVE_DOWNLOAD_TIMEOUT', 'FILE_DOWNLOAD_TIMEOUT', 'LISTING_TIMEOUT',
        ):
            monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def make_listing_transport():
    return listing_transport


@pytest.fixture
def make_zip():
    return build_zip
