"""
Source handlers for the file mirror.

Supports, in priority order:
- LocalDirectorySource: An existing local directory, used in place
- RemoteListingSource: A JSON listing of files, each downloaded separately
- RemoteArchiveSource: A single archive, downloaded then extracted

Every source resolves to a local directory through acquire() and removes
whatever it created through cleanup().
"""

import asyncio
import logging
import os
import shutil
import tempfile
from typing import Iterator, List, Optional

import aiofiles
import httpx

from vaultkeeper.config import FilesSettings
from vaultkeeper.models import FileEntry, RemoteFileDescriptor, file_timestamp
from .extraction import archive_extension, extract_archive
from .pool import BatchRunner


logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024

# Only connecting is bounded by httpx; the asyncio.wait_for ceilings bound the rest
HTTP_TIMEOUT = httpx.Timeout(None, connect=30.0)


class SourceError(Exception):
    """Raised when source acquisition fails."""
    pass


def walk_files(root: str) -> Iterator[FileEntry]:
    """
    Lazily yield every regular file under root, depth-first.

    Relative paths use '/' separators regardless of platform. Symlinks are
    not followed. Each call walks the tree again from the start.
    """
    root_path = os.path.abspath(root)
    yield from _walk(root_path, root_path)


def _walk(root: str, directory: str) -> Iterator[FileEntry]:
    with os.scandir(directory) as it:
        entries = sorted(it, key=lambda entry: entry.name)

    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk(root, entry.path)
        elif entry.is_file(follow_symlinks=False):
            relative_path = os.path.relpath(entry.path, root).replace(os.sep, '/')
            yield FileEntry(relative_path=relative_path, absolute_path=entry.path)


def _remove_partial(path: str):
    if os.path.exists(path):
        try:
            os.remove(path)
        except OSError as e:
            logger.warning(f"Failed to remove partial download {path}: {e}")


async def _stream_to_file(client: httpx.AsyncClient, url: str, dest_path: str):
    async with client.stream('GET', url, timeout=HTTP_TIMEOUT) as response:
        response.raise_for_status()
        async with aiofiles.open(dest_path, 'wb') as f:
            async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                await f.write(chunk)


async def download_to_file(client: httpx.AsyncClient, url: str, dest_path: str, timeout: float) -> int:
    """
    Stream a URL to disk.

    Args:
        client: HTTP client
        url: URL to fetch
        dest_path: Local destination path
        timeout: Ceiling in seconds for the whole download

    Returns:
        Number of bytes written

    Raises:
        SourceError: If the download fails or times out (the partial file is removed)
    """
    try:
        await asyncio.wait_for(_stream_to_file(client, url, dest_path), timeout=timeout)
    except asyncio.TimeoutError:
        _remove_partial(dest_path)
        raise SourceError(f"Timed out after {timeout:.0f}s downloading {url}")
    except (httpx.HTTPError, OSError) as e:
        _remove_partial(dest_path)
        raise SourceError(f"Failed to download {url}: {type(e).__name__}: {e}")
    except asyncio.CancelledError:
        _remove_partial(dest_path)
        raise

    return os.path.getsize(dest_path)


def _safe_relative_path(file_name: str) -> str:
    normalized = file_name.replace('\\', '/')
    parts = [part for part in normalized.split('/') if part not in ('', '.')]

    if normalized.startswith('/') or not parts or '..' in parts:
        raise SourceError(f"Unsafe file name in listing: {file_name!r}")

    return os.path.join(*parts)


class LocalDirectorySource:
    """
    Handler for a pre-existing local directory.

    The directory is used as-is and is never removed.
    """

    kind = 'local directory'

    def __init__(self, path: str):
        self.path = path

    async def acquire(self) -> str:
        source_path = os.path.abspath(os.path.expanduser(self.path))

        if not os.path.isdir(source_path):
            raise SourceError(f"Source directory does not exist: {self.path}")

        return source_path

    def cleanup(self):
        """Nothing to remove: the directory belongs to the operator."""
        pass


class RemoteListingSource:
    """
    Handler for a remote JSON listing of files.

    The listing is an array of {fileName, size, url}. Files are downloaded
    into a fresh temporary directory in fixed-size concurrent batches; a
    failed download is logged and counted without stopping the others.
    """

    kind = 'remote listing'

    def __init__(self, listing_url: str, work_dir: str, client: httpx.AsyncClient,
                 batch_size: int = 10, file_timeout: float = 300.0, listing_timeout: float = 30.0):
        self.listing_url = listing_url
        self.work_dir = work_dir
        self.client = client
        self.file_timeout = file_timeout
        self.listing_timeout = listing_timeout
        self.runner = BatchRunner(batch_size)

        self.temp_dir = None
        self.downloaded = 0
        self.failed = 0

    @property
    def batches_dispatched(self) -> int:
        return self.runner.batches_dispatched

    async def fetch_listing(self) -> List[RemoteFileDescriptor]:
        """
        Fetch and parse the remote listing.

        Invalid entries are logged and counted as failed.

        Raises:
            SourceError: If the listing cannot be fetched or is not a JSON array
        """
        try:
            request = self.client.get(self.listing_url, timeout=HTTP_TIMEOUT)
            response = await asyncio.wait_for(request, timeout=self.listing_timeout)
            response.raise_for_status()
            data = response.json()
        except asyncio.TimeoutError:
            raise SourceError(f"Timed out after {self.listing_timeout:.0f}s fetching file listing")
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to fetch file listing: {type(e).__name__}: {e}")
        except ValueError as e:
            raise SourceError(f"File listing is not valid JSON: {e}")

        if not isinstance(data, list):
            raise SourceError("File listing must be a JSON array")

        descriptors = []
        for entry in data:
            try:
                descriptors.append(RemoteFileDescriptor.from_dict(entry))
            except ValueError as e:
                self.failed += 1
                logger.error(f"  ✗ Invalid listing entry: {e}")

        return descriptors

    async def acquire(self) -> str:
        os.makedirs(self.work_dir, exist_ok=True)
        self.temp_dir = tempfile.mkdtemp(prefix='listing-', dir=self.work_dir)

        logger.info("Fetching file listing...")
        descriptors = await self.fetch_listing()
        logger.info(f"Listing contains {len(descriptors)} files, downloading in batches of {self.runner.batch_size}")

        outcomes = await self.runner.run(descriptors, self._download)

        for outcome in outcomes:
            if outcome.ok:
                self.downloaded += 1
            else:
                self.failed += 1
                logger.error(f"  ✗ Failed to download {outcome.item.file_name}: {outcome.error}")

        logger.info(f"Downloaded {self.downloaded} files ({self.failed} failed) in {self.batches_dispatched} batches")
        return self.temp_dir

    async def _download(self, descriptor: RemoteFileDescriptor) -> int:
        dest_path = os.path.join(self.temp_dir, _safe_relative_path(descriptor.file_name))
        os.makedirs(os.path.dirname(dest_path), exist_ok=True)

        size = await download_to_file(self.client, descriptor.url, dest_path, self.file_timeout)
        if descriptor.size is not None and descriptor.size != size:
            logger.warning(f"  Size mismatch for {descriptor.file_name}: expected {descriptor.size}, got {size}")

        logger.debug(f"  ↓ {descriptor.file_name} ({size} bytes)")
        return size

    def cleanup(self):
        if self.temp_dir and os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            logger.debug(f"Removed listing download directory {self.temp_dir}")
        self.temp_dir = None


class RemoteArchiveSource:
    """
    Handler for a remote archive (zip or tar).

    The archive is downloaded next to a fresh extraction directory; both are
    removed on cleanup.
    """

    kind = 'remote archive'

    def __init__(self, archive_url: str, work_dir: str, client: httpx.AsyncClient, timeout: float = 1800.0):
        self.archive_url = archive_url
        self.work_dir = work_dir
        self.client = client
        self.timeout = timeout

        self.archive_path = None
        self.extract_dir = None

    async def acquire(self) -> str:
        os.makedirs(self.work_dir, exist_ok=True)

        timestamp = file_timestamp()
        extension = archive_extension(self.archive_url)
        self.archive_path = os.path.join(self.work_dir, f"files-backup-{timestamp}.{extension}")
        self.extract_dir = os.path.join(self.work_dir, f"extracted-{timestamp}")

        logger.info("Downloading files backup archive...")
        size = await download_to_file(self.client, self.archive_url, self.archive_path, self.timeout)

        logger.info(f"Archive downloaded ({size} bytes). Extracting files...")
        await asyncio.to_thread(extract_archive, self.archive_path, self.extract_dir)

        return self.extract_dir

    def cleanup(self):
        if self.archive_path and os.path.exists(self.archive_path):
            os.remove(self.archive_path)
            logger.debug(f"Removed archive {self.archive_path}")
        if self.extract_dir and os.path.exists(self.extract_dir):
            shutil.rmtree(self.extract_dir, ignore_errors=True)
            logger.debug(f"Removed extraction directory {self.extract_dir}")


def create_source(settings: FilesSettings, work_dir: str, client: Optional[httpx.AsyncClient] = None):
    """
    Factory function to create the active source handler.

    Args:
        settings: File mirror settings
        work_dir: Directory for downloads and extraction
        client: HTTP client for remote sources

    Returns:
        LocalDirectorySource, RemoteListingSource or RemoteArchiveSource,
        or None when no source is configured

    Raises:
        ValueError: If a remote source is configured without a client
    """
    if settings.source_dir:
        return LocalDirectorySource(settings.source_dir)

    if (settings.listing_url or settings.archive_url) and client is None:
        raise ValueError("An HTTP client is required for remote file sources")

    if settings.listing_url:
        return RemoteListingSource(
            settings.listing_url,
            work_dir,
            client,
            batch_size=settings.batch_size,
            file_timeout=settings.file_timeout,
            listing_timeout=settings.listing_timeout
        )

    if settings.archive_url:
        return RemoteArchiveSource(settings.archive_url, work_dir, client, timeout=settings.archive_timeout)

    return None
