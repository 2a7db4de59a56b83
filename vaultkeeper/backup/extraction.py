"""
Archive extraction for downloaded file backups.

Supports:
- zip
- tar, tar.gz, tar.bz2, tar.xz

Members that would land outside the destination directory are rejected.
"""

import os
import tarfile
import zipfile
from pathlib import Path


class ExtractionError(Exception):
    """Raised when an archive cannot be extracted."""
    pass


def detect_archive_format(archive_path: str) -> str:
    """
    Detect archive format from file content.

    Args:
        archive_path: Path to the archive file

    Returns:
        'zip' or 'tar'

    Raises:
        ExtractionError: If the file is not a supported archive
    """
    if not os.path.isfile(archive_path):
        raise ExtractionError(f"Archive not found: {archive_path}")

    if zipfile.is_zipfile(archive_path):
        return 'zip'
    if tarfile.is_tarfile(archive_path):
        return 'tar'

    raise ExtractionError(f"Unsupported archive format: {os.path.basename(archive_path)}")


def archive_extension(url: str) -> str:
    """
    Guess the archive extension from a download URL (default: zip).

    Handles multi-part extensions like .tar.gz, .tar.bz2, .tar.xz
    """
    path = url.split('?', 1)[0].split('#', 1)[0].lower()
    for extension in ('tar.gz', 'tar.bz2', 'tar.xz', 'tgz', 'tar', 'zip'):
        if path.endswith('.' + extension):
            return extension
    return 'zip'


def extract_archive(archive_path: str, output_dir: str) -> str:
    """
    Extract an archive into output_dir.

    Args:
        archive_path: Path to the archive file
        output_dir: Directory to extract into (created if missing)

    Returns:
        The output directory

    Raises:
        ExtractionError: If extraction fails or a member escapes output_dir
    """
    archive_format = detect_archive_format(archive_path)
    destination = Path(output_dir).resolve()

    try:
        destination.mkdir(parents=True, exist_ok=True)

        if archive_format == 'zip':
            _extract_zip(archive_path, destination)
        else:
            _extract_tar(archive_path, destination)

        return str(destination)

    except ExtractionError:
        raise
    except (OSError, zipfile.BadZipFile, tarfile.TarError) as e:
        raise ExtractionError(f"Failed to extract {os.path.basename(archive_path)}: {e}")


def _check_member(destination: Path, name: str):
    target = (destination / name).resolve()
    if target != destination and destination not in target.parents:
        raise ExtractionError(f"Archive member escapes extraction directory: {name}")


def _extract_zip(archive_path: str, destination: Path):
    with zipfile.ZipFile(archive_path, 'r') as zipf:
        for name in zipf.namelist():
            _check_member(destination, name)
        zipf.extractall(destination)


def _extract_tar(archive_path: str, destination: Path):
    with tarfile.open(archive_path, 'r:*') as tar:
        members = []
        for member in tar.getmembers():
            _check_member(destination, member.name)
            # Links and device files are not part of a file mirror
            if member.isfile() or member.isdir():
                members.append(member)
        if hasattr(tarfile, 'data_filter'):
            tar.extractall(destination, members=members, filter='data')
        else:
            tar.extractall(destination, members=members)
