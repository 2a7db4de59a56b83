"""
Unit tests for the file mirror (vaultkeeper/backup/mirror.py).

Tests incremental upload, local mode copies and cleanup of everything a
run creates.
"""

import asyncio
import os

import httpx
import pytest

from vaultkeeper.backup.mirror import FileMirror


FILES_HOST = 'https://files.example.com'


class TestCloudMirror:
    """Test mirroring into object storage."""

    @pytest.mark.asyncio
    async def test_uploads_only_missing_files(self, make_config, make_storage, temp_files):
        storage = make_storage(existing=['files-backup/a.txt', 'files-backup/nested/c.txt'])
        config = make_config(files={'source_dir': str(temp_files)})

        result = await FileMirror(config, storage).run()

        assert result.success is True
        assert result.uploaded == 2
        assert result.skipped == 2
        assert result.total == 4
        assert sorted(storage.put_calls) == ['files-backup/b.log', 'files-backup/nested/deeper/d.bin']
        assert storage.list_calls == ['files-backup/']
        assert result.location == 'files-backup/'

    @pytest.mark.asyncio
    async def test_second_run_uploads_nothing(self, make_config, fake_storage, temp_files):
        config = make_config(files={'source_dir': str(temp_files)})

        first = await FileMirror(config, fake_storage).run()
        second = await FileMirror(config, fake_storage).run()

        assert first.uploaded == 4
        assert second.uploaded == 0
        assert second.skipped == 4
        assert len(fake_storage.put_calls) == 4

    @pytest.mark.asyncio
    async def test_uploaded_content_matches_source(self, make_config, fake_storage, temp_files):
        config = make_config(files={'source_dir': str(temp_files)})

        await FileMirror(config, fake_storage).run()

        assert fake_storage.objects['files-backup/nested/deeper/d.bin'] == b'\x00\x01\x02'
        assert fake_storage.objects['files-backup/a.txt'] == b'Content A'

    @pytest.mark.asyncio
    async def test_listing_failure_uploads_everything(self, make_config, make_storage, temp_files):
        storage = make_storage(existing=['files-backup/a.txt'], fail_listing=True)
        config = make_config(files={'source_dir': str(temp_files)})

        result = await FileMirror(config, storage).run()

        assert result.success is True
        assert result.uploaded == 4
        assert result.skipped == 0

    @pytest.mark.asyncio
    async def test_remote_listing_with_failed_downloads(self, make_config, fake_storage, work_dir,
                                                        make_listing_transport):
        transport = make_listing_transport(25, failing={'file05.txt', 'file21.txt'})
        config = make_config(files={'listing_url': f"{FILES_HOST}/listing.json"})

        result = await FileMirror(config, fake_storage, transport=transport).run()

        assert result.success is True
        assert result.downloaded == 23
        assert result.failed == 2
        assert result.uploaded == 23
        assert 'files-backup/file05.txt' not in fake_storage.objects
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_remote_requests_not_capped_by_client_timeout(self, make_config, fake_storage, make_zip):
        archive = make_zip({'a.txt': 'A'})
        seen = []

        async def slow_handler(request):
            seen.append(request.extensions['timeout'])
            await asyncio.sleep(0.1)
            return httpx.Response(200, content=archive)

        config = make_config(files={'archive_url': f"{FILES_HOST}/all.zip"})
        mirror = FileMirror(config, fake_storage, transport=httpx.MockTransport(slow_handler))

        result = await mirror.run()

        assert result.success is True
        assert [timeout['read'] for timeout in seen] == [None]
        assert seen[0]['connect'] == 30.0

    @pytest.mark.asyncio
    async def test_archive_source_cleaned_up(self, make_config, fake_storage, work_dir, make_zip):
        archive = make_zip({'a.txt': 'A', 'docs/b.txt': 'B'})
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=archive))
        config = make_config(files={'archive_url': f"{FILES_HOST}/all.zip"})

        result = await FileMirror(config, fake_storage, transport=transport).run()

        assert result.success is True
        assert sorted(fake_storage.put_calls) == ['files-backup/a.txt', 'files-backup/docs/b.txt']
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_upload_failure_fails_run_and_cleans_up(self, make_config, make_storage, work_dir, make_zip):
        storage = make_storage(fail_keys=['files-backup/b.txt'])
        archive = make_zip({'a.txt': 'A', 'b.txt': 'B', 'c.txt': 'C'})
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=archive))
        config = make_config(files={'archive_url': f"{FILES_HOST}/all.zip"})

        result = await FileMirror(config, storage, transport=transport).run()

        assert result.success is False
        assert 'files-backup/b.txt' in result.error
        assert result.uploaded == 1
        assert os.listdir(work_dir) == []

    @pytest.mark.asyncio
    async def test_missing_source_directory_fails(self, make_config, fake_storage, tmp_path):
        config = make_config(files={'source_dir': str(tmp_path / 'missing')})

        result = await FileMirror(config, fake_storage).run()

        assert result.success is False
        assert 'does not exist' in result.error

    @pytest.mark.asyncio
    async def test_cloud_mode_without_storage_fails(self, make_config, temp_files):
        config = make_config(files={'source_dir': str(temp_files)})

        result = await FileMirror(config, storage=None).run()

        assert result.success is False
        assert 'not configured' in result.error


class TestLocalMirror:
    """Test mirroring into a local directory."""

    @pytest.mark.asyncio
    async def test_copies_every_file(self, make_config, fake_storage, temp_files, tmp_path):
        dest = tmp_path / 'dest'
        config = make_config(
            storage_mode='local',
            local_backup_path=str(dest),
            files={'source_dir': str(temp_files)}
        )

        result = await FileMirror(config, fake_storage).run()

        assert result.success is True
        assert result.uploaded == 4
        assert (dest / 'files-backup' / 'nested' / 'deeper' / 'd.bin').read_bytes() == b'\x00\x01\x02'
        assert fake_storage.put_calls == []
        assert fake_storage.list_calls == []
        assert (temp_files / 'a.txt').exists()

    @pytest.mark.asyncio
    async def test_without_local_path_is_noop(self, make_config, fake_storage, temp_files):
        config = make_config(storage_mode='local', files={'source_dir': str(temp_files)})

        result = await FileMirror(config, fake_storage).run()

        assert result.success is True
        assert result.uploaded == 0
        assert result.note == 'local backup path not configured'


class TestNoSource:
    """Test the mirror with nothing configured."""

    @pytest.mark.asyncio
    async def test_no_source_is_noop(self, make_config, fake_storage):
        result = await FileMirror(make_config(), fake_storage).run()

        assert result.success is True
        assert result.note == 'no file source configured'
        assert fake_storage.list_calls == []
