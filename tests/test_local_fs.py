import asyncio
import hashlib
import os
import sys

import pytest

from filebridge.adapters.base import TYPE_DIRECTORY, TYPE_REGULAR, TYPE_SYMLINK
from filebridge.adapters.local_fs import LocalFileSystemAdapter
from filebridge.errors import EntryNotFoundError, InvalidParamsError, OperationFailedError

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions and symlinks")

EMPTY_SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


@pytest.fixture
def fs():
    return LocalFileSystemAdapter(chunk_size=16)


@pytest.fixture
def sample(tmp_path):
    (tmp_path / "beta.txt").write_text("hello world")
    (tmp_path / "Alpha.log").write_text("alpha")
    (tmp_path / "zeta").mkdir()
    (tmp_path / "alpha_dir").mkdir()
    nested = tmp_path / "zeta" / "deep"
    nested.mkdir()
    (nested / "needle.txt").write_text("find the needle here")
    (nested / "blob.bin").write_bytes(b"\xff\xfe\x00needle")
    return tmp_path


class TestListAndStat:
    def test_directories_first_then_name(self, fs, sample):
        files = asyncio.run(fs.list_files(str(sample)))
        assert [f.name for f in files] == ["alpha_dir", "zeta", "Alpha.log", "beta.txt"]
        assert files[0].type == TYPE_DIRECTORY
        assert files[2].type == TYPE_REGULAR

    def test_entries_use_forward_slashes_and_full_permissions(self, fs, sample):
        files = asyncio.run(fs.list_files(str(sample)))
        for entry in files:
            assert "\\" not in entry.path
            assert len(entry.permissions) == 10
        wire = files[0].to_dict()
        assert wire["permissions"][0] == "d"
        assert "modTime" in wire

    def test_list_missing_directory_raises(self, fs, tmp_path):
        with pytest.raises(FileNotFoundError):
            asyncio.run(fs.list_files(str(tmp_path / "missing")))

    def test_stat_file(self, fs, sample):
        entry = asyncio.run(fs.stat(str(sample / "beta.txt")))
        assert entry.name == "beta.txt"
        assert entry.size == 11
        assert entry.type == TYPE_REGULAR

    def test_exists(self, fs, sample):
        assert asyncio.run(fs.exists(str(sample / "beta.txt"))) is True
        assert asyncio.run(fs.exists(str(sample / "nope"))) is False


class TestCopyMoveDelete:
    def test_copy_file(self, fs, sample):
        asyncio.run(fs.copy(str(sample / "beta.txt"), str(sample / "copy.txt")))
        assert (sample / "copy.txt").read_text() == "hello world"
        assert (sample / "beta.txt").exists()

    def test_copy_directory_recursively(self, fs, sample, tmp_path_factory):
        dest = tmp_path_factory.mktemp("dest") / "zeta"
        asyncio.run(fs.copy(str(sample / "zeta"), str(dest)))
        assert (dest / "deep" / "needle.txt").read_text() == "find the needle here"
        assert (dest / "deep" / "blob.bin").read_bytes() == b"\xff\xfe\x00needle"

    def test_copy_directory_into_itself_is_refused(self, fs, sample):
        with pytest.raises(OperationFailedError):
            asyncio.run(fs.copy(str(sample / "zeta"), str(sample / "zeta" / "deep" / "zeta")))

    @posix_only
    def test_copy_preserves_symlinks(self, fs, sample, tmp_path_factory):
        os.symlink("needle.txt", str(sample / "zeta" / "deep" / "link"))
        dest = tmp_path_factory.mktemp("dest") / "zeta"
        asyncio.run(fs.copy(str(sample / "zeta"), str(dest)))
        assert os.readlink(str(dest / "deep" / "link")) == "needle.txt"

    def test_move(self, fs, sample):
        asyncio.run(fs.move(str(sample / "beta.txt"), str(sample / "alpha_dir" / "beta.txt")))
        assert not (sample / "beta.txt").exists()
        assert (sample / "alpha_dir" / "beta.txt").read_text() == "hello world"

    def test_delete_file_and_tree(self, fs, sample):
        asyncio.run(fs.delete(str(sample / "beta.txt")))
        asyncio.run(fs.delete(str(sample / "zeta")))
        assert not (sample / "beta.txt").exists()
        assert not (sample / "zeta").exists()

    def test_mkdir_rename_write(self, fs, tmp_path):
        asyncio.run(fs.mkdir(str(tmp_path / "new")))
        asyncio.run(fs.write_file(str(tmp_path / "new" / "a.txt")))
        asyncio.run(fs.rename(str(tmp_path / "new" / "a.txt"), str(tmp_path / "new" / "b.txt")))
        assert (tmp_path / "new" / "b.txt").read_bytes() == b""

    def test_read_back_written_content(self, fs, tmp_path):
        target = str(tmp_path / "notes.txt")
        asyncio.run(fs.write_file(target, b"hello"))
        assert asyncio.run(fs.read_file(target)) == b"hello"


class TestChecksum:
    def test_empty_file_sha256(self, fs, tmp_path):
        (tmp_path / "empty").write_bytes(b"")
        assert asyncio.run(fs.calculate_checksum(str(tmp_path / "empty"), "sha256")) == EMPTY_SHA256

    @pytest.mark.parametrize("algorithm", ["md5", "sha1", "sha256"])
    def test_matches_hashlib_across_chunks(self, fs, tmp_path, algorithm):
        data = os.urandom(100)
        (tmp_path / "data").write_bytes(data)
        result = asyncio.run(fs.calculate_checksum(str(tmp_path / "data"), algorithm))
        assert result == hashlib.new(algorithm, data).hexdigest()

    def test_unknown_algorithm(self, fs, sample):
        with pytest.raises(InvalidParamsError):
            asyncio.run(fs.calculate_checksum(str(sample / "beta.txt"), "crc32"))

    def test_missing_file_is_typed(self, fs, tmp_path):
        with pytest.raises(EntryNotFoundError) as excinfo:
            asyncio.run(fs.calculate_checksum(str(tmp_path / "nope"), "md5"))
        assert "Failed to calculate checksum" in str(excinfo.value)


class TestSearch:
    def test_glob_is_case_insensitive(self, fs, sample):
        results = asyncio.run(fs.search_files(str(sample), "alpha*"))
        assert sorted(r.name for r in results) == ["Alpha.log", "alpha_dir"]

    def test_question_mark_and_recursion(self, fs, sample):
        results = asyncio.run(fs.search_files(str(sample), "needle.t?t"))
        assert [r.name for r in results] == ["needle.txt"]

    def test_non_recursive(self, fs, sample):
        results = asyncio.run(fs.search_files(str(sample), "*.txt", recursive=False))
        assert [r.name for r in results] == ["beta.txt"]

    def test_content_filter_skips_binary(self, fs, sample):
        results = asyncio.run(fs.search_files(str(sample), None, "needle"))
        assert [r.name for r in results] == ["needle.txt"]

    def test_no_pattern_lists_everything(self, fs, sample):
        results = asyncio.run(fs.search_files(str(sample)))
        assert len(results) == 7

    def test_content_match_across_chunk_boundary(self, fs, tmp_path):
        # chunk size is 16, so the needle starts at offset 14 and spans two reads
        (tmp_path / "split.txt").write_text("x" * 14 + "needle" + "y" * 30)
        results = asyncio.run(fs.search_files(str(tmp_path), "*", "needle"))
        assert [r.name for r in results] == ["split.txt"]

    @posix_only
    def test_content_search_skips_fifo(self, fs, tmp_path):
        (tmp_path / "a.txt").write_text("needle")
        os.mkfifo(str(tmp_path / "pipe"))
        results = asyncio.run(fs.search_files(str(tmp_path), "*", "needle"))
        assert [r.name for r in results] == ["a.txt"]


@posix_only
class TestSymlinks:
    def test_create_and_resolve_relative(self, fs, sample):
        asyncio.run(fs.create_symlink("beta.txt", str(sample / "link")))
        target = asyncio.run(fs.resolve_symlink(str(sample / "link")))
        assert target == str(sample / "beta.txt").replace("\\", "/")

    def test_create_and_resolve_absolute(self, fs, sample):
        absolute = str(sample / "zeta" / "deep" / ".." / "deep" / "needle.txt")
        asyncio.run(fs.create_symlink(absolute, str(sample / "abslink")))
        target = asyncio.run(fs.resolve_symlink(str(sample / "abslink")))
        assert target == str(sample / "zeta" / "deep" / "needle.txt").replace("\\", "/")

    def test_stat_reports_symlink(self, fs, sample):
        asyncio.run(fs.create_symlink(str(sample / "zeta"), str(sample / "dirlink")))
        entry = asyncio.run(fs.stat(str(sample / "dirlink")))
        assert entry.type == TYPE_SYMLINK
        assert entry.symlink_target == str(sample / "zeta")
        assert entry.permissions[0] == "l"

    def test_resolve_non_link_fails(self, fs, sample):
        with pytest.raises(OperationFailedError):
            asyncio.run(fs.resolve_symlink(str(sample / "beta.txt")))


@posix_only
class TestChmod:
    def test_chmod_single(self, fs, sample):
        asyncio.run(fs.chmod(str(sample / "beta.txt"), "600"))
        assert (sample / "beta.txt").stat().st_mode & 0o777 == 0o600

    def test_invalid_mode(self, fs, sample):
        with pytest.raises(InvalidParamsError):
            asyncio.run(fs.chmod(str(sample / "beta.txt"), "9z9"))

    def test_recursive_reports_progress(self, fs, sample):
        progress = []
        asyncio.run(fs.chmod_recursive(str(sample / "zeta"), "755", lambda c, t, p: progress.append((c, t, p))))
        assert len(progress) == 4
        assert progress[-1][0] == progress[-1][1] == 4
        assert progress[0][2].endswith("zeta")
        assert (sample / "zeta" / "deep" / "needle.txt").stat().st_mode & 0o777 == 0o755

    def test_recursive_on_file(self, fs, sample):
        progress = []
        asyncio.run(fs.chmod_recursive(str(sample / "beta.txt"), "644", lambda c, t, p: progress.append((c, t))))
        assert progress == [(1, 1)]


class TestDiskSpace:
    def test_reports_totals(self, fs, tmp_path):
        space = asyncio.run(fs.get_disk_space(str(tmp_path)))
        assert space["total"] > 0
        assert space["used"] <= space["total"]
