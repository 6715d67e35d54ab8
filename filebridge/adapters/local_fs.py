"""
Local filesystem adapter
"""
import asyncio
import hashlib
import logging
import os
import shutil
import stat as stat_module
import string
from typing import Dict, List, Optional, Tuple

from filebridge.adapters.base import (
    CHECKSUM_ALGORITHMS,
    SYSTEM_LOCAL,
    TYPE_DIRECTORY,
    TYPE_REGULAR,
    TYPE_SYMLINK,
    ChmodProgressCallback,
    FileEntry,
    FileSystemAdapter,
)
from filebridge.config import DEFAULT_CHUNK_SIZE
from filebridge.errors import (
    InvalidParamsError,
    OperationFailedError,
    PlatformUnsupportedError,
    wrap_os_error,
)
from filebridge.utils import (
    IS_WINDOWS,
    UNRESOLVED_SYMLINK,
    build_permissions_string,
    glob_to_regex,
    parse_octal_mode,
    resolve_local_path,
    to_forward_slashes,
)

logger = logging.getLogger(__name__)

_TYPE_CHARS = {TYPE_DIRECTORY: "d", TYPE_SYMLINK: "l", TYPE_REGULAR: "-"}


def _make_entry(full_path: str, name: str, kind: str, st: os.stat_result) -> FileEntry:
    permissions = _TYPE_CHARS[kind] + build_permissions_string(st.st_mode)[1:]
    entry = FileEntry(
        name=name,
        path=to_forward_slashes(full_path),
        size=st.st_size,
        type=kind,
        mod_time=st.st_mtime,
        permissions=permissions,
        owner=str(st.st_uid),
        group=str(st.st_gid),
    )
    if kind == TYPE_SYMLINK:
        try:
            entry.symlink_target = to_forward_slashes(os.readlink(full_path))
        except OSError:
            entry.symlink_target = UNRESOLVED_SYMLINK
    return entry


def _kind_of(dir_entry: os.DirEntry) -> str:
    if dir_entry.is_symlink():
        return TYPE_SYMLINK
    if dir_entry.is_dir(follow_symlinks=False):
        return TYPE_DIRECTORY
    return TYPE_REGULAR


class LocalFileSystemAdapter(FileSystemAdapter):
    """Filesystem operations on the machine running the service.

    Returns data shaped exactly like the SFTP adapter so callers never care
    which side they talk to.
    """

    system = SYSTEM_LOCAL

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def get_home_dir(self) -> str:
        return to_forward_slashes(os.path.expanduser("~"))

    # ------------------------------------------------------------------
    # Listing and stat
    # ------------------------------------------------------------------

    async def list_files(self, path: str) -> List[FileEntry]:
        resolved = resolve_local_path(path)
        if IS_WINDOWS and resolved == "":
            return await asyncio.to_thread(self._list_drives)
        return await asyncio.to_thread(self._list_dir, resolved)

    def _list_dir(self, resolved: str) -> List[FileEntry]:
        files = []
        with os.scandir(resolved) as it:
            for dir_entry in it:
                try:
                    st = os.stat(dir_entry.path)
                    files.append(_make_entry(dir_entry.path, dir_entry.name, _kind_of(dir_entry), st))
                except OSError as e:
                    logger.warning(f"Failed to stat {dir_entry.path}: {e}")
        files.sort(key=lambda f: (not f.is_directory, f.name))
        return files

    def _list_drives(self) -> List[FileEntry]:
        drives = []
        for letter in string.ascii_uppercase:
            root = f"{letter}:\\"
            try:
                st = os.stat(root)
            except OSError:
                continue
            drives.append(FileEntry(
                name=f"{letter}:",
                path=f"{letter}:/",
                size=0,
                type=TYPE_DIRECTORY,
                mod_time=st.st_mtime,
                permissions="drwxr-xr-x",
            ))
        return drives

    async def stat(self, path: str) -> FileEntry:
        resolved = resolve_local_path(path)
        return await asyncio.to_thread(self._stat, resolved)

    def _stat(self, resolved: str) -> FileEntry:
        lst = os.lstat(resolved)
        name = os.path.basename(resolved.rstrip("/\\")) or resolved
        if stat_module.S_ISLNK(lst.st_mode):
            try:
                st = os.stat(resolved)
            except OSError:
                st = lst
            return _make_entry(resolved, name, TYPE_SYMLINK, st)
        kind = TYPE_DIRECTORY if stat_module.S_ISDIR(lst.st_mode) else TYPE_REGULAR
        return _make_entry(resolved, name, kind, lst)

    async def exists(self, path: str) -> bool:
        resolved = resolve_local_path(path)
        return await asyncio.to_thread(os.path.lexists, resolved)

    # ------------------------------------------------------------------
    # Single logical operations: errors propagate unchanged
    # ------------------------------------------------------------------

    async def delete(self, path: str):
        resolved = resolve_local_path(path)
        await asyncio.to_thread(self._delete, resolved)

    def _delete(self, resolved: str):
        lst = os.lstat(resolved)
        if stat_module.S_ISDIR(lst.st_mode):
            shutil.rmtree(resolved)
        else:
            os.unlink(resolved)

    async def mkdir(self, path: str):
        await asyncio.to_thread(os.mkdir, resolve_local_path(path))

    async def rename(self, old_path: str, new_path: str):
        await asyncio.to_thread(os.rename, resolve_local_path(old_path), resolve_local_path(new_path))

    async def read_file(self, path: str) -> bytes:
        return await asyncio.to_thread(self._read_file, resolve_local_path(path))

    def _read_file(self, resolved: str) -> bytes:
        with open(resolved, "rb") as f:
            return f.read()

    async def write_file(self, path: str, content: bytes = b""):
        await asyncio.to_thread(self._write_file, resolve_local_path(path), content)

    def _write_file(self, resolved: str, content: bytes):
        with open(resolved, "wb") as f:
            f.write(content)

    async def copy(self, source_path: str, dest_path: str):
        source = resolve_local_path(source_path)
        dest = resolve_local_path(dest_path)
        await asyncio.to_thread(self._copy, source, dest)
        logger.info(f"Copied {source} -> {dest}")

    def _copy(self, source: str, dest: str):
        if not os.path.isdir(source):
            shutil.copy2(source, dest)
            return

        source_abs = os.path.abspath(source)
        dest_abs = os.path.abspath(dest)
        if dest_abs == source_abs or dest_abs.startswith(source_abs.rstrip(os.sep) + os.sep):
            raise OperationFailedError(f"Cannot copy directory into itself: {source} -> {dest}")

        # worklist instead of recursion; subdirectories are pushed in reverse
        # so they pop in name order, depth-first
        stack: List[Tuple[str, str]] = [(source, dest)]
        while stack:
            src_dir, dst_dir = stack.pop()
            os.makedirs(dst_dir, exist_ok=True)
            subdirs = []
            with os.scandir(src_dir) as it:
                children = sorted(it, key=lambda e: e.name)
            for child in children:
                target = os.path.join(dst_dir, child.name)
                if child.is_symlink():
                    os.symlink(os.readlink(child.path), target)
                elif child.is_dir(follow_symlinks=False):
                    subdirs.append((child.path, target))
                else:
                    shutil.copy2(child.path, target)
            stack.extend(reversed(subdirs))

    async def move(self, source_path: str, dest_path: str):
        # native rename only; a cross-device failure surfaces to the caller
        source = resolve_local_path(source_path)
        dest = resolve_local_path(dest_path)
        await asyncio.to_thread(os.rename, source, dest)
        logger.info(f"Moved {source} -> {dest}")

    async def calculate_checksum(self, path: str, algorithm: str) -> str:
        if algorithm not in CHECKSUM_ALGORITHMS:
            raise InvalidParamsError(f"Unsupported checksum algorithm: {algorithm}")
        resolved = resolve_local_path(path)
        return await asyncio.to_thread(self._hash_file, resolved, algorithm)

    def _hash_file(self, resolved: str, algorithm: str) -> str:
        digest = hashlib.new(algorithm)
        try:
            with open(resolved, "rb") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), b""):
                    digest.update(chunk)
        except OSError as e:
            raise wrap_os_error(e, "Failed to calculate checksum") from e
        return digest.hexdigest().lower()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_files(
        self,
        base_path: str,
        pattern: Optional[str] = None,
        content: Optional[str] = None,
        recursive: bool = True,
    ) -> List[FileEntry]:
        resolved = resolve_local_path(base_path)
        return await asyncio.to_thread(self._search, resolved, pattern, content, recursive)

    def _search(self, base: str, pattern: Optional[str], content: Optional[str], recursive: bool) -> List[FileEntry]:
        regex = glob_to_regex(pattern) if pattern else None
        results: List[FileEntry] = []
        pending = [base]
        while pending:
            dir_path = pending.pop()
            try:
                with os.scandir(dir_path) as it:
                    children = list(it)
            except OSError as e:
                logger.warning(f"Failed to read directory {dir_path}: {e}")
                continue

            for child in children:
                try:
                    kind = _kind_of(child)
                    if regex is None or regex.match(child.name):
                        st = os.stat(child.path)
                        readable = kind == TYPE_REGULAR and stat_module.S_ISREG(st.st_mode)
                        if not content or (readable and self._contains(child.path, content)):
                            results.append(_make_entry(child.path, child.name, kind, st))
                    if recursive and kind == TYPE_DIRECTORY:
                        pending.append(child.path)
                except OSError as e:
                    logger.warning(f"Failed to search {child.path}: {e}")
        return results

    def _contains(self, path: str, needle: str) -> bool:
        overlap = len(needle) - 1
        tail = ""
        try:
            with open(path, "r", encoding="utf-8") as f:
                for chunk in iter(lambda: f.read(self.chunk_size), ""):
                    window = tail + chunk
                    if needle in window:
                        return True
                    # keep enough to catch a match straddling two chunks
                    tail = window[-overlap:] if overlap else ""
                return False
        except (OSError, UnicodeDecodeError):
            # binary or unreadable: not a match, not a failure
            return False

    # ------------------------------------------------------------------
    # Symlinks
    # ------------------------------------------------------------------

    async def create_symlink(self, source_path: str, target_path: str):
        source = resolve_local_path(source_path)
        target = resolve_local_path(target_path)
        await asyncio.to_thread(self._symlink, source, target)

    def _symlink(self, source: str, target: str):
        if IS_WINDOWS:
            lookup = source if os.path.isabs(source) else os.path.join(os.path.dirname(target), source)
            is_dir = stat_module.S_ISDIR(os.stat(lookup).st_mode)
            os.symlink(source, target, target_is_directory=is_dir)
        else:
            os.symlink(source, target)

    async def resolve_symlink(self, symlink_path: str) -> str:
        resolved = resolve_local_path(symlink_path)
        try:
            target = await asyncio.to_thread(os.readlink, resolved)
        except OSError as e:
            raise wrap_os_error(e, f"Failed to resolve symlink {symlink_path}") from e
        if not os.path.isabs(target):
            link_dir = os.path.dirname(os.path.abspath(resolved))
            target = os.path.join(link_dir, target)
        return to_forward_slashes(os.path.normpath(target))

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def _mode(self, mode: str) -> int:
        if IS_WINDOWS:
            raise PlatformUnsupportedError("chmod is not supported on Windows")
        try:
            return parse_octal_mode(mode)
        except ValueError as e:
            raise InvalidParamsError(str(e))

    async def chmod(self, path: str, mode: str):
        mode_num = self._mode(mode)
        await asyncio.to_thread(os.chmod, resolve_local_path(path), mode_num)

    async def chmod_recursive(
        self,
        path: str,
        mode: str,
        on_progress: Optional[ChmodProgressCallback] = None,
    ):
        mode_num = self._mode(mode)
        resolved = resolve_local_path(path)
        all_paths = await asyncio.to_thread(self._collect_tree, resolved)

        total = len(all_paths)
        current = 0
        for item in all_paths:
            try:
                await asyncio.to_thread(os.chmod, item, mode_num)
            except OSError as e:
                logger.warning(f"Failed to chmod {item}: {e}")
                continue
            current += 1
            if on_progress:
                on_progress(current, total, to_forward_slashes(item))

    def _collect_tree(self, root: str) -> List[str]:
        """Flat list of a directory and everything below it, parents first."""
        if not os.path.isdir(root):
            os.lstat(root)
            return [root]
        collected = []
        pending = [root]
        while pending:
            dir_path = pending.pop()
            collected.append(dir_path)
            try:
                with os.scandir(dir_path) as it:
                    children = sorted(it, key=lambda e: e.name)
            except OSError as e:
                if dir_path == root:
                    raise
                logger.warning(f"Failed to read directory {dir_path}: {e}")
                continue
            subdirs = []
            for child in children:
                if child.is_dir(follow_symlinks=False):
                    subdirs.append(child.path)
                else:
                    collected.append(child.path)
            pending.extend(reversed(subdirs))
        return collected

    async def get_disk_space(self, path: str) -> Dict[str, int]:
        usage = await asyncio.to_thread(shutil.disk_usage, resolve_local_path(path) or "/")
        return {"total": usage.total, "free": usage.free, "used": usage.used}
