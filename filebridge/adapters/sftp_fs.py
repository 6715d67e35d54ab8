"""
SSH/SFTP filesystem adapter - same contract as the local adapter, over paramiko.
"""
import asyncio
import logging
import posixpath
import re
import shlex
import stat as stat_module
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import paramiko

from filebridge.adapters.base import (
    CHECKSUM_ALGORITHMS,
    TYPE_DIRECTORY,
    TYPE_REGULAR,
    TYPE_SYMLINK,
    BytesCallback,
    ChmodProgressCallback,
    FileEntry,
    RemoteFileSystemAdapter,
    TransferControl,
    pump_stream,
)
from filebridge.config import DEFAULT_CHUNK_SIZE, SshHostConfig
from filebridge.errors import (
    ConnectionFailedError,
    InvalidParamsError,
    OperationFailedError,
    wrap_os_error,
)
from filebridge.utils import UNRESOLVED_SYMLINK, build_permissions_string, glob_to_regex, parse_octal_mode

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_DELAY = 1

_TYPE_CHARS = {TYPE_DIRECTORY: "d", TYPE_SYMLINK: "l", TYPE_REGULAR: "-"}
_HEX_DIGEST = re.compile(r"^([a-fA-F0-9]+)")


def _kind_of(mode: int) -> str:
    if stat_module.S_ISLNK(mode):
        return TYPE_SYMLINK
    if stat_module.S_ISDIR(mode):
        return TYPE_DIRECTORY
    return TYPE_REGULAR


class SftpFileSystemAdapter(RemoteFileSystemAdapter):
    """Filesystem operations on one SSH host.

    paramiko is blocking, so every call runs in a worker thread; the
    connection is shared and re-established when it drops.
    """

    def __init__(self, config: SshHostConfig, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.config = config
        self.chunk_size = chunk_size
        self.client: Optional[paramiko.SSHClient] = None
        self.sftp: Optional[paramiko.SFTPClient] = None
        self._home: Optional[str] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    def _connect(self):
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kw = dict(hostname=self.config.host, port=self.config.port, username=self.config.username)
        if self.config.key_file:
            kw["key_filename"] = self.config.key_file
        else:
            kw["password"] = self.config.password
        try:
            client.connect(**kw, timeout=30, banner_timeout=30)
            transport = client.get_transport()
            if transport:
                transport.set_keepalive(15)
            sftp = client.open_sftp()
            sftp.get_channel().settimeout(60)
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise ConnectionFailedError(
                f"Failed to connect to SSH {self.config.host}:{self.config.port}: {e}"
            ) from e
        self.client = client
        self.sftp = sftp
        logger.info(f"Connected to {self.config.host}:{self.config.port}")

    def _disconnect(self):
        if self.sftp:
            try:
                self.sftp.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp = None
        if self.client:
            try:
                self.client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH client: {e}")
            self.client = None

    def _ensure_connection(self) -> paramiko.SFTPClient:
        """Reconnect if the connection was dropped."""
        with self._lock:
            if self.sftp is not None:
                transport = self.client.get_transport() if self.client else None
                if transport is not None and transport.is_active():
                    return self.sftp
                self._disconnect()
            self._connect()
            return self.sftp

    def _with_retry(self, description: str, fn: Callable[[paramiko.SFTPClient], Any]) -> Any:
        """Run a read-only SFTP call, reconnecting on transport errors."""
        last_err: Optional[Exception] = None
        for attempt in range(1, MAX_RETRIES + 1):
            sftp = self._ensure_connection()
            try:
                return fn(sftp)
            except (paramiko.SSHException, EOFError) as e:
                last_err = e
                logger.warning(f"{description} attempt {attempt}/{MAX_RETRIES} failed: {e}")
                with self._lock:
                    self._disconnect()
                if attempt < MAX_RETRIES:
                    time.sleep(RETRY_DELAY * attempt)
        raise ConnectionFailedError(f"{description} failed after {MAX_RETRIES} attempts: {last_err}")

    def _run(self, fn: Callable[[paramiko.SFTPClient], Any]) -> Any:
        return fn(self._ensure_connection())

    def _exec(self, command: str, timeout: float = 120) -> Tuple[int, str, str]:
        self._ensure_connection()
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            return stdout.channel.recv_exit_status(), out, err
        except paramiko.SSHException as e:
            raise ConnectionFailedError(f"Command failed on {self.config.host}: {e}") from e

    def _expand(self, path: str) -> str:
        if path == "~" or path.startswith("~/"):
            if self._home is None:
                self._home = self._run(lambda sftp: sftp.normalize("."))
            return self._home + path[1:]
        return path or "/"

    async def close(self):
        def _close():
            with self._lock:
                self._disconnect()
        await asyncio.to_thread(_close)

    # ------------------------------------------------------------------
    # Entry construction
    # ------------------------------------------------------------------

    def _make_entry(self, sftp: paramiko.SFTPClient, path: str, name: str, attrs: paramiko.SFTPAttributes) -> FileEntry:
        mode = attrs.st_mode or 0
        kind = _kind_of(mode)
        size = attrs.st_size or 0
        if kind == TYPE_SYMLINK:
            try:
                size = sftp.stat(path).st_size or 0
            except IOError:
                pass
        entry = FileEntry(
            name=name,
            path=path,
            size=size,
            type=kind,
            mod_time=float(attrs.st_mtime or 0),
            permissions=_TYPE_CHARS[kind] + build_permissions_string(mode, windows=False)[1:],
            owner=str(attrs.st_uid if attrs.st_uid is not None else ""),
            group=str(attrs.st_gid if attrs.st_gid is not None else ""),
        )
        if kind == TYPE_SYMLINK:
            try:
                entry.symlink_target = sftp.readlink(path)
            except IOError:
                entry.symlink_target = UNRESOLVED_SYMLINK
        return entry

    # ------------------------------------------------------------------
    # Listing and stat
    # ------------------------------------------------------------------

    async def list_files(self, path: str) -> List[FileEntry]:
        return await asyncio.to_thread(self._list_files, path)

    def _list_files(self, path: str) -> List[FileEntry]:
        remote = self._expand(path)
        items = self._with_retry(f"listdir_attr({remote})", lambda sftp: sftp.listdir_attr(remote))
        sftp = self._ensure_connection()
        files = []
        for item in items:
            child = posixpath.join(remote, item.filename)
            try:
                files.append(self._make_entry(sftp, child, item.filename, item))
            except Exception as e:
                logger.warning(f"Failed to stat {child}: {e}")
        files.sort(key=lambda f: (not f.is_directory, f.name))
        return files

    async def stat(self, path: str) -> FileEntry:
        return await asyncio.to_thread(self._stat, path)

    def _stat(self, path: str) -> FileEntry:
        remote = self._expand(path)
        attrs = self._with_retry(f"lstat({remote})", lambda sftp: sftp.lstat(remote))
        name = posixpath.basename(remote.rstrip("/")) or remote
        return self._make_entry(self._ensure_connection(), remote, name, attrs)

    async def exists(self, path: str) -> bool:
        def _exists():
            remote = self._expand(path)
            try:
                self._with_retry(f"lstat({remote})", lambda sftp: sftp.lstat(remote))
                return True
            except FileNotFoundError:
                return False
        return await asyncio.to_thread(_exists)

    # ------------------------------------------------------------------
    # Single logical operations
    # ------------------------------------------------------------------

    async def delete(self, path: str):
        await asyncio.to_thread(self._delete, self._expand(path))

    def _delete(self, remote: str):
        sftp = self._ensure_connection()
        if not stat_module.S_ISDIR(sftp.lstat(remote).st_mode or 0):
            sftp.remove(remote)
            return
        dirs = []
        pending = [remote]
        while pending:
            current = pending.pop()
            dirs.append(current)
            for item in sftp.listdir_attr(current):
                child = posixpath.join(current, item.filename)
                if stat_module.S_ISDIR(item.st_mode or 0):
                    pending.append(child)
                else:
                    sftp.remove(child)
        for directory in reversed(dirs):
            sftp.rmdir(directory)

    async def mkdir(self, path: str):
        remote = self._expand(path)
        await asyncio.to_thread(self._run, lambda sftp: sftp.mkdir(remote))

    async def rename(self, old_path: str, new_path: str):
        await asyncio.to_thread(self._rename, old_path, new_path)

    def _rename(self, old_path: str, new_path: str):
        old, new = self._expand(old_path), self._expand(new_path)
        self._run(lambda sftp: sftp.rename(old, new))

    async def move(self, source_path: str, dest_path: str):
        await asyncio.to_thread(self._rename, source_path, dest_path)
        logger.info(f"Moved on {self.config.host}: {source_path} -> {dest_path}")

    async def read_file(self, path: str) -> bytes:
        def _read():
            remote = self._expand(path)
            with self._ensure_connection().open(remote, "rb") as f:
                return f.read()
        return await asyncio.to_thread(_read)

    async def write_file(self, path: str, content: bytes = b""):
        def _write():
            remote = self._expand(path)
            with self._ensure_connection().open(remote, "wb") as f:
                f.write(content)
        await asyncio.to_thread(_write)

    async def copy(self, source_path: str, dest_path: str):
        await asyncio.to_thread(self._copy, source_path, dest_path)
        logger.info(f"Copied on {self.config.host}: {source_path} -> {dest_path}")

    def _copy(self, source_path: str, dest_path: str):
        source, dest = self._expand(source_path), self._expand(dest_path)
        try:
            status, _, err = self._exec(f"cp -r -- {shlex.quote(source)} {shlex.quote(dest)}")
            if status == 0:
                return
            logger.warning(f"Shell copy failed with code {status}, falling back to SFTP: {err.strip()}")
        except ConnectionFailedError as e:
            logger.warning(f"Shell copy unavailable, falling back to SFTP: {e}")
        self._copy_via_sftp(source, dest)

    def _copy_via_sftp(self, source: str, dest: str):
        sftp = self._ensure_connection()
        if not stat_module.S_ISDIR(sftp.stat(source).st_mode or 0):
            self._copy_remote_file(sftp, source, dest)
            return
        pending = [(source, dest)]
        while pending:
            src_dir, dst_dir = pending.pop()
            sftp.mkdir(dst_dir)
            for item in sftp.listdir_attr(src_dir):
                src = posixpath.join(src_dir, item.filename)
                dst = posixpath.join(dst_dir, item.filename)
                if stat_module.S_ISDIR(item.st_mode or 0):
                    pending.append((src, dst))
                else:
                    self._copy_remote_file(sftp, src, dst)

    def _copy_remote_file(self, sftp: paramiko.SFTPClient, source: str, dest: str):
        with sftp.open(source, "rb") as src, sftp.open(dest, "wb") as dst:
            src.prefetch()
            for chunk in iter(lambda: src.read(self.chunk_size), b""):
                dst.write(chunk)

    async def calculate_checksum(self, path: str, algorithm: str) -> str:
        if algorithm not in CHECKSUM_ALGORITHMS:
            raise InvalidParamsError(f"Unsupported checksum algorithm: {algorithm}")

        def _checksum():
            remote = self._expand(path)
            status, out, err = self._exec(f"{algorithm}sum -- {shlex.quote(remote)}")
            match = _HEX_DIGEST.match(out.strip())
            if status != 0 or not match:
                raise OperationFailedError(f"Failed to calculate checksum: {err.strip() or out.strip()}")
            return match.group(1).lower()

        return await asyncio.to_thread(_checksum)

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
        return await asyncio.to_thread(self._search, base_path, pattern, content, recursive)

    def _search(self, base_path: str, pattern: Optional[str], content: Optional[str], recursive: bool) -> List[FileEntry]:
        regex = glob_to_regex(pattern) if pattern else None
        sftp = self._ensure_connection()
        results = []
        pending = [self._expand(base_path)]
        while pending:
            dir_path = pending.pop()
            try:
                items = sftp.listdir_attr(dir_path)
            except IOError as e:
                logger.warning(f"Failed to read directory {dir_path}: {e}")
                continue
            for item in items:
                child = posixpath.join(dir_path, item.filename)
                try:
                    kind = _kind_of(item.st_mode or 0)
                    if regex is None or regex.match(item.filename):
                        if not content or (kind == TYPE_REGULAR and self._contains(child, content)):
                            results.append(self._make_entry(sftp, child, item.filename, item))
                    if recursive and kind == TYPE_DIRECTORY:
                        pending.append(child)
                except (IOError, ConnectionFailedError) as e:
                    logger.warning(f"Failed to search {child}: {e}")
        return results

    def _contains(self, remote: str, needle: str) -> bool:
        status, _, _ = self._exec(f"grep -q -F -- {shlex.quote(needle)} {shlex.quote(remote)}")
        return status == 0

    # ------------------------------------------------------------------
    # Symlinks
    # ------------------------------------------------------------------

    async def create_symlink(self, source_path: str, target_path: str):
        def _symlink():
            source, target = self._expand(source_path), self._expand(target_path)
            self._run(lambda sftp: sftp.symlink(source, target))
        await asyncio.to_thread(_symlink)

    async def resolve_symlink(self, symlink_path: str) -> str:
        def _resolve():
            remote = self._expand(symlink_path)
            try:
                target = self._run(lambda sftp: sftp.readlink(remote))
            except IOError as e:
                raise wrap_os_error(e, f"Failed to resolve symlink {symlink_path}") from e
            if target is None:
                raise OperationFailedError(f"Failed to resolve symlink {symlink_path}: not a link")
            if not posixpath.isabs(target):
                target = posixpath.join(posixpath.dirname(remote), target)
            return posixpath.normpath(target)
        return await asyncio.to_thread(_resolve)

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    async def chmod(self, path: str, mode: str):
        try:
            mode_num = parse_octal_mode(mode)
        except ValueError as e:
            raise InvalidParamsError(str(e))
        remote = self._expand(path)
        await asyncio.to_thread(self._run, lambda sftp: sftp.chmod(remote, mode_num))

    async def chmod_recursive(
        self,
        path: str,
        mode: str,
        on_progress: Optional[ChmodProgressCallback] = None,
    ):
        try:
            mode_num = parse_octal_mode(mode)
        except ValueError as e:
            raise InvalidParamsError(str(e))
        all_paths = await asyncio.to_thread(self._collect_tree, self._expand(path))
        total = len(all_paths)
        current = 0
        for item in all_paths:
            try:
                await asyncio.to_thread(self._run, lambda sftp, p=item: sftp.chmod(p, mode_num))
            except IOError as e:
                logger.warning(f"Failed to chmod {item}: {e}")
                continue
            current += 1
            if on_progress:
                on_progress(current, total, item)

    def _collect_tree(self, root: str) -> List[str]:
        sftp = self._ensure_connection()
        if not stat_module.S_ISDIR(sftp.stat(root).st_mode or 0):
            return [root]
        collected = []
        pending = [root]
        while pending:
            dir_path = pending.pop()
            collected.append(dir_path)
            try:
                items = sftp.listdir_attr(dir_path)
            except IOError as e:
                if dir_path == root:
                    raise
                logger.warning(f"Failed to read directory {dir_path}: {e}")
                continue
            for item in sorted(items, key=lambda i: i.filename, reverse=True):
                child = posixpath.join(dir_path, item.filename)
                if stat_module.S_ISDIR(item.st_mode or 0):
                    pending.append(child)
                else:
                    collected.append(child)
        return collected

    async def get_disk_space(self, path: str) -> Dict[str, int]:
        def _df():
            remote = self._expand(path)
            status, out, err = self._exec(f"df -Pk -- {shlex.quote(remote)}")
            lines = [line for line in out.splitlines() if line.strip()]
            if status != 0 or len(lines) < 2:
                raise OperationFailedError(f"Failed to get disk space: {err.strip()}")
            fields = lines[-1].split()
            total, used, free = (int(fields[i]) * 1024 for i in (1, 2, 3))
            return {"total": total, "free": free, "used": used}
        return await asyncio.to_thread(_df)

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def upload(
        self,
        local_path: str,
        remote_path: str,
        offset: int = 0,
        control: Optional[TransferControl] = None,
        on_bytes: Optional[BytesCallback] = None,
    ) -> int:
        remote = await asyncio.to_thread(self._expand, remote_path)
        sftp = await asyncio.to_thread(self._ensure_connection)
        local_file = await asyncio.to_thread(open, local_path, "rb")
        try:
            remote_file = await asyncio.to_thread(sftp.open, remote, "ab" if offset else "wb")
            try:
                remote_file.set_pipelined(True)
                if offset:
                    await asyncio.to_thread(local_file.seek, offset)
                return await pump_stream(local_file, remote_file, control, self.chunk_size, on_bytes, offset)
            finally:
                await asyncio.to_thread(remote_file.close)
        finally:
            local_file.close()

    async def download(
        self,
        remote_path: str,
        local_path: str,
        offset: int = 0,
        control: Optional[TransferControl] = None,
        on_bytes: Optional[BytesCallback] = None,
    ) -> int:
        remote = await asyncio.to_thread(self._expand, remote_path)
        sftp = await asyncio.to_thread(self._ensure_connection)
        remote_file = await asyncio.to_thread(sftp.open, remote, "rb")
        try:
            if offset:
                await asyncio.to_thread(remote_file.seek, offset)
            local_file = await asyncio.to_thread(open, local_path, "ab" if offset else "wb")
            try:
                return await pump_stream(remote_file, local_file, control, self.chunk_size, on_bytes, offset)
            finally:
                local_file.close()
        finally:
            await asyncio.to_thread(remote_file.close)
