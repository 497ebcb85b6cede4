"""
Room-level file operations on top of the command executor.

FileTreeService owns the per-room "last known tree" cache used for diffing.
The cache is only ever replaced wholesale, and a per-room semaphore keeps an
explicit sync request and a watcher-triggered refresh from racing on it.
"""

import io
import logging
import posixpath
import tarfile
import time
from collections import defaultdict

from docker.errors import APIError, NotFound
from gevent.lock import Semaphore

from .errors import CommandFailed, PathConflict
from .filetree import build_tree, diff_trees, listing_command, parse_listing, tree_from_dicts
from .shell import resolve_workspace_path, shell_quote

logger = logging.getLogger(__name__)

# exit status our own scripts use to signal "target already exists"
CONFLICT_EXIT = 17


class FileTreeService:

    def __init__(self, executor, lifecycle, settings):
        self.executor = executor
        self.lifecycle = lifecycle
        self.settings = settings
        self.root = settings.workspace
        self._trees = {}
        self._locks = defaultdict(Semaphore)

    def lock(self, room_id):
        return self._locks[room_id]

    def _target(self, path):
        return resolve_workspace_path(path, self.root, allow_root=False).rstrip('/')

    # -- snapshots -----------------------------------------------------

    def snapshot(self, ref):
        """Scan the container's workspace into a FileNode tree"""
        command = listing_command(self.root, self.settings.blacklist)
        output = self.executor.run_checked(ref, command).stdout
        return build_tree(parse_listing(output, self.root), self.root)

    def _refresh_locked(self, room_id):
        ref = self.lifecycle.require(room_id)
        tree = self.snapshot(ref)
        self._trees[room_id] = tree
        return tree

    def get_tree(self, room_id):
        """Fresh snapshot of the room's workspace; also replaces the cache"""
        with self.lock(room_id):
            return self._refresh_locked(room_id)

    refresh = get_tree

    def last_tree(self, room_id):
        return self._trees.get(room_id)

    def forget(self, room_id):
        """Drop the cached tree. The room's lock is kept so a sync in flight stays exclusive."""
        with self.lock(room_id):
            self._trees.pop(room_id, None)

    # -- structural sync -----------------------------------------------

    def apply_diff(self, ref, to_create, to_delete):
        """Delete, then create, one checked exec per path.

        A failure part way through raises and leaves the earlier changes in
        place; the next full refresh converges the cache again.
        """
        for path in to_delete:
            target = resolve_workspace_path(path, self.root).rstrip('/')
            if target == self.root:
                logger.debug('[Files] Skipping delete of workspace root')
                continue
            self.executor.run_checked(ref, f'rm -rf -- {shell_quote(target)}')
        for path in to_create:
            target = resolve_workspace_path(path, self.root)
            if target.endswith('/') or target == self.root:
                self.executor.run_checked(ref, f'mkdir -p -- {shell_quote(target)}')
            else:
                self.executor.run_checked(ref, f'touch -- {shell_quote(target)}')

    def sync(self, room_id, new_tree):
        """Make the container's structure match new_tree; returns the applied diff"""
        if new_tree and isinstance(new_tree[0], dict):
            new_tree = tree_from_dicts(new_tree)
        with self.lock(room_id):
            ref = self.lifecycle.require(room_id)
            current = self._trees.get(room_id)
            if current is None:
                current = self.snapshot(ref)
            diff = diff_trees(current, new_tree)
            if not diff.empty:
                logger.info(
                    '[Files] %s: applying %d deletes, %d creates',
                    room_id, len(diff.to_delete), len(diff.to_create),
                )
                self.apply_diff(ref, diff.to_create, diff.to_delete)
            self._trees[room_id] = new_tree
            return diff

    # -- single file operations ----------------------------------------

    def read(self, room_id, path):
        ref = self.lifecycle.require(room_id)
        target = self._target(path)
        return self.executor.run(ref, f'cat -- {shell_quote(target)}', strip=False).check().stdout

    def write(self, room_id, path, content):
        ref = self.lifecycle.require(room_id)
        target = self._target(path)
        content = content or ''
        if len(content.encode('utf-8')) > self.settings.inline_write_limit:
            self._put_file(ref, target, content)
            return
        self.executor.run_checked(
            ref, f"printf '%s' {shell_quote(content)} > {shell_quote(target)}"
        )

    def _put_file(self, ref, target, content):
        """Ship large content as a one-file tar archive instead of an argv string"""
        data = content.encode('utf-8')
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode='w') as tar:
            info = tarfile.TarInfo(posixpath.basename(target))
            info.size = len(data)
            info.mtime = int(time.time())
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
        container = self.executor.get_running(ref)
        try:
            ok = container.put_archive(posixpath.dirname(target), buf.getvalue())
        except (NotFound, APIError) as e:
            raise CommandFailed(f'put_archive {target}', 1, str(e)) from e
        if not ok:
            raise CommandFailed(f'put_archive {target}', 1, 'daemon rejected archive')

    def _run_guarded(self, ref, target, script):
        result = self.executor.run(ref, script)
        if result.exit_code == CONFLICT_EXIT:
            raise PathConflict(target)
        return result.check()

    def create_file(self, room_id, path):
        ref = self.lifecycle.require(room_id)
        target = self._target(path)
        q = shell_quote(target)
        parent = shell_quote(posixpath.dirname(target))
        self._run_guarded(
            ref, target,
            f'if [ -e {q} ] || [ -L {q} ]; then exit {CONFLICT_EXIT}; fi; '
            f'mkdir -p -- {parent} && touch -- {q}',
        )

    def create_folder(self, room_id, path):
        ref = self.lifecycle.require(room_id)
        target = self._target(path)
        q = shell_quote(target)
        self._run_guarded(
            ref, target,
            f'if [ -e {q} ] || [ -L {q} ]; then exit {CONFLICT_EXIT}; fi; mkdir -p -- {q}',
        )

    def delete_path(self, room_id, path):
        ref = self.lifecycle.require(room_id)
        target = self._target(path)
        self.executor.run_checked(ref, f'rm -rf -- {shell_quote(target)}')

    def rename_path(self, room_id, old_path, new_path):
        ref = self.lifecycle.require(room_id)
        source = self._target(old_path)
        target = self._target(new_path)
        src, dst = shell_quote(source), shell_quote(target)
        parent = shell_quote(posixpath.dirname(target))
        self._run_guarded(
            ref, target,
            f'if [ ! -e {src} ] && [ ! -L {src} ]; then echo "No such file or directory: "{src} >&2; exit 1; fi; '
            f'if [ -e {dst} ] || [ -L {dst} ]; then exit {CONFLICT_EXIT}; fi; '
            f'mkdir -p -- {parent} && mv -- {src} {dst}',
        )
