"""
Filesystem change notifications from inside room containers.

An `inotifywait -m` stream runs per watched room. Bursts of events are
collapsed by a Debouncer, after which the room's tree is re-scanned and
pushed to subscribers.
"""

import logging
import re
from dataclasses import dataclass, field

import gevent

from .errors import ExecStreamError, RoomFarmError
from .filetree import tree_to_dicts
from .shell import shell_quote
from .streams import STDERR, LineSplitter

logger = logging.getLogger(__name__)

WATCH_EVENTS = ('create', 'modify', 'delete', 'move')


def exclude_pattern(blacklist):
    """POSIX ERE matching any path component in the blacklist"""
    names = '|'.join(re.escape(name) for name in blacklist)
    return f'(^|/)({names})(/|$)'


def watch_command(root, blacklist=()):
    events = ' '.join(f'-e {event}' for event in WATCH_EVENTS)
    command = f'inotifywait -m -r -q {events}'
    if blacklist:
        command += f' --exclude {shell_quote(exclude_pattern(blacklist))}'
    return f'{command} {shell_quote(root)}'


class Debouncer:
    """Calls `callback` once, `interval` seconds after the last trigger()"""

    def __init__(self, interval, callback):
        self.interval = interval
        self.callback = callback
        self._timer = None

    @property
    def pending(self):
        return self._timer is not None

    def trigger(self):
        if self._timer is not None:
            self._timer.kill(block=False)
        self._timer = gevent.spawn_later(self.interval, self._fire)

    def _fire(self):
        # a trigger during the callback schedules a new timer instead of killing this one
        self._timer = None
        self.callback()

    def cancel(self):
        if self._timer is not None:
            self._timer.kill(block=False)
            self._timer = None


@dataclass
class RoomWatch:
    room_id: str
    ref: object
    stream: object
    debouncer: Debouncer
    reader: object = field(default=None, repr=False)


class FileWatcher:

    def __init__(self, executor, lifecycle, files, publisher, settings):
        self.executor = executor
        self.lifecycle = lifecycle
        self.files = files
        self.publisher = publisher
        self.settings = settings
        self.watches = {}

    def is_watching(self, room_id):
        return room_id in self.watches

    def watch(self, room_id):
        """Start watching a room's workspace. No-op if already watched."""
        existing = self.watches.get(room_id)
        if existing is not None:
            return existing
        ref = self.lifecycle.require(room_id)
        stream = self.executor.open_stream(
            ref, watch_command(self.settings.workspace, self.settings.blacklist)
        )
        watch = RoomWatch(
            room_id, ref, stream,
            Debouncer(self.settings.watch_debounce, lambda: self._changed(room_id)),
        )
        self.watches[room_id] = watch
        watch.reader = gevent.spawn(self._read, watch)
        logger.info('[Watcher] Watching %s', room_id)
        return watch

    def _read(self, watch):
        splitter = LineSplitter()
        try:
            for kind, payload in watch.stream:
                if kind == STDERR:
                    logger.debug('[Watcher] %s: %s', watch.room_id, payload.decode('utf-8', 'replace').strip())
                    continue
                if any(splitter.feed(payload)):
                    watch.debouncer.trigger()
        except ExecStreamError as e:
            logger.warning('[Watcher] %s: stream failed: %s', watch.room_id, e)
        except Exception:
            logger.exception('[Watcher] %s: reader failed', watch.room_id)
        finally:
            if self.watches.get(watch.room_id) is watch:
                watch.debouncer.cancel()
                del self.watches[watch.room_id]
                logger.info('[Watcher] Stream for %s ended', watch.room_id)

    def _changed(self, room_id):
        try:
            tree = self.files.refresh(room_id)
        except RoomFarmError as e:
            logger.warning('[Watcher] %s: refresh after change failed: %s', room_id, e)
            return
        except Exception:
            logger.exception('[Watcher] %s: refresh after change failed', room_id)
            return
        self.publisher.publish(room_id, 'directory:changed', {'tree': tree_to_dicts(tree)})

    def stop(self, room_id):
        """Stop watching a room. Never raises."""
        watch = self.watches.pop(room_id, None)
        if watch is None:
            return False
        watch.debouncer.cancel()
        watch.stream.close()
        if watch.reader is not None:
            watch.reader.kill(block=False)
        try:
            self.executor.run(watch.ref, "pkill -f '[i]notifywait' || true")
        except RoomFarmError as e:
            logger.debug('[Watcher] %s: pkill failed: %s', room_id, e)
        try:
            if watch.stream.inspect().get('Running'):
                logger.warning('[Watcher] %s: inotifywait still running after stop', room_id)
        except ExecStreamError as e:
            logger.debug('[Watcher] %s: could not inspect watch exec: %s', room_id, e)
        logger.info('[Watcher] Stopped watching %s', room_id)
        return True

    def stop_all(self):
        for room_id in list(self.watches):
            self.stop(room_id)
