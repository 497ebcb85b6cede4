"""Which clients are subscribed to which rooms."""

from collections import defaultdict


class RoomMembership:

    def __init__(self):
        self._members = defaultdict(set)
        self._rooms_by_sid = defaultdict(set)

    def join(self, room_id, sid):
        """Record membership; True if this is the room's first member"""
        first = not self._members.get(room_id)
        self._members[room_id].add(sid)
        self._rooms_by_sid[sid].add(room_id)
        return first

    def leave(self, room_id, sid):
        """Drop membership; True if the room is now empty"""
        members = self._members.get(room_id)
        if not members or sid not in members:
            return False
        members.discard(sid)
        rooms = self._rooms_by_sid.get(sid)
        if rooms is not None:
            rooms.discard(room_id)
            if not rooms:
                del self._rooms_by_sid[sid]
        if not members:
            del self._members[room_id]
            return True
        return False

    def leave_all(self, sid):
        """Drop every membership of a client; returns rooms that became empty"""
        emptied = []
        for room_id in sorted(self._rooms_by_sid.get(sid, ())):
            if self.leave(room_id, sid):
                emptied.append(room_id)
        return emptied

    def members(self, room_id):
        return set(self._members.get(room_id, ()))

    def count(self, room_id):
        return len(self._members.get(room_id, ()))

    def rooms(self):
        return sorted(self._members)
