"""
File tree snapshots and structural diffs.

Pure functions only: building a FileNode tree from `find` output, flattening
it, and diffing two trees. Running the listing and applying a diff against a
container lives in roomfarm.filesystem.
"""

import itertools
import posixpath
import re
from dataclasses import dataclass
from typing import NamedTuple, Optional

from .shell import WORKSPACE, shell_quote

FILE = 'file'
FOLDER = 'folder'
SYMLINK = 'symlink'
EXECUTABLE = 'executable'

TYPE_CODES = {'d': FOLDER, 'l': SYMLINK, 'f': FILE}

EXECUTABLE_EXTENSIONS = frozenset({
    '.sh', '.bash', '.zsh', '.fish', '.command', '.run', '.bat', '.cmd', '.ps1',
})

_CONTROL_CHARS = re.compile(r'[\x00-\x1f]')


@dataclass
class FileNode:
    id: str
    name: str
    path: str
    type: str
    size: int = 0
    mtime: float = 0.0
    children: Optional[list] = None

    @property
    def is_folder(self):
        return self.type == FOLDER

    def to_dict(self):
        data = {
            'id': self.id,
            'name': self.name,
            'path': self.path,
            'type': self.type,
            'size': self.size,
            'mtime': self.mtime,
        }
        if self.children is not None:
            data['children'] = [child.to_dict() for child in self.children]
        return data

    @classmethod
    def from_dict(cls, data, _ids=None):
        """Rebuild a node from its wire form, assigning ids where missing"""
        ids = _ids if _ids is not None else itertools.count(1)
        children = data.get('children')
        node_type = data.get('type') or (FOLDER if children is not None else FILE)
        path = data['path']
        node = cls(
            id=str(data.get('id') or next(ids)),
            name=data.get('name') or posixpath.basename(path.rstrip('/')),
            path=path,
            type=node_type,
            size=int(data.get('size') or 0),
            mtime=float(data.get('mtime') or 0.0),
        )
        if node_type == FOLDER:
            node.children = [cls.from_dict(child, ids) for child in (children or [])]
        return node


class TreeDiff(NamedTuple):
    to_create: list
    to_delete: list

    @property
    def empty(self):
        return not self.to_create and not self.to_delete


def listing_command(root=WORKSPACE, blacklist=()):
    """Build the single `find` invocation used for snapshots.

    Blacklisted names are pruned by find itself so their contents never
    cross the wire.
    """
    printf = "-printf '%y|%p|%s|%T@\\n'"
    if not blacklist:
        return f'find {shell_quote(root)} {printf}'
    names = ' -o '.join(f'-name {shell_quote(name)}' for name in blacklist)
    return f'find {shell_quote(root)} \\( {names} \\) -prune -o {printf}'


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_listing(output, root=WORKSPACE):
    """Parse `type|path|size|mtime` lines into (type, path, size, mtime) tuples"""
    entries = []
    prefix = root.rstrip('/') + '/'
    for line in output.splitlines():
        line = line.rstrip('\r')
        if '|' not in line:
            continue
        code, rest = line.split('|', 1)
        node_type = TYPE_CODES.get(code.strip())
        if node_type is None:
            continue
        fields = rest.rsplit('|', 2)
        path = fields[0].strip()
        if not path or _CONTROL_CHARS.search(path):
            continue
        if path != root:
            path = path.rstrip('/')
        if path != root and not path.startswith(prefix):
            continue
        size = _to_int(fields[1]) if len(fields) > 1 else 0
        mtime = _to_float(fields[2]) if len(fields) > 2 else 0.0
        if node_type == FILE and posixpath.splitext(path)[1].lower() in EXECUTABLE_EXTENSIONS:
            node_type = EXECUTABLE
        entries.append((node_type, path, size, mtime))
    return entries


def sort_key(node):
    return (not node.is_folder, node.name.lower(), node.name)


def sort_tree(nodes):
    nodes.sort(key=sort_key)
    for node in nodes:
        if node.children:
            sort_tree(node.children)
    return nodes


def build_tree(entries, root=WORKSPACE):
    """Assemble parsed entries into a single-rooted, sorted tree.

    Missing ancestors are synthesized as folders so the result is always
    connected, even when intermediate directories were pruned.
    """
    nodes = {}
    counter = itertools.count(1)

    def ensure(path, node_type=FOLDER, size=0, mtime=0.0):
        node = nodes.get(path)
        if node is not None:
            return node
        node = FileNode(
            id=str(next(counter)),
            name=posixpath.basename(path) or path,
            path=path,
            type=node_type,
            size=size,
            mtime=mtime,
            children=[] if node_type == FOLDER else None,
        )
        nodes[path] = node
        if path != root:
            parent = ensure(posixpath.dirname(path))
            if parent.children is None:
                parent.type = FOLDER
                parent.children = []
            parent.children.append(node)
        return node

    for node_type, path, size, mtime in entries:
        existing = nodes.get(path)
        if existing is None:
            ensure(path, node_type, size, mtime)
            continue
        existing.size = size
        existing.mtime = mtime
        if not existing.children and node_type != FOLDER:
            existing.type = node_type
            existing.children = None

    if root not in nodes:
        return []
    return sort_tree([nodes[root]])


def flatten(tree):
    """Pre-order list of every path in the tree; folder paths end with '/'"""
    paths = []
    for node in tree:
        if node.is_folder:
            paths.append(node.path.rstrip('/') + '/')
            paths.extend(flatten(node.children or []))
        else:
            paths.append(node.path)
    return paths


def diff_trees(old_tree, new_tree):
    old_paths = flatten(old_tree)
    new_paths = flatten(new_tree)
    old_set = set(old_paths)
    new_set = set(new_paths)
    return TreeDiff(
        to_create=[p for p in new_paths if p not in old_set],
        to_delete=[p for p in old_paths if p not in new_set],
    )


def tree_to_dicts(tree):
    return [node.to_dict() for node in tree]


def tree_from_dicts(data):
    ids = itertools.count(1)
    return [FileNode.from_dict(item, ids) for item in data or []]
