"""
Shell quoting and workspace path handling.

Every user-controlled path or value that ends up inside an `sh -c` command
string must pass through shell_quote(). No call site interpolates raw paths.
"""

import posixpath
import shlex

from .errors import InvalidPath

WORKSPACE = '/workspace'


def shell_quote(value):
    """Quote a value so the shell sees exactly one literal argument"""
    return shlex.quote(str(value))


def resolve_workspace_path(path, root=WORKSPACE, allow_root=True):
    """Normalize a client path into an absolute path under the workspace root.

    Relative paths are taken relative to the root. A trailing separator is
    preserved because the tree diff uses it to mark folders. Anything that
    resolves outside the root raises InvalidPath.
    """
    if path is None or not str(path).strip():
        raise InvalidPath('Path is required')
    raw = str(path)
    if '\x00' in raw:
        raise InvalidPath('Path contains a NUL byte')
    is_dir = raw.endswith('/')
    joined = raw if raw.startswith('/') else posixpath.join(root, raw)
    normalized = posixpath.normpath(joined)
    if normalized != root and not normalized.startswith(root.rstrip('/') + '/'):
        raise InvalidPath(f'Path escapes the workspace: {raw}')
    if normalized == root and not allow_root:
        raise InvalidPath('Refusing to operate on the workspace root')
    if is_dir and normalized != root:
        normalized += '/'
    return normalized
