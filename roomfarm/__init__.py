"""Per-room Docker sandboxes with terminals, file sync and port proxying."""

__version__ = '0.1.0'
