"""Unified-diff parsing and application over an in-memory file set.

Pure and synchronous: no disk or network I/O happens here. Callers own the
file list and decide whether to commit the returned copy.
"""
