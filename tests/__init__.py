"""
Test package for configsync.

This package contains unit tests for the sync engine: git command running,
authentication, repository operations, status resolution, conflict handling,
configuration merging, scheduling and the command line interface.
"""
