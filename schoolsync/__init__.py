"""
schoolsync - client-side resource synchronization for the school management API.
"""

from schoolsync.client import SyncClient, default_resources

__all__ = ["SyncClient", "default_resources"]
