"""Design token synchronization with Figma variables."""

from .sync import run_sync, resolve_and_apply, bulk_import, SyncResult, ImportResult

__all__ = ["run_sync", "resolve_and_apply", "bulk_import", "SyncResult", "ImportResult"]
