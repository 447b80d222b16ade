"""Utility functions for pinlink."""

from pinlink.utils.helpers import ensure_dir, get_data_path, iso_now, now_ms

__all__ = ["ensure_dir", "get_data_path", "iso_now", "now_ms"]
