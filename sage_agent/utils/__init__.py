"""Utility helpers for sage_agent."""

from sage_agent.utils.helpers import ensure_dir, get_data_path

__all__ = ["ensure_dir", "get_data_path"]
