"""CLI module for pinlink."""
