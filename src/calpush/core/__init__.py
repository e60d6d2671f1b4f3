"""Core sync and notification fan-out components."""
