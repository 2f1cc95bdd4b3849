"""Counters and stats reporting."""
