"""Segmented OBS recording and block merging service."""
