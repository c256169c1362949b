"""Karaokio - song request to karaoke artifact pipeline."""
