"""HTTP request layer for Karaokio."""
