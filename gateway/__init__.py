"""FastAPI gateway fronting Plex media servers."""
