"""Core library for the Flixor gateway: secrets, credentials, identity and caching."""
