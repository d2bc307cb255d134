"""Track seedbox torrents, relay them over rsync, and pull them to a home machine."""

__version__ = "0.1.0"