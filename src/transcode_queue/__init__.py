"""Video transcoding job queue behind the moderation console."""

__version__ = "0.1.0"
