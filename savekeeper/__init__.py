"""SaveKeeper: concurrent backup jobs with remote monitoring and control."""

__version__ = "0.3.0"
