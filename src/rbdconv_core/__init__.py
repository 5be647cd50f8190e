"""rbdconv core - shared protocol constants and record framing."""
from .records import RecordWriter

__all__ = ["RecordWriter"]
