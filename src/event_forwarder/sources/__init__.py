from .ndjson import NdjsonSource

__all__ = ["NdjsonSource"]
