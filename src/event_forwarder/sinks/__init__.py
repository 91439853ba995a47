from .http import HttpSink

__all__ = ["HttpSink"]
