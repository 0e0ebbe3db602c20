"""Dead-letter storage for work that exhausted every recovery strategy."""
from .sink import DeadLetterSink, ReplayHandler, ReplayReport

__all__ = ["DeadLetterSink", "ReplayHandler", "ReplayReport"]
