from .lock_sweeper import LockSweeper

__all__ = ["LockSweeper"]
