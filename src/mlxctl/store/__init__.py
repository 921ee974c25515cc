from .redis_store import StateStore

__all__ = ["StateStore"]
