from .history import HistoryStore, DEFAULT_MACHINES

__all__ = ["HistoryStore", "DEFAULT_MACHINES"]
