"""Page Chat package."""

from .config import EngineConfig
from .engine import ChatEngine, SessionContext

__all__ = ["ChatEngine", "EngineConfig", "SessionContext"]
