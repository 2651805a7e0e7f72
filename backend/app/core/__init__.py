# Core module
from app.core.config import get_settings, Settings
from app.core.redis import cache, get_redis

__all__ = ["get_settings", "Settings", "cache", "get_redis"]
