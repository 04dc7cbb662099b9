from .health import router as health_router
from .live import router as live_router
from .webhook import router as webhook_router

__all__ = ["health_router", "live_router", "webhook_router"]
