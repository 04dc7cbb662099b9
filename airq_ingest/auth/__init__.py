from .webhook_secret import verify_bearer

__all__ = ["verify_bearer"]
