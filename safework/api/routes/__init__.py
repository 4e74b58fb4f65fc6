from safework.api.routes import notifications

__all__ = [
    "notifications",
]
