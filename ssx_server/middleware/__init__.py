from .observability import ObservabilityMiddleware

__all__ = [
    "ObservabilityMiddleware",
]
