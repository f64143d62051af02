from .middleware import PointsDebitMiddleware
from .router import get_engine, router

__all__ = ["PointsDebitMiddleware", "get_engine", "router"]
