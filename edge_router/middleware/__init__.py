from edge_router.middleware.dispatcher import EdgeRouterMiddleware
from edge_router.middleware.stages import build_stages

__all__ = ["EdgeRouterMiddleware", "build_stages"]
