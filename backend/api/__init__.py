# api/__init__.py
from api.server import create_app, build_services, ServerConfig, OrderServices

__all__ = [
    "create_app",
    "build_services",
    "ServerConfig",
    "OrderServices",
]
