from stratus.server.app import create_app
from stratus.server.credentials import cloud_from_headers

__all__ = ["cloud_from_headers", "create_app"]
