"""Blockchain connector package for node access."""
from .provider import NodeClient, create_node_client

__all__ = ["NodeClient", "create_node_client"]
