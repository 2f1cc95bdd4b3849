"""JSON-RPC cache proxy service."""
