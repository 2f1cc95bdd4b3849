"""Websocket pass-through relay."""
