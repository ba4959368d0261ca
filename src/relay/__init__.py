# Agent relay package
#
# Provides:
#  - FastAPI-based WebSocket relay for remote agents (see relay/server.py)
#  - connection registry, envelope codec and type-based dispatch
#  - server-driven keepalive pings and graceful, draining shutdown
#
# Run with `python -m relay` or the `agent-relay` console script.

__version__ = "1.0.0"
