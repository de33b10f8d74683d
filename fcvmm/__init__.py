"""Launch Firecracker microVMs and control them over their API socket, blocking or with asyncio."""

__version__ = "0.1.0"
__all__ = [
    "agent",
    "async_agent",
    "async_instance",
    "cli",
    "errors",
    "events",
    "firecracker",
    "fstack",
    "instance",
]