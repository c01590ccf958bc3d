from __future__ import annotations

# Error text raised when the host relay or its event loop went away under a running page session.
HOST_DISCONNECT_MARKERS = (
    "context invalidated",
    "host disconnected",
    "Event loop is closed",
    "cannot schedule new futures after shutdown",
)


class CovermetaError(RuntimeError):
    pass


class StoreError(CovermetaError):
    pass


class HostDisconnectedError(CovermetaError):
    def __init__(self, message: str = "Host context invalidated") -> None:
        super().__init__(message)


def is_host_disconnect(exc: BaseException) -> bool:
    if isinstance(exc, HostDisconnectedError):
        return True
    text = str(exc)
    return any(marker.lower() in text.lower() for marker in HOST_DISCONNECT_MARKERS)
