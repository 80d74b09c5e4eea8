from enum import StrEnum


class ConnectivityState(StrEnum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectivityEvent(StrEnum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
