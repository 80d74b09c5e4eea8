from enum import StrEnum


class CollectionOperation(StrEnum):
    CONNECT = "connect"
    READ = "read"
    WRITE = "write"
    CONNECTIVITY = "connectivity"
