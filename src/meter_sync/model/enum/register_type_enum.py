from enum import StrEnum


class RegisterType(StrEnum):
    HOLDING = "holding"
    INPUT = "input"
