from enum import StrEnum


class DecodeFormat(StrEnum):
    """Supported meter register formats with explicit word order."""

    U16 = "u16"
    I16 = "i16"
    U32 = "u32"
    U32_LE = "u32_le"
    U32_BE = "u32_be"
    I32 = "i32"
    F32 = "f32"
    F32_LE = "f32_le"
    F32_BE = "f32_be"

    @classmethod
    def from_string(cls, s: str) -> "DecodeFormat | None":
        if isinstance(s, cls):
            return s
        key: str = s.lower().replace("-", "_").strip()
        alias_dict = {
            "uint16": "u16",
            "int16": "i16",
            "uint32": "u32",
            "int32": "i32",
            "float32": "f32",
            "float": "f32",
            "u32le": "u32_le",
            "u32be": "u32_be",
            "f32le": "f32_le",
            "f32be": "f32_be",
        }
        key = alias_dict.get(key, key)
        try:
            return cls(key)
        except ValueError:
            return None

    @property
    def word_count(self) -> int:
        return 1 if self in (DecodeFormat.U16, DecodeFormat.I16) else 2
