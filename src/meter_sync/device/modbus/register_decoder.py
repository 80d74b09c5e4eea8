from pymodbus.client.mixin import ModbusClientMixin

from meter_sync.model.enum.decode_format import DecodeFormat

INVALID_U16_SENTINEL = 0xFFFF


def decode_registers(raw: list[int], fmt: DecodeFormat | str) -> float | int:
    """
    Decode 16-bit Modbus registers into a number according to `fmt`.

    Word order is the order of 16-bit registers, not the byte order inside them.
    'little' means the low word comes first.
    """
    f = fmt if isinstance(fmt, DecodeFormat) else DecodeFormat.from_string(str(fmt))
    if f is None:
        raise ValueError(f"unsupported register format: {fmt}")

    words = [int(w) & INVALID_U16_SENTINEL for w in raw]
    if len(words) < f.word_count:
        raise ValueError(f"{f} needs {f.word_count} registers, got {len(words)}")
    words = words[: f.word_count]

    if f in (DecodeFormat.U32, DecodeFormat.U32_LE):
        return ModbusClientMixin.convert_from_registers(
            words, data_type=ModbusClientMixin.DATATYPE.UINT32, word_order="little"
        )
    if f == DecodeFormat.U32_BE:
        return ModbusClientMixin.convert_from_registers(
            words, data_type=ModbusClientMixin.DATATYPE.UINT32, word_order="big"
        )
    if f == DecodeFormat.I32:
        return ModbusClientMixin.convert_from_registers(
            words, data_type=ModbusClientMixin.DATATYPE.INT32, word_order="big"
        )
    if f in (DecodeFormat.F32, DecodeFormat.F32_BE):
        return ModbusClientMixin.convert_from_registers(
            words, data_type=ModbusClientMixin.DATATYPE.FLOAT32, word_order="big"
        )
    if f == DecodeFormat.F32_LE:
        return ModbusClientMixin.convert_from_registers(
            words, data_type=ModbusClientMixin.DATATYPE.FLOAT32, word_order="little"
        )
    if f == DecodeFormat.I16:
        return ModbusClientMixin.convert_from_registers(words, data_type=ModbusClientMixin.DATATYPE.INT16)

    return words[0]
