from dataclasses import dataclass

from meter_sync.model.enum.register_type_enum import RegisterType
from meter_sync.schema.sync_config_schema import RegisterSchema


@dataclass(frozen=True)
class RegisterRange:
    """A contiguous block of registers fetched with one request."""

    register_type: RegisterType
    start: int
    count: int
    items: list[RegisterSchema]


def build_register_ranges(registers: list[RegisterSchema], max_regs_per_req: int = 120) -> list[RegisterRange]:
    """Group registers into contiguous same-type ranges, ordered by type then address."""
    candidates = sorted(registers, key=lambda r: (r.register_type.value, r.address))
    ranges: list[RegisterRange] = []

    current_type: RegisterType | None = None
    current_start = 0
    current_end = 0
    current_items: list[RegisterSchema] = []

    for reg in candidates:
        reg_start = reg.address
        reg_end = reg.address + reg.format.word_count

        if current_type is None:
            current_type, current_start, current_end, current_items = reg.register_type, reg_start, reg_end, [reg]
            continue

        should_split = (
            reg.register_type != current_type
            or reg_start != current_end
            or (reg_end - current_start) > max_regs_per_req
        )
        if should_split:
            ranges.append(RegisterRange(current_type, current_start, current_end - current_start, current_items))
            current_type, current_start, current_end, current_items = reg.register_type, reg_start, reg_end, [reg]
            continue

        current_end = reg_end
        current_items.append(reg)

    if current_type is not None:
        ranges.append(RegisterRange(current_type, current_start, current_end - current_start, current_items))

    return ranges
