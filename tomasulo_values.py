"""
Deterministic example values for registers and memory cells.

Every register that is read before being written gets a small, plausible
value derived only from its name, so the same source text always produces
the same simulation.
"""
from __future__ import annotations

from typing import Union

from tomasulo_assembly import InstructionType

__all__ = [
    "number_from_string",
    "deterministic_int",
    "deterministic_float",
    "instruction_value",
]

Number = Union[int, float]


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - 0x100000000 if value & 0x80000000 else value


def number_from_string(seed: str) -> int:
    """XOR-shift accumulation over the character codes of ``seed``."""
    if not seed:
        return 0
    num = ord(seed[0])
    for char in seed[1:]:
        num = _to_int32(num ^ _to_int32(ord(char) << 17))
    return num


def deterministic_int(seed: str) -> int:
    value = max(number_from_string(seed), 1) % 999
    return value or 999


def deterministic_float(seed: str) -> float:
    n1 = number_from_string(seed)
    n2 = int(str(n1 * n1).zfill(4)[1:3])
    integer = max(n1, 1) % 99 or 99
    decimal = max(n2, 1) % 9 or 9
    return float(f"{integer}.{decimal}")


def instruction_value(
    register_name: str, instruction_name: str, instruction_type: InstructionType
) -> Number:
    # Floating-point mnemonics read float registers, but their address
    # registers (flw f0, 0(a1)) stay integers.
    memory_access = instruction_type in (InstructionType.LOAD, InstructionType.STORE)
    if instruction_name.startswith("f") and (
        not memory_access or register_name.startswith("f")
    ):
        return deterministic_float(register_name)
    return deterministic_int(register_name)
