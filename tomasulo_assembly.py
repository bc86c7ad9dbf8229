"""
RISC-V assembly subset: instruction variants, the source parser and the
program navigator that tracks the fetch cursor across labeled sections.
"""
from __future__ import annotations

import copy
import dataclasses
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import (
    Callable,
    ClassVar,
    Dict,
    List,
    NamedTuple,
    Optional,
    Sequence,
    Tuple,
    Union,
)

__all__ = [
    "InstructionType",
    "Comparison",
    "Instruction",
    "LoadInstruction",
    "ImmLoadInstruction",
    "StoreInstruction",
    "ArithmeticInstruction",
    "ImmArithmeticInstruction",
    "BranchInstruction",
    "JumpInstruction",
    "ParsedProgram",
    "Program",
    "parse_instruction",
    "parse_program",
]

logger = logging.getLogger(__name__)

Number = Union[int, float]


class InstructionType(Enum):
    LOAD = "Load"
    STORE = "Store"
    ADD = "Add"
    SUBTRACT = "Subtract"
    MULTIPLY = "Multiply"
    DIVIDE = "Divide"
    BRANCH = "Branch"
    JUMP = "Jump"

    @property
    def is_arithmetic(self) -> bool:
        return self in ARITHMETIC_TYPES

    @property
    def is_memory(self) -> bool:
        return self in (InstructionType.LOAD, InstructionType.STORE)

    @property
    def is_control(self) -> bool:
        return self in (InstructionType.BRANCH, InstructionType.JUMP)


ARITHMETIC_TYPES = (
    InstructionType.ADD,
    InstructionType.SUBTRACT,
    InstructionType.MULTIPLY,
    InstructionType.DIVIDE,
)

_VERBS = {
    InstructionType.ADD: "Adds",
    InstructionType.SUBTRACT: "Subtracts",
    InstructionType.MULTIPLY: "Multiplies",
    InstructionType.DIVIDE: "Divides",
}


class Comparison(Enum):
    EQUAL = "=="
    NOT_EQUAL = "!="
    LESS_THAN = "<"
    GREATER_EQUAL = ">="

    def evaluate(self, lhs: Number, rhs: Number) -> bool:
        if self is Comparison.EQUAL:
            return lhs == rhs
        if self is Comparison.NOT_EQUAL:
            return lhs != rhs
        if self is Comparison.LESS_THAN:
            return lhs < rhs
        return lhs >= rhs


class Instruction:
    """Behaviour shared by every instruction variant.

    Variants are frozen dataclasses; ``code_order`` is the position in the
    parsed source and is the stable identity of the instruction.
    """

    line: str
    name: str
    type: InstructionType
    code_order: int

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return ()

    @property
    def dest_registers(self) -> Tuple[str, ...]:
        return ()

    def with_code_order(self, code_order: int) -> "Instruction":
        return dataclasses.replace(self, code_order=code_order)

    def describe(self) -> str:
        return self.line


@dataclass(frozen=True)
class LoadInstruction(Instruction):
    line: str
    name: str
    dest: str
    base: str
    offset: int
    code_order: int = -1
    type: ClassVar[InstructionType] = InstructionType.LOAD

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return (self.base,)

    @property
    def dest_registers(self) -> Tuple[str, ...]:
        return (self.dest,)

    def describe(self) -> str:
        return (
            f"Loads from the address in {self.base}, with offset {self.offset}, "
            f"into register {self.dest}."
        )


@dataclass(frozen=True)
class ImmLoadInstruction(Instruction):
    line: str
    name: str
    dest: str
    imm: int
    code_order: int = -1
    type: ClassVar[InstructionType] = InstructionType.LOAD

    @property
    def dest_registers(self) -> Tuple[str, ...]:
        return (self.dest,)

    def describe(self) -> str:
        return f"Loads the immediate value {self.imm} into register {self.dest}."


@dataclass(frozen=True)
class StoreInstruction(Instruction):
    line: str
    name: str
    src: str
    base: str
    offset: int
    code_order: int = -1
    type: ClassVar[InstructionType] = InstructionType.STORE

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return _unique(self.src, self.base)

    def describe(self) -> str:
        return (
            f"Stores the value in {self.src} to the address in {self.base}, "
            f"with offset {self.offset}."
        )


@dataclass(frozen=True)
class ArithmeticInstruction(Instruction):
    line: str
    name: str
    type: InstructionType
    dest: str
    lhs: str
    rhs: str
    code_order: int = -1

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return _unique(self.rhs, self.lhs)

    @property
    def dest_registers(self) -> Tuple[str, ...]:
        return (self.dest,)

    def describe(self) -> str:
        return (
            f"{_VERBS[self.type]} the value in {self.lhs} with the value in "
            f"{self.rhs}, and stores the result in {self.dest}."
        )


@dataclass(frozen=True)
class ImmArithmeticInstruction(Instruction):
    line: str
    name: str
    type: InstructionType
    dest: str
    lhs: str
    imm: int
    code_order: int = -1

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return (self.lhs,)

    @property
    def dest_registers(self) -> Tuple[str, ...]:
        return (self.dest,)

    def describe(self) -> str:
        return (
            f"{_VERBS[self.type]} the value in {self.lhs} with the value "
            f"{self.imm}, and stores the result in {self.dest}."
        )


@dataclass(frozen=True)
class BranchInstruction(Instruction):
    line: str
    name: str
    lhs: str
    rhs: str
    target: str
    comparison: Comparison
    code_order: int = -1
    type: ClassVar[InstructionType] = InstructionType.BRANCH

    @property
    def src_registers(self) -> Tuple[str, ...]:
        return _unique(self.rhs, self.lhs)

    def describe(self) -> str:
        return (
            f"Jumps to {self.target} if {self.lhs} {self.comparison.value} "
            f"{self.rhs}, otherwise continues with the next instruction."
        )


@dataclass(frozen=True)
class JumpInstruction(Instruction):
    line: str
    name: str
    target: str
    code_order: int = -1
    type: ClassVar[InstructionType] = InstructionType.JUMP

    def describe(self) -> str:
        return f"Jumps to {self.target}."


def _unique(*names: str) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(names))


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

REG = r"([A-Za-z_]\w*)"
IMM = r"(-?\d+)"
SEP = r"(?:\s*,\s*|\s+)"
LABEL = r"([A-Za-z_.][\w.]*)"

DIRECTIVE_RE = re.compile(r"#\s*(\S+)\s*=\s*(-?\d*\.?\d+)")
COMMENT_RE = re.compile(r"#.*$")
LABEL_RE = re.compile(rf"^{LABEL}\s*:\s*(.*)$")

LOAD_OPS = r"(l[bhwd]u?|fl[wdq])"
STORE_OPS = r"(s[bhwd]|fs[wdq])"

Builder = Callable[[re.Match], Instruction]


def _arith(op_type: InstructionType) -> Builder:
    return lambda m: ArithmeticInstruction(
        m.group(0), m.group(1), op_type, dest=m.group(2), lhs=m.group(3), rhs=m.group(4)
    )


def _imm_arith(op_type: InstructionType) -> Builder:
    return lambda m: ImmArithmeticInstruction(
        m.group(0), m.group(1), op_type, dest=m.group(2), lhs=m.group(3), imm=int(m.group(4))
    )


def _branch(comparison: Comparison) -> Builder:
    return lambda m: BranchInstruction(
        m.group(0), m.group(1), lhs=m.group(2), rhs=m.group(3), target=m.group(4),
        comparison=comparison,
    )


def _pattern(body: str) -> re.Pattern:
    return re.compile(rf"^{body}\s*$")


# First match wins.
INSTRUCTION_PATTERNS: List[Tuple[re.Pattern, Builder]] = [
    # flw f6, 32(a2)
    (
        _pattern(rf"{LOAD_OPS}\s+{REG}{SEP}{IMM}\({REG}\)"),
        lambda m: LoadInstruction(m.group(0), m.group(1), dest=m.group(2), base=m.group(4), offset=int(m.group(3))),
    ),
    # lw x5, x6, 40
    (
        _pattern(rf"{LOAD_OPS}\s+{REG}{SEP}{REG}{SEP}{IMM}"),
        lambda m: LoadInstruction(m.group(0), m.group(1), dest=m.group(2), base=m.group(3), offset=int(m.group(4))),
    ),
    # li a0, 5
    (
        _pattern(rf"(liu?)\s+{REG}{SEP}{IMM}"),
        lambda m: ImmLoadInstruction(m.group(0), m.group(1), dest=m.group(2), imm=int(m.group(3))),
    ),
    # sw a1, -16(s0)
    (
        _pattern(rf"{STORE_OPS}\s+{REG}{SEP}{IMM}\({REG}\)"),
        lambda m: StoreInstruction(m.group(0), m.group(1), src=m.group(2), base=m.group(4), offset=int(m.group(3))),
    ),
    # sw a1, s0, -16
    (
        _pattern(rf"{STORE_OPS}\s+{REG}{SEP}{REG}{SEP}{IMM}"),
        lambda m: StoreInstruction(m.group(0), m.group(1), src=m.group(2), base=m.group(3), offset=int(m.group(4))),
    ),
    (_pattern(rf"(add[wd]?|fadd\.[sdq])\s+{REG}{SEP}{REG}{SEP}{REG}"), _arith(InstructionType.ADD)),
    (_pattern(rf"(addi[wd]?)\s+{REG}{SEP}{REG}{SEP}{IMM}"), _imm_arith(InstructionType.ADD)),
    (_pattern(rf"(sub[wd]?|fsub\.[sdq])\s+{REG}{SEP}{REG}{SEP}{REG}"), _arith(InstructionType.SUBTRACT)),
    (_pattern(rf"(subi[wd]?)\s+{REG}{SEP}{REG}{SEP}{IMM}"), _imm_arith(InstructionType.SUBTRACT)),
    (_pattern(rf"(mul[wd]?|fmul\.[sdq])\s+{REG}{SEP}{REG}{SEP}{REG}"), _arith(InstructionType.MULTIPLY)),
    (_pattern(rf"(muli[wd]?)\s+{REG}{SEP}{REG}{SEP}{IMM}"), _imm_arith(InstructionType.MULTIPLY)),
    (_pattern(rf"(div[wd]?|fdiv\.[sdq])\s+{REG}{SEP}{REG}{SEP}{REG}"), _arith(InstructionType.DIVIDE)),
    (_pattern(rf"(divi[wd]?)\s+{REG}{SEP}{REG}{SEP}{IMM}"), _imm_arith(InstructionType.DIVIDE)),
    (_pattern(rf"(beq)\s+{REG}{SEP}{REG}{SEP}{LABEL}"), _branch(Comparison.EQUAL)),
    (_pattern(rf"(bne)\s+{REG}{SEP}{REG}{SEP}{LABEL}"), _branch(Comparison.NOT_EQUAL)),
    (_pattern(rf"(bltu?)\s+{REG}{SEP}{REG}{SEP}{LABEL}"), _branch(Comparison.LESS_THAN)),
    (_pattern(rf"(bgeu?)\s+{REG}{SEP}{REG}{SEP}{LABEL}"), _branch(Comparison.GREATER_EQUAL)),
    (_pattern(rf"(j)\s+{LABEL}"), lambda m: JumpInstruction(m.group(0), m.group(1), target=m.group(2))),
]


class ParsedProgram(NamedTuple):
    instructions: List[Instruction]
    sections: Dict[str, List[int]]
    section_order: List[str]
    initial_values: Dict[str, Number]


def parse_instruction(line: str) -> Optional[Instruction]:
    for pattern, build in INSTRUCTION_PATTERNS:
        match = pattern.match(line)
        if match:
            return build(match)
    return None


def _parse_number(text: str) -> Number:
    return float(text) if "." in text else int(text)


def parse_program(text: str) -> Optional[ParsedProgram]:
    """Parse assembly source into instructions grouped by label.

    Returns ``None`` when the source holds no recognisable instruction.
    Lines that match no instruction pattern are skipped.
    """
    initial_values: Dict[str, Number] = {}
    lines: List[str] = []
    for raw_line in text.splitlines():
        directive = DIRECTIVE_RE.search(raw_line)
        if directive:
            initial_values[directive.group(1)] = _parse_number(directive.group(2))
        line = re.sub(r"\s+", " ", COMMENT_RE.sub("", raw_line).strip())
        if line:
            lines.append(line)

    instructions: List[Instruction] = []
    sections: Dict[str, List[int]] = {}
    section_order: List[str] = []
    current: Optional[str] = None
    for idx, line in enumerate(lines):
        label = LABEL_RE.match(line)
        if label:
            current = label.group(1)
            line = label.group(2)
        elif idx == 0:
            current = "main"
        if current not in sections:
            sections[current] = []
            section_order.append(current)
        if not line:
            continue

        instruction = parse_instruction(line)
        if instruction is None:
            logger.debug("Skipping unrecognised line %r", line)
            continue
        instruction = instruction.with_code_order(len(instructions))
        instructions.append(instruction)
        sections[current].append(instruction.code_order)

    if not instructions or not section_order:
        return None
    return ParsedProgram(instructions, sections, section_order, initial_values)


# ---------------------------------------------------------------------------
# Program navigator
# ---------------------------------------------------------------------------


class Program:
    """Fetch cursor over an immutable instruction table.

    The instruction, section and section-order tables are shared between
    clones; only the cursor, the execution order and the lookahead window
    are copied.
    """

    def __init__(
        self,
        instructions: Sequence[Instruction],
        sections: Dict[str, Sequence[int]],
        section_order: Sequence[str],
        queue_length: Optional[int] = None,
    ) -> None:
        self.instructions: Tuple[Instruction, ...] = tuple(instructions)
        self.sections: Dict[str, Tuple[int, ...]] = {
            name: tuple(indices) for name, indices in sections.items()
        }
        self.section_order: Tuple[str, ...] = tuple(section_order)
        self.queue_length = queue_length or len(self.instructions)

        self.counter = 0
        self.cur_section = 0
        self.cur_instruction = 0
        self.execution_order: List[int] = []
        self.visible_queue: Tuple[int, ...] = ()
        self.remaining_queue: Tuple[int, ...] = ()

        self._skip_empty_sections()
        self.recalculate_visible_queue()

    @classmethod
    def from_parsed(cls, parsed: ParsedProgram, queue_length: Optional[int] = None) -> "Program":
        return cls(parsed.instructions, parsed.sections, parsed.section_order, queue_length)

    def __len__(self) -> int:
        return len(self.instructions)

    def _section(self, position: int) -> Tuple[int, ...]:
        return self.sections[self.section_order[position]]

    def _skip_empty_sections(self) -> None:
        while self.cur_section < len(self.section_order) and not self._section(self.cur_section):
            self.cur_section += 1

    @property
    def is_exhausted(self) -> bool:
        return self.cur_section >= len(self.section_order)

    @property
    def current_section_name(self) -> Optional[str]:
        if self.is_exhausted:
            return None
        return self.section_order[self.cur_section]

    def get_next_instruction(self) -> Optional[Instruction]:
        if self.is_exhausted:
            return None
        section = self._section(self.cur_section)
        if self.cur_instruction >= len(section):
            return None
        return self.instructions[section[self.cur_instruction]]

    def advance_instruction(self, jump_label: Optional[str] = None) -> None:
        """Mark the instruction at the cursor as fetched and move the cursor.

        A ``jump_label`` naming a known section moves the cursor to that
        section's first instruction; anything else falls through.
        """
        fetched = self.get_next_instruction()
        if fetched is None:
            return
        self.counter += 1
        self.execution_order.append(fetched.code_order)

        if jump_label is not None and jump_label in self.section_order:
            self.cur_section = self.section_order.index(jump_label)
            self.cur_instruction = 0
        else:
            self.cur_instruction += 1
            if self.cur_instruction >= len(self._section(self.cur_section)):
                self.cur_instruction = 0
                self.cur_section += 1
        self._skip_empty_sections()
        self.recalculate_visible_queue()

    def recalculate_visible_queue(self) -> None:
        # Lookahead in source order, split after the first control-flow
        # instruction whose outcome is not known yet.
        visible: List[int] = []
        remaining: List[int] = []
        past_branch = False
        section, inst = self.cur_section, self.cur_instruction
        while section < len(self.section_order) and len(visible) + len(remaining) < self.queue_length:
            indices = self._section(section)
            if inst >= len(indices):
                section, inst = section + 1, 0
                continue
            idx = indices[inst]
            if past_branch:
                remaining.append(idx)
            else:
                visible.append(idx)
                past_branch = self.instructions[idx].type.is_control
            inst += 1
        self.visible_queue = tuple(visible)
        self.remaining_queue = tuple(remaining)

    def get_instruction_queue(self) -> Tuple[List[Instruction], List[Instruction]]:
        return (
            [self.instructions[i] for i in self.visible_queue],
            [self.instructions[i] for i in self.remaining_queue],
        )

    def get_at_code_order(self, order: int) -> Instruction:
        return self.instructions[order]

    def get_at_execution_order(self, order: int) -> Instruction:
        return self.instructions[self.execution_order[order]]

    def clone(self) -> "Program":
        c = copy.copy(self)
        c.execution_order = list(self.execution_order)
        return c
