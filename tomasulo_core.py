"""
Core Tomasulo simulator models and the cycle-accurate simulation driver.

A run is an append-only list of ``State`` snapshots: each one is a clone of
its predecessor advanced by exactly one ``next_cycle`` transition, plus the
narrated sub-steps that happened inside that cycle.
"""
from __future__ import annotations

import copy
import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from tomasulo_assembly import (
    ArithmeticInstruction,
    BranchInstruction,
    ImmArithmeticInstruction,
    ImmLoadInstruction,
    Instruction,
    InstructionType,
    JumpInstruction,
    LoadInstruction,
    ParsedProgram,
    Program,
    StoreInstruction,
)
from tomasulo_values import instruction_value

__all__ = [
    "Register",
    "Address",
    "ReservationStation",
    "SubStep",
    "State",
    "TomasuloSimulator",
    "PROGRAM_TEMPLATES",
    "SAMPLE_PROGRAM_TEXT",
    "format_number",
    "seed_machine",
    "simulate",
]

logger = logging.getLogger(__name__)

Number = Union[int, float]

ISSUE = "Issue"
EXEC = "Exec"
WRITE = "Write"
BRANCH = "Branch"
JUMP = "Jump"


def format_number(value: Optional[Number]) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        if not math.isfinite(value):
            return str(value)
        if value.is_integer():
            return str(int(value))
        return f"{value:.1f}"
    return str(value)


@dataclass
class Register:
    """Virtual register: either a concrete value or the station it waits on."""

    value: Optional[Number] = None
    qi: Optional[str] = None

    def busy(self) -> bool:
        return self.qi is not None

    def get_value(self) -> Union[Number, str, None]:
        return self.qi if self.busy() else self.value

    def set_value(self, value: Optional[Number]) -> None:
        self.qi = None
        self.value = value

    def wait_for_station(self, name: str) -> None:
        self.value = None
        self.qi = name

    def display(self) -> str:
        if self.busy():
            return f"[{self.qi}]"
        return format_number(self.value)

    def clone(self) -> "Register":
        return copy.deepcopy(self)


@dataclass(frozen=True)
class Address:
    """The ``A`` field of a load/store station.

    Holds only the immediate offset until the address step runs, then the
    effective address together with the base value it was computed from.
    """

    offset: int
    effective: Optional[Number] = None
    base: Optional[Number] = None

    @property
    def computed(self) -> bool:
        return self.effective is not None

    def resolve(self, base: Number) -> "Address":
        return Address(self.offset, base + self.offset, base)

    def display(self) -> str:
        if self.computed:
            return f"{format_number(self.effective)} ({format_number(self.base)}+{self.offset})"
        return str(self.offset)


@dataclass
class ReservationStation:
    name: str
    unit: str
    operations: Tuple[InstructionType, ...]
    delay: int
    busy: bool = False
    op: Optional[str] = None
    instruction_type: Optional[InstructionType] = None
    code_order: Optional[int] = None
    issue_order: Optional[int] = None
    Vj: Optional[Number] = None
    Vk: Optional[Number] = None
    Qj: Optional[str] = None
    Qk: Optional[str] = None
    A: Optional[Address] = None
    remaining: int = 0
    fu_busy: bool = False
    result: Optional[Number] = None

    def reset(self) -> None:
        self.busy = False
        self.op = None
        self.instruction_type = None
        self.code_order = None
        self.issue_order = None
        self.Vj = None
        self.Vk = None
        self.Qj = None
        self.Qk = None
        self.A = None
        self.remaining = 0
        self.fu_busy = False
        self.result = None

    def setup(self, instruction: Instruction, issue_order: int) -> None:
        self.busy = True
        self.op = instruction.name
        self.instruction_type = instruction.type
        self.code_order = instruction.code_order
        self.issue_order = issue_order
        self.remaining = self.delay

    def is_compatible(self, instruction_type: InstructionType) -> bool:
        return instruction_type in self.operations

    def j_ready(self) -> bool:
        return self.Qj is None and self.Vj is not None

    def k_ready(self) -> bool:
        return self.Qk is None and self.Vk is not None

    def j_value(self) -> Union[Number, str, None]:
        return self.Vj if self.j_ready() else self.Qj

    def k_value(self) -> Union[Number, str, None]:
        return self.Vk if self.k_ready() else self.Qk

    def set_j_value(self, value: Number) -> None:
        self.Vj = value
        self.Qj = None

    def set_k_value(self, value: Number) -> None:
        self.Vk = value
        self.Qk = None

    def capture_j(self, register: Register) -> None:
        if register.busy():
            self.Qj = register.qi
        else:
            self.set_j_value(register.value)

    def capture_k(self, register: Register) -> None:
        if register.busy():
            self.Qk = register.qi
        else:
            self.set_k_value(register.value)

    def compute_effective_address(self) -> None:
        if self.A is None or not self.j_ready():
            return
        self.A = self.A.resolve(self.Vj)

    def address_offset(self) -> Optional[int]:
        return None if self.A is None else self.A.offset

    def address_full(self) -> Optional[Number]:
        return None if self.A is None else self.A.effective

    def display_address(self) -> str:
        return "" if self.A is None else self.A.display()

    def clone(self) -> "ReservationStation":
        return copy.deepcopy(self)


@dataclass
class SubStep:
    """One narrated effect inside a cycle and the machine state right after it."""

    description: str
    state: "State"


def _divide(lhs: Number, rhs: Number) -> Number:
    if rhs == 0:
        if lhs == 0 or math.isnan(lhs):
            return math.nan
        return math.copysign(math.inf, lhs) * math.copysign(1.0, rhs)
    return lhs / rhs


def _compute(instruction_type: InstructionType, lhs: Number, rhs: Number) -> Number:
    if instruction_type is InstructionType.ADD:
        return lhs + rhs
    if instruction_type is InstructionType.SUBTRACT:
        return lhs - rhs
    if instruction_type is InstructionType.MULTIPLY:
        return lhs * rhs
    if instruction_type is InstructionType.DIVIDE:
        return _divide(lhs, rhs)
    raise ValueError(f"Unsupported operation {instruction_type}")


def _code(text: str) -> str:
    return f"`{text}`"


def _bold(text: str) -> str:
    return f"**{text}**"


def _italic(value: Optional[Number]) -> str:
    return f"//{format_number(value)}//"


class State:
    """Full machine snapshot for one clock cycle."""

    STATION_TEMPLATES: Dict[str, List[str]] = {
        "Load": ["Load1", "Load2", "Load3"],
        "Add": ["Add1", "Add2", "Add3"],
        "Mult": ["Mul1", "Mul2"],
    }

    STATION_OPERATIONS: Dict[str, Tuple[InstructionType, ...]] = {
        "Load": (InstructionType.LOAD, InstructionType.STORE),
        "Add": (InstructionType.ADD, InstructionType.SUBTRACT),
        "Mult": (InstructionType.MULTIPLY, InstructionType.DIVIDE),
    }

    # Load: one cycle of address computation plus two of memory access.
    DEFAULT_LATENCIES: Dict[str, int] = {
        "Load": 2 + 1,
        "Add": 2,
        "Mult": 5,
    }

    def __init__(
        self,
        program: Program,
        registers: Dict[str, Register],
        memory: Dict[Number, Optional[Number]],
        latencies: Optional[Dict[str, int]] = None,
    ) -> None:
        self.program = program
        self.registers = registers
        self.memory = memory
        self.latencies = {**self.DEFAULT_LATENCIES, **(latencies or {})}
        self.cycle = 0
        self.reservation_stations: List[ReservationStation] = [
            ReservationStation(name, unit, self.STATION_OPERATIONS[unit], self.latencies[unit])
            for unit, names in self.STATION_TEMPLATES.items()
            for name in names
        ]
        self.program_actions: Dict[int, Optional[str]] = {}
        self._reset_actions()

    def _reset_actions(self) -> None:
        self.program_actions = {i: None for i in range(len(self.program))}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def station(self, name: str) -> ReservationStation:
        for station in self.reservation_stations:
            if station.name == name:
                return station
        raise KeyError(name)

    def register(self, name: str) -> Register:
        return self.registers.setdefault(name, Register())

    def register_names(self) -> List[str]:
        return sorted(
            self.registers,
            key=lambda name: (re.sub(r"\d", "", name), int(re.sub(r"\D", "", name) or 0)),
        )

    def instruction_for(self, station: ReservationStation) -> Instruction:
        return self.program.get_at_code_order(station.code_order)

    def is_idle(self) -> bool:
        return self.program.get_next_instruction() is None and not any(
            station.busy for station in self.reservation_stations
        )

    # ------------------------------------------------------------------
    # Copying and description
    # ------------------------------------------------------------------

    def clone(self) -> "State":
        c = copy.copy(self)
        c.program = self.program.clone()
        c.registers = {name: reg.clone() for name, reg in self.registers.items()}
        c.memory = dict(self.memory)
        c.latencies = dict(self.latencies)
        c.reservation_stations = [station.clone() for station in self.reservation_stations]
        c.program_actions = dict(self.program_actions)
        return c

    def describe(self) -> str:
        lines = [f"Clock: {self.cycle}", "Instruction queue:"]
        visible, remaining = self.program.get_instruction_queue()
        for instruction in visible + remaining:
            lines.append(f"    {instruction.code_order}: {instruction.line}")
        lines.append("Registers:")
        for name in self.register_names():
            lines.append(f"    {name} = {self.registers[name].display()}")
        lines.append("Reservation stations:")
        lines.append("    Name\tBusy\tOp\tVj\tVk\tQj\tQk\tA")
        for rs in self.reservation_stations:
            fields = [
                "Yes" if rs.busy else "No",
                rs.op or "-",
                format_number(rs.Vj),
                format_number(rs.Vk),
                rs.Qj or "-",
                rs.Qk or "-",
                rs.display_address() or "-",
            ]
            lines.append(f"    {rs.name}\t" + "\t".join(fields))
        lines.append("Memory:")
        for addr in sorted(self.memory):
            lines.append(f"    {format_number(addr)} = {format_number(self.memory[addr])}")
        return "\n".join(lines) + "\n"

    # ------------------------------------------------------------------
    # Phase eligibility, evaluated on the state before any mutation
    # ------------------------------------------------------------------

    def station_for_issue(self, instruction: Optional[Instruction]) -> Optional[ReservationStation]:
        if instruction is None or instruction.type.is_control:
            return None
        for station in self.reservation_stations:
            if not station.busy and station.is_compatible(instruction.type):
                return station
        return None

    def control_outcome(self, instruction: Optional[Instruction]) -> Optional[bool]:
        """Whether the control instruction at the cursor is taken this cycle.

        ``None`` when there is no control instruction to resolve or when a
        branch operand is still waiting on a station.
        """
        if isinstance(instruction, JumpInstruction):
            return True
        if not isinstance(instruction, BranchInstruction):
            return None
        lhs, rhs = self.register(instruction.lhs), self.register(instruction.rhs)
        if lhs.busy() or rhs.busy():
            logger.debug(
                "Cycle %d: %s waits for %s", self.cycle, instruction.line, lhs.qi or rhs.qi
            )
            return None
        return instruction.comparison.evaluate(lhs.value, rhs.value)

    def stations_for_execute(self) -> List[ReservationStation]:
        return [
            rs
            for rs in self.reservation_stations
            if rs.busy
            and rs.instruction_type.is_arithmetic
            and rs.j_ready()
            and rs.k_ready()
            and 0 < rs.remaining <= rs.delay
        ]

    def station_for_address(self) -> Optional[ReservationStation]:
        ready = [
            rs
            for rs in self.reservation_stations
            if rs.busy
            and rs.instruction_type.is_memory
            and rs.remaining == rs.delay
            and rs.j_ready()
        ]
        return min(ready, key=lambda rs: rs.issue_order, default=None)

    def stations_for_load(self) -> List[ReservationStation]:
        return [
            rs
            for rs in self.reservation_stations
            if rs.busy
            and rs.instruction_type is InstructionType.LOAD
            and 0 < rs.remaining < rs.delay
            and not self._blocked_by(rs, (InstructionType.STORE,))
        ]

    def station_for_write(self) -> Optional[ReservationStation]:
        ready = [
            rs
            for rs in self.reservation_stations
            if rs.busy
            and rs.instruction_type is not InstructionType.STORE
            and rs.remaining <= 0
        ]
        return min(ready, key=lambda rs: rs.issue_order, default=None)

    def stations_for_store(self) -> List[ReservationStation]:
        return [
            rs
            for rs in self.reservation_stations
            if rs.busy
            and rs.instruction_type is InstructionType.STORE
            and 0 < rs.remaining < rs.delay
            and rs.k_ready()
            and not self._blocked_by(rs, (InstructionType.LOAD, InstructionType.STORE))
        ]

    def _symbolic_address(self, station: ReservationStation) -> Optional[Tuple[str, int]]:
        instruction = self.instruction_for(station)
        if isinstance(instruction, (LoadInstruction, StoreInstruction)):
            return instruction.base, instruction.offset
        return None

    def _same_address(self, a: ReservationStation, b: ReservationStation) -> bool:
        if a.address_full() is not None and b.address_full() is not None:
            return a.address_full() == b.address_full()
        symbolic = self._symbolic_address(a)
        return symbolic is not None and symbolic == self._symbolic_address(b)

    def _blocked_by(
        self, station: ReservationStation, kinds: Tuple[InstructionType, ...]
    ) -> bool:
        # Memory accesses to one address complete in program order.
        return any(
            other is not station
            and other.busy
            and other.instruction_type in kinds
            and other.issue_order < station.issue_order
            and self._same_address(station, other)
            for other in self.reservation_stations
        )

    # ------------------------------------------------------------------
    # One clock tick
    # ------------------------------------------------------------------

    def next_cycle(self) -> Tuple[bool, List[SubStep]]:
        """Advance this state by one clock cycle, in place.

        Returns whether any phase made progress and the narrated sub-steps
        of the cycle, each paired with a snapshot taken right after it.
        """
        self.cycle += 1
        self._reset_actions()
        for station in self.reservation_stations:
            station.fu_busy = False

        fetched = self.program.get_next_instruction()
        issue_rs = self.station_for_issue(fetched)
        taken = self.control_outcome(fetched)
        execute_rs = self.stations_for_execute()
        address_rs = self.station_for_address()
        load_rs = self.stations_for_load()
        write_rs = self.station_for_write()
        store_rs = self.stations_for_store()

        if fetched is not None and not fetched.type.is_control and issue_rs is None:
            logger.debug("Cycle %d: stall, no free station for %s", self.cycle, fetched.line)

        if (
            issue_rs is None
            and taken is None
            and not execute_rs
            and address_rs is None
            and not load_rs
            and write_rs is None
            and not store_rs
        ):
            return False, []

        steps: List[SubStep] = []

        def narrate(*sentences: str) -> None:
            steps.append(SubStep(" ".join(sentences), self.clone()))

        if taken is not None:
            self._resolve_control(fetched, taken, narrate)
        if issue_rs is not None:
            self._issue(fetched, issue_rs, narrate)
        for station in execute_rs:
            self._execute(station, narrate)
        if address_rs is not None:
            self._compute_address(address_rs, narrate)
        for station in load_rs:
            self._read_memory(station, narrate)
        if write_rs is not None:
            self._broadcast(write_rs, narrate)
        for station in store_rs:
            self._commit_store(station, narrate)

        return True, steps

    def _resolve_control(self, instruction: Instruction, taken: bool, narrate) -> None:
        label = f"Instruction {instruction.code_order} {_code(instruction.line)}"
        if isinstance(instruction, JumpInstruction):
            self.program_actions[instruction.code_order] = JUMP
            self.program.advance_instruction(instruction.target)
            narrate(
                f"{_bold('Jump')}: {label} redirects the instruction fetch to",
                f"{_code(instruction.target)}.",
            )
            return

        self.program_actions[instruction.code_order] = BRANCH
        lhs = self.registers[instruction.lhs].value
        rhs = self.registers[instruction.rhs].value
        comparison = (
            f"{_code(instruction.lhs)} = {_italic(lhs)} {instruction.comparison.value} "
            f"{_code(instruction.rhs)} = {_italic(rhs)}"
        )
        if taken:
            self.program.advance_instruction(instruction.target)
            narrate(
                f"{_bold('Branch')}: {label} is taken because {comparison};",
                f"fetching continues at {_code(instruction.target)}.",
            )
        else:
            self.program.advance_instruction()
            narrate(
                f"{_bold('Branch')}: {label} is not taken, {comparison} does not hold;",
                "fetching continues with the next instruction.",
            )

    def _issue(self, instruction: Instruction, station: ReservationStation, narrate) -> None:
        station.setup(instruction, issue_order=self.program.counter)
        self.program_actions[instruction.code_order] = ISSUE
        self.program.advance_instruction()
        sentences = [
            f"{_bold('Issue')}: instruction {instruction.code_order}",
            f"{_code(instruction.line)} is issued to reservation station {_bold(station.name)}.",
        ]

        if isinstance(instruction, ArithmeticInstruction):
            station.capture_j(self.register(instruction.lhs))
            station.capture_k(self.register(instruction.rhs))
            sentences += self._operand_notes(station, instruction.lhs, instruction.rhs)
        elif isinstance(instruction, ImmArithmeticInstruction):
            station.capture_j(self.register(instruction.lhs))
            station.set_k_value(instruction.imm)
            sentences += self._operand_notes(station, instruction.lhs, None)
        elif isinstance(instruction, LoadInstruction):
            station.capture_j(self.register(instruction.base))
            station.A = Address(instruction.offset)
            sentences += self._operand_notes(station, instruction.base, None)
        elif isinstance(instruction, ImmLoadInstruction):
            station.set_j_value(instruction.imm)
        elif isinstance(instruction, StoreInstruction):
            station.capture_j(self.register(instruction.base))
            station.capture_k(self.register(instruction.src))
            station.A = Address(instruction.offset)
            sentences += self._operand_notes(station, instruction.base, instruction.src)
        else:
            raise ValueError(f"Unsupported operation {instruction.name}")

        for dest in instruction.dest_registers:
            self.register(dest).wait_for_station(station.name)
            sentences.append(f"Register {_code(dest)} now waits for {_bold(station.name)}.")
        narrate(*sentences)

    def _operand_notes(
        self, station: ReservationStation, j_name: Optional[str], k_name: Optional[str]
    ) -> List[str]:
        notes = []
        for name, ready, value, tag in (
            (j_name, station.j_ready(), station.Vj, station.Qj),
            (k_name, station.k_ready(), station.Vk, station.Qk),
        ):
            if name is None:
                continue
            if ready:
                notes.append(f"Operand {_code(name)} is ready with value {_italic(value)}.")
            else:
                notes.append(f"Operand {_code(name)} waits for {_bold(tag)}.")
        return notes

    def _execute(self, station: ReservationStation, narrate) -> None:
        station.remaining -= 1
        station.fu_busy = True
        self.program_actions[station.code_order] = EXEC
        label = f"{_bold(station.name)} ({_code(self.instruction_for(station).line)})"
        if station.remaining == 0:
            station.result = _compute(station.instruction_type, station.Vj, station.Vk)
            narrate(
                f"{_bold('Execute')}: {label} finishes with result {_italic(station.result)}."
            )
        else:
            narrate(
                f"{_bold('Execute')}: {label} runs its functional unit,",
                f"{station.remaining} cycle(s) left.",
            )

    def _compute_address(self, station: ReservationStation, narrate) -> None:
        station.compute_effective_address()
        station.remaining -= 1
        station.fu_busy = True
        self.program_actions[station.code_order] = EXEC
        label = f"{_bold(station.name)} ({_code(self.instruction_for(station).line)})"
        if station.A is None:
            narrate(f"{_bold('Execute')}: {label} passes through the address unit.")
        else:
            narrate(
                f"{_bold('Execute')}: {label} computes the effective address",
                f"{_italic(station.A.base)} + {station.A.offset} = {_italic(station.A.effective)}.",
            )

    def _read_memory(self, station: ReservationStation, narrate) -> None:
        station.remaining -= 1
        station.fu_busy = True
        self.program_actions[station.code_order] = EXEC
        instruction = self.instruction_for(station)
        label = f"{_bold(station.name)} ({_code(instruction.line)})"
        if station.remaining > 0:
            narrate(f"{_bold('Execute')}: {label} accesses memory, {station.remaining} cycle(s) left.")
            return

        addr = station.address_full()
        if addr is None:
            station.result = station.Vj
            narrate(f"{_bold('Execute')}: {label} produces the immediate {_italic(station.result)}.")
            return
        if addr not in self.memory or self.memory[addr] is None:
            self.memory[addr] = instruction_value(instruction.dest, instruction.name, instruction.type)
            logger.debug("Seeded memory[%s] = %s", addr, self.memory[addr])
        station.result = self.memory[addr]
        narrate(
            f"{_bold('Execute')}: {label} reads {_italic(station.result)}",
            f"from address {_italic(addr)}.",
        )

    def _broadcast(self, station: ReservationStation, narrate) -> None:
        # Common data bus: one producer per cycle, every waiter takes the value.
        name, result = station.name, station.result
        code_order = station.code_order
        line = self.instruction_for(station).line
        receivers = []
        for reg_name in self.register_names():
            register = self.registers[reg_name]
            if register.qi == name:
                register.set_value(result)
                receivers.append(_code(reg_name))
        for other in self.reservation_stations:
            if other.Qj == name:
                other.set_j_value(result)
                receivers.append(f"{_bold(other.name)}.Vj")
            if other.Qk == name:
                other.set_k_value(result)
                receivers.append(f"{_bold(other.name)}.Vk")
        self.program_actions[code_order] = WRITE
        station.reset()
        narrate(
            f"{_bold('Write (CDB)')}: {_bold(name)} ({_code(line)}) broadcasts {_italic(result)}",
            f"to {', '.join(receivers)}." if receivers else "but nothing is waiting for it.",
            f"Station {_bold(name)} is free again.",
        )

    def _commit_store(self, station: ReservationStation, narrate) -> None:
        station.remaining -= 1
        station.fu_busy = True
        self.program_actions[station.code_order] = WRITE
        label = f"{_bold(station.name)} ({_code(self.instruction_for(station).line)})"
        if station.remaining > 0:
            narrate(f"{_bold('Write (memory)')}: {label} is writing, {station.remaining} cycle(s) left.")
            return
        addr, value = station.address_full(), station.Vk
        self.memory[addr] = value
        station.reset()
        narrate(
            f"{_bold('Write (memory)')}: {label} stores {_italic(value)} at address {_italic(addr)}.",
            f"Station {_bold(station.name)} is free again.",
        )


# ---------------------------------------------------------------------------
# Simulation driver
# ---------------------------------------------------------------------------


def seed_machine(
    parsed: ParsedProgram,
) -> Tuple[Dict[str, Register], Dict[Number, Optional[Number]]]:
    """Build the initial register file and memory for a parsed program.

    Registers are visited in source order. One that is read before it is
    written gets an example value (or the one given by a ``# reg = value``
    directive); one that is written first starts empty. Addresses read by
    loads whose base is known at this point are pre-filled.
    """
    registers: Dict[str, Register] = {}
    memory: Dict[Number, Optional[Number]] = {}
    initial = parsed.initial_values

    for instruction in parsed.instructions:
        for name in instruction.src_registers:
            if name not in registers:
                value = initial.get(name)
                if value is None:
                    value = instruction_value(name, instruction.name, instruction.type)
                registers[name] = Register(value=value)

        if isinstance(instruction, LoadInstruction):
            base = registers[instruction.base].value
            if base is not None:
                memory.setdefault(
                    base + instruction.offset,
                    instruction_value(instruction.dest, instruction.name, instruction.type),
                )

        for name in instruction.dest_registers:
            if name not in registers:
                registers[name] = Register(value=initial.get(name))

    for name, value in initial.items():
        registers.setdefault(name, Register(value=value))
    return registers, memory


class TomasuloSimulator:
    """Drives a parsed program through ``State.next_cycle`` until it settles.

    ``states[0]`` is the initial machine; ``states[n]`` is the machine after
    cycle ``n``. ``inter_states[n]`` holds the narrated sub-steps of cycle
    ``n`` (empty for the initial state).
    """

    MAX_CYCLES = 100

    def __init__(
        self,
        parsed: Optional[ParsedProgram],
        latencies: Optional[Dict[str, int]] = None,
        max_cycles: Optional[int] = None,
        queue_length: Optional[int] = None,
    ) -> None:
        if parsed is None:
            raise ValueError("Nothing to simulate: the program has no instructions")
        self.parsed = parsed
        self.latencies = latencies or {}
        self.max_cycles = self.MAX_CYCLES if max_cycles is None else max_cycles
        self.queue_length = queue_length
        self.states: List[State] = []
        self.inter_states: List[List[SubStep]] = []
        self.finished = False
        self.truncated = False
        self.reset()

    def reset(self) -> None:
        registers, memory = seed_machine(self.parsed)
        program = Program.from_parsed(self.parsed, self.queue_length)
        self.states = [State(program, registers, memory, latencies=self.latencies)]
        self.inter_states = [[]]
        self.finished = False
        self.truncated = False

    @property
    def cycle(self) -> int:
        return self.states[-1].cycle

    @property
    def current(self) -> State:
        return self.states[-1]

    def is_finished(self) -> bool:
        return self.finished or self.truncated

    def step(self) -> bool:
        if self.is_finished():
            return False
        if self.cycle >= self.max_cycles:
            progressed, _ = self.current.clone().next_cycle()
            self.truncated = progressed
            self.finished = not progressed
            if self.truncated:
                logger.info("Simulation stopped at the %d-cycle cap", self.max_cycles)
            self._backfill_memory()
            return False

        next_state = self.current.clone()
        progressed, steps = next_state.next_cycle()
        if not progressed:
            self.finished = True
            logger.info("Simulation finished after %d cycles", self.cycle)
            self._backfill_memory()
            return False
        self.states.append(next_state)
        self.inter_states.append(steps)
        return True

    def run(self) -> List[State]:
        while self.step():
            pass
        return self.states

    def _backfill_memory(self) -> None:
        # Every snapshot exposes the same address set.
        snapshots = list(self.states)
        for steps in self.inter_states:
            snapshots.extend(step.state for step in steps)
        addresses = set()
        for state in snapshots:
            addresses.update(state.memory)
        for state in snapshots:
            for addr in addresses:
                state.memory.setdefault(addr, None)


def simulate(
    parsed: Optional[ParsedProgram],
    latencies: Optional[Dict[str, int]] = None,
    max_cycles: Optional[int] = None,
) -> Tuple[List[State], List[List[SubStep]]]:
    sim = TomasuloSimulator(parsed, latencies=latencies, max_cycles=max_cycles)
    sim.run()
    return sim.states, sim.inter_states


SAMPLE_PROGRAM_TEXT = """\
flw f6, 32(a2)
flw f2, 44(a3)
fmul.s f0, f2, f4
fsub.s f8, f2, f6
fdiv.s f10, f0, f6
fadd.s f6, f6, f2
"""

PROGRAM_TEMPLATES: Dict[str, str] = {
    "default": SAMPLE_PROGRAM_TEXT,
    "raw": "fmul.s f4, f1, f2\nfadd.s f5, f1, f4\n",
    "war": "fmul.s f4, f1, f5\nfadd.s f5, f1, f2\n",
    "waw": "fmul.s f6, f1, f2\nfadd.s f6, f3, f4\n",
    "loop": """\
# x1 = 0
# x2 = 4096
loop:
flw f0, 0(x1)
fmul.s f4, f0, f2
fsw f4, 0(x1)
addi x1, x1, 4
blt x1, x2, loop
""",
}
