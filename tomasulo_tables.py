"""
Tabular views of simulator snapshots for the front-end.
"""
from __future__ import annotations

import re
from typing import Dict, List, Sequence

import pandas as pd

from tomasulo_core import ReservationStation, State, format_number

__all__ = [
    "instruction_queue_frame",
    "register_frame",
    "reservation_frame",
    "memory_frame",
    "timeline_frame",
    "timeline_records",
    "reservation_row",
    "narration_to_markdown",
]

ITALIC_RE = re.compile(r"//(.+?)//")


def narration_to_markdown(text: str) -> str:
    """Narration uses ``//text//`` for italics; bold and code are Markdown already."""
    return ITALIC_RE.sub(r"_\1_", text)


def instruction_queue_frame(state: State) -> pd.DataFrame:
    visible, remaining = state.program.get_instruction_queue()
    rows = [
        {
            "#": instr.code_order,
            "Instruction": instr.line,
            "Description": instr.describe(),
            "Pending branch": pending,
        }
        for pending, queue in ((False, visible), (True, remaining))
        for instr in queue
    ]
    return pd.DataFrame(rows, columns=["#", "Instruction", "Description", "Pending branch"])


def register_frame(state: State) -> pd.DataFrame:
    rows = [
        {
            "Name": name,
            "Value": format_number(state.registers[name].value),
            "Qi": state.registers[name].qi or "",
        }
        for name in state.register_names()
    ]
    return pd.DataFrame(rows, columns=["Name", "Value", "Qi"])


def reservation_row(rs: ReservationStation) -> Dict[str, str]:
    return {
        "Name": rs.name,
        "Busy": "Yes" if rs.busy else "No",
        "Op": rs.op or "",
        "Vj": format_number(rs.Vj) if rs.Vj is not None else "",
        "Vk": format_number(rs.Vk) if rs.Vk is not None else "",
        "Qj": rs.Qj or "",
        "Qk": rs.Qk or "",
        "A": rs.display_address(),
        "Step": f"{rs.remaining}/{rs.delay}" if rs.busy else "",
        "FU": "Busy" if rs.fu_busy else "",
        "Result": format_number(rs.result) if rs.result is not None else "",
    }


def reservation_frame(state: State) -> pd.DataFrame:
    return pd.DataFrame([reservation_row(rs) for rs in state.reservation_stations])


def memory_frame(state: State) -> pd.DataFrame:
    rows = [
        {"Address": format_number(addr), "Value": format_number(state.memory[addr])}
        for addr in sorted(state.memory)
    ]
    return pd.DataFrame(rows, columns=["Address", "Value"])


def timeline_frame(states: Sequence[State]) -> pd.DataFrame:
    """Instruction x cycle grid of the action each instruction took."""
    if not states:
        return pd.DataFrame()
    program = states[0].program
    data = {
        state.cycle: [state.program_actions.get(i) or "" for i in range(len(program))]
        for state in states
    }
    index = [f"{i}: {program.get_at_code_order(i).line}" for i in range(len(program))]
    return pd.DataFrame(data, index=index)


def timeline_records(states: Sequence[State]) -> pd.DataFrame:
    """Long-form version of the timeline, one row per recorded action."""
    rows: List[Dict[str, object]] = []
    for state in states:
        for code_order, action in state.program_actions.items():
            if action is None:
                continue
            instr = state.program.get_at_code_order(code_order)
            rows.append(
                {
                    "Instruction": f"{code_order}: {instr.line}",
                    "Order": code_order,
                    "Cycle": state.cycle,
                    "Action": action,
                }
            )
    return pd.DataFrame(rows, columns=["Instruction", "Order", "Cycle", "Action"])
