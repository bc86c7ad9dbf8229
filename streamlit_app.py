#!/usr/bin/env python3
"""
Streamlit front-end for the Tomasulo visualizer.

Run with:
    streamlit run streamlit_app.py
"""
from __future__ import annotations

import logging
from typing import Dict, Optional

import altair as alt
import streamlit as st

from tomasulo_assembly import parse_program
from tomasulo_core import (
    PROGRAM_TEMPLATES,
    SAMPLE_PROGRAM_TEXT,
    State,
    TomasuloSimulator,
)
from tomasulo_tables import (
    instruction_queue_frame,
    memory_frame,
    narration_to_markdown,
    register_frame,
    reservation_frame,
    timeline_frame,
    timeline_records,
)

logger = logging.getLogger(__name__)

ACTION_COLORS = {
    "Issue": "#f0ad4e",
    "Exec": "#5bc0de",
    "Write": "#5cb85c",
    "Branch": "#8b7cdc",
    "Jump": "#d887d9",
}

# ---------------------------------------------------------------------------
# Session helpers
# ---------------------------------------------------------------------------


def build_simulator(program_text: str, latencies: Dict[str, int]) -> Optional[TomasuloSimulator]:
    parsed = parse_program(program_text)
    if parsed is None:
        return None
    simulator = TomasuloSimulator(parsed, latencies=latencies)
    simulator.run()
    logger.info("Simulated %d instructions over %d cycles", len(parsed.instructions), simulator.cycle)
    return simulator


def init_state() -> None:
    if "program_text" not in st.session_state:
        st.session_state["program_text"] = SAMPLE_PROGRAM_TEXT.strip()
    if "latencies" not in st.session_state:
        st.session_state["latencies"] = State.DEFAULT_LATENCIES.copy()
    if "simulator" not in st.session_state:
        st.session_state["simulator"] = build_simulator(
            st.session_state["program_text"], st.session_state["latencies"]
        )
    if "cycle" not in st.session_state:
        st.session_state["cycle"] = 0
    if "sub_step" not in st.session_state:
        st.session_state["sub_step"] = 0


def replace_simulator(program_text: str) -> None:
    st.session_state["program_text"] = program_text
    st.session_state["simulator"] = build_simulator(program_text, st.session_state["latencies"])
    st.session_state["cycle"] = 0
    st.session_state["sub_step"] = 0


# ---------------------------------------------------------------------------
# UI rendering
# ---------------------------------------------------------------------------


def render_header(sim: TomasuloSimulator) -> None:
    st.title("Tomasulo Algorithm Visualizer")
    st.caption("Out-of-order execution of a RISC-V subset with reservation stations and a CDB.")
    col1, col2, col3 = st.columns(3)
    col1.metric("Cycles", sim.cycle)
    col2.metric("Fetched", sim.current.program.counter)
    col3.metric("Status", "Cut at cycle cap" if sim.truncated else "Finished")


def render_instruction_editor() -> None:
    st.subheader("Program")
    st.caption("Syntax: `flw f6, 32(a2)` | `fmul.s f0, f2, f4` | `blt x1, x2, loop` | `# x1 = 0`")

    editor_col, buttons_col = st.columns([4, 1])
    with editor_col:
        text = st.text_area(
            "Program",
            value=st.session_state["program_text"],
            height=160,
            label_visibility="collapsed",
        )
    with buttons_col:
        template = st.selectbox("Template", list(PROGRAM_TEMPLATES), label_visibility="collapsed")
        if st.button("Load Template", use_container_width=True):
            replace_simulator(PROGRAM_TEMPLATES[template].strip())
            st.rerun()
        if st.button("Simulate", use_container_width=True, type="primary"):
            replace_simulator(text.strip())
            st.rerun()


def render_latency_config() -> None:
    with st.expander("⚙️ Functional Unit Latencies", expanded=False):
        st.caption("Cycles each functional unit needs (load/store includes the address cycle)")
        new_latencies = st.session_state["latencies"].copy()
        columns = st.columns(len(new_latencies))
        for col, unit in zip(columns, sorted(new_latencies)):
            with col:
                new_latencies[unit] = int(
                    st.number_input(
                        unit,
                        min_value=1,
                        max_value=50,
                        value=st.session_state["latencies"][unit],
                        step=1,
                        key=f"{unit.lower()}_latency",
                    )
                )

        button_col1, button_col2, _ = st.columns([1, 1, 2])
        with button_col1:
            if st.button("Apply Latencies", use_container_width=True, type="primary"):
                st.session_state["latencies"] = new_latencies
                replace_simulator(st.session_state["program_text"])
                st.rerun()
        with button_col2:
            if st.button("Reset to Defaults", use_container_width=True):
                st.session_state["latencies"] = State.DEFAULT_LATENCIES.copy()
                replace_simulator(st.session_state["program_text"])
                st.rerun()


def render_controls(sim: TomasuloSimulator) -> None:
    st.subheader("Navigation")
    last_cycle = len(sim.states) - 1

    col1, col2, col3 = st.columns([1, 3, 1])
    if col1.button("◀ Previous", use_container_width=True, disabled=st.session_state["cycle"] <= 0):
        st.session_state["cycle"] -= 1
        st.session_state["sub_step"] = 0
        st.rerun()
    if col3.button("Next ▶", use_container_width=True, disabled=st.session_state["cycle"] >= last_cycle):
        st.session_state["cycle"] += 1
        st.session_state["sub_step"] = 0
        st.rerun()
    if last_cycle > 0:
        cycle = col2.slider("Cycle", 0, last_cycle, value=st.session_state["cycle"])
        if cycle != st.session_state["cycle"]:
            st.session_state["cycle"] = cycle
            st.session_state["sub_step"] = 0
            st.rerun()


def render_narration(sim: TomasuloSimulator) -> State:
    """Show the sub-steps of the selected cycle and return the snapshot to display."""
    cycle = st.session_state["cycle"]
    steps = sim.inter_states[cycle]
    if not steps:
        return sim.states[cycle]

    st.markdown("**Steps in this cycle:**")
    options = list(range(len(steps) + 1))
    sub_step = st.select_slider(
        "Sub-step",
        options=options,
        value=min(st.session_state["sub_step"], len(steps)),
        format_func=lambda i: "start of cycle" if i == 0 else f"step {i}",
    )
    st.session_state["sub_step"] = sub_step
    for idx, step in enumerate(steps, start=1):
        marker = "➡️" if idx == sub_step else "•"
        st.markdown(f"{marker} {narration_to_markdown(step.description)}")

    if sub_step == 0:
        return sim.states[cycle - 1]
    return steps[sub_step - 1].state


def render_tables(state: State) -> None:
    st.subheader(f"Machine State (cycle {state.cycle})")
    top_left, top_right = st.columns((2, 3))
    with top_left:
        st.markdown("#### Instruction Queue")
        st.dataframe(instruction_queue_frame(state), use_container_width=True, hide_index=True, height=260)
    with top_right:
        st.markdown("#### Reservation Stations")
        st.dataframe(reservation_frame(state), use_container_width=True, hide_index=True, height=260)

    bottom_left, bottom_right = st.columns((2, 2))
    with bottom_left:
        st.markdown("#### Registers")
        st.dataframe(register_frame(state), use_container_width=True, hide_index=True, height=240)
    with bottom_right:
        st.markdown("#### Memory")
        st.dataframe(memory_frame(state), use_container_width=True, hide_index=True, height=240)


def render_timeline(sim: TomasuloSimulator) -> None:
    st.subheader("Execution Timeline")
    shown = sim.states[: st.session_state["cycle"] + 1]
    df = timeline_records(shown)
    if df.empty:
        st.info("Move forward in time to see the timeline.")
        return

    chart = alt.Chart(df).mark_rect().encode(
        x=alt.X("Cycle:O", title="Cycle"),
        y=alt.Y("Instruction:N", sort=alt.EncodingSortField(field="Order", op="min")),
        color=alt.Color(
            "Action:N",
            scale=alt.Scale(domain=list(ACTION_COLORS), range=list(ACTION_COLORS.values())),
        ),
        tooltip=["Instruction", "Cycle", "Action"],
    ).properties(height=300)
    st.altair_chart(chart, use_container_width=True)

    with st.expander("Timeline table"):
        st.dataframe(timeline_frame(shown), use_container_width=True)


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    st.set_page_config(page_title="Tomasulo Visualizer", layout="wide")
    init_state()
    simulator: Optional[TomasuloSimulator] = st.session_state["simulator"]

    render_instruction_editor()
    render_latency_config()
    if simulator is None:
        st.warning("No recognisable instruction in the program, nothing to simulate.")
        return

    render_header(simulator)
    with st.container():
        render_controls(simulator)
    with st.container():
        state = render_narration(simulator)
    with st.container():
        render_tables(state)
    with st.container():
        render_timeline(simulator)


if __name__ == "__main__":
    main()
