import math

import pytest

from tomasulo_assembly import Program, parse_program
from tomasulo_core import (
    PROGRAM_TEMPLATES,
    SAMPLE_PROGRAM_TEXT,
    Register,
    State,
    TomasuloSimulator,
    format_number,
    seed_machine,
    simulate,
)
from tomasulo_values import deterministic_float, deterministic_int


def run(text, **kwargs):
    sim = TomasuloSimulator(parse_program(text), **kwargs)
    sim.run()
    return sim


def actions_of(states, code_order):
    return [state.program_actions[code_order] for state in states]


def first_cycle_with(states, code_order, action):
    for state in states:
        if state.program_actions[code_order] == action:
            return state.cycle
    return None


# ---------------------------------------------------------------------------
# Register and seeding
# ---------------------------------------------------------------------------


def test_register_value_and_tag_are_exclusive():
    reg = Register(value=3)
    reg.wait_for_station("Add1")
    assert reg.busy() and reg.value is None
    assert reg.display() == "[Add1]"
    reg.set_value(4.5)
    assert not reg.busy() and reg.qi is None
    assert reg.display() == "4.5"
    assert Register().display() == "-"


def test_seed_machine():
    parsed = parse_program("# f4 = 2\nflw f6, 32(a2)\nfmul.s f0, f6, f4\nfadd.s f1, f0, f0")
    registers, memory = seed_machine(parsed)
    assert registers["a2"].value == deterministic_int("a2")
    assert registers["f4"].value == 2
    # f6 and f0 are written before they are read, so they start empty.
    assert registers["f6"].value is None
    assert registers["f0"].value is None
    assert registers["f1"].value is None
    assert memory == {deterministic_int("a2") + 32: deterministic_float("f6")}


def test_seed_machine_follows_source_order():
    parsed = parse_program("# x9 = 7\nfadd.s f1, f2, f3\nfmul.s f2, f1, f4\nli a0, 16\nflw f5, 0(a0)")
    registers, memory = seed_machine(parsed)
    # f2 is read before the fmul writes it; f1 is written before it is read.
    assert registers["f2"].value == deterministic_float("f2")
    assert registers["f1"].value is None
    # The flw base comes from li, so its address is unknown when seeding.
    assert registers["a0"].value is None
    assert memory == {}
    assert registers["x9"].value == 7


def test_format_number():
    assert format_number(None) == "-"
    assert format_number(3) == "3"
    assert format_number(3.0) == "3"
    assert format_number(2.5) == "2.5"
    assert format_number(math.inf) == "inf"


def test_register_names_sorted_by_prefix_then_number():
    parsed = parse_program("fadd.s f10, f2, a3\nfadd.s f1, x1, f0")
    registers, memory = seed_machine(parsed)
    state = State(Program.from_parsed(parsed), registers, memory)
    assert state.register_names() == ["a3", "f0", "f1", "f2", "f10", "x1"]


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


STRAIGHT_LINE_WITH_REUSE = (
    "flw f6, 32(a2)\nflw f2, 44(a3)\nfmul.s f0, f2, f4\n"
    "fsub.s f8, f2, f6\nfdiv.s f0, f0, f6\nfadd.s f6, f6, f2"
)


@pytest.mark.parametrize("text", [SAMPLE_PROGRAM_TEXT, STRAIGHT_LINE_WITH_REUSE])
def test_straight_line_program_issues_every_cycle(text):
    sim = run(text)
    states = sim.states
    assert len(states[0].program) == 6
    assert not sim.truncated
    assert sim.finished
    assert len(states) < 101
    for code_order in range(6):
        assert first_cycle_with(states, code_order, "Issue") == code_order + 1
    final = states[-1]
    assert not any(rs.busy for rs in final.reservation_stations)
    assert not any(reg.busy() for reg in final.registers.values())
    assert final.is_idle()


def test_straight_line_results():
    states, _ = simulate(parse_program(SAMPLE_PROGRAM_TEXT))
    initial, final = states[0], states[-1]
    f6 = initial.memory[initial.registers["a2"].value + 32]
    f2 = initial.memory[initial.registers["a3"].value + 44]
    f4 = initial.registers["f4"].value
    assert final.registers["f0"].value == pytest.approx(f2 * f4)
    assert final.registers["f8"].value == pytest.approx(f2 - f6)
    assert final.registers["f10"].value == pytest.approx(f2 * f4 / f6)
    assert final.registers["f6"].value == pytest.approx(f6 + f2)


def test_waw_hazard_keeps_last_writer():
    sim = run(PROGRAM_TEMPLATES["waw"])
    states = sim.states
    initial = states[0]
    add_result = initial.registers["f3"].value + initial.registers["f4"].value
    add_write = first_cycle_with(states, 1, "Write")
    mul_write = first_cycle_with(states, 0, "Write")
    assert add_write is not None and mul_write is not None
    assert add_write < mul_write
    for state in states[add_write:]:
        assert state.registers["f6"].value == pytest.approx(add_result)


def test_raw_hazard_waits_for_producer():
    sim = run(PROGRAM_TEMPLATES["raw"])
    states = sim.states
    issue = states[2].station("Add1")
    assert issue.Qk == "Mul1"
    mul_write = first_cycle_with(states, 0, "Write")
    add_exec = first_cycle_with(states, 1, "Exec")
    assert add_exec == mul_write + 1
    initial = states[0]
    expected = initial.registers["f1"].value + initial.registers["f1"].value * initial.registers["f2"].value
    assert states[-1].registers["f5"].value == pytest.approx(expected)


def test_war_hazard_reads_old_value():
    sim = run(PROGRAM_TEMPLATES["war"])
    initial = sim.states[0]
    expected = initial.registers["f1"].value * initial.registers["f5"].value
    assert sim.states[-1].registers["f4"].value == pytest.approx(expected)


def test_empty_program_is_not_simulated():
    assert parse_program("") is None
    with pytest.raises(ValueError):
        TomasuloSimulator(None)


def test_loop_runs_until_cap():
    sim = run(PROGRAM_TEMPLATES["loop"])
    states = sim.states
    assert len(states) == TomasuloSimulator.MAX_CYCLES + 1
    assert states[-1].cycle == 100
    assert sim.truncated
    assert not sim.finished
    branch_cycles = [s.cycle for s in states if s.program_actions[4] == "Branch"]
    assert len(branch_cycles) >= 2
    for cycle in branch_cycles:
        # Each taken branch sends the fetch cursor back to the loop label.
        assert states[cycle].program.current_section_name == "loop"
        assert states[cycle].program.get_next_instruction().code_order == 0
    order = states[-1].program.execution_order
    assert order[:6] == [0, 1, 2, 3, 4, 0]
    assert order.count(0) >= 2


def test_monotonic_fetch():
    sim = run(PROGRAM_TEMPLATES["loop"])
    previous = 0
    for state in sim.states:
        assert state.program.counter == len(state.program.execution_order)
        assert state.program.counter >= previous
        assert state.program.counter - previous <= 1
        previous = state.program.counter


def test_branch_not_taken_falls_through():
    text = "# x1 = 5\n# x2 = 3\nblt x1, x2, skip\nfadd.s f0, f1, f2\nskip:\nfsub.s f3, f4, f5\n"
    sim = run(text)
    order = sim.states[-1].program.execution_order
    assert order == [0, 1, 2]
    assert sim.states[1].program_actions[0] == "Branch"


def test_branch_taken_skips_code():
    text = "# x1 = 1\n# x2 = 3\nblt x1, x2, skip\nfadd.s f0, f1, f2\nskip:\nfsub.s f3, f4, f5\n"
    sim = run(text)
    assert sim.states[-1].program.execution_order == [0, 2]
    assert sim.states[-1].registers["f0"].value is None


def test_jump_redirects_fetch():
    text = "j end\nfadd.s f0, f1, f2\nend:\nfsub.s f3, f4, f5\n"
    sim = run(text)
    assert sim.states[1].program_actions[0] == "Jump"
    assert sim.states[-1].program.execution_order == [0, 2]


def test_branch_stalls_on_pending_operand():
    text = "# x2 = 100\naddi x1, x1, 1\nbeq x1, x2, out\nfadd.s f0, f1, f2\nout:\n"
    sim = run(text)
    states = sim.states
    branch_cycle = first_cycle_with(states, 1, "Branch")
    write_cycle = first_cycle_with(states, 0, "Write")
    assert branch_cycle == write_cycle + 1


def test_structural_stall_retries():
    text = "\n".join(f"fmul.s f{i}, f20, f21" for i in range(3))
    sim = run(text)
    states = sim.states
    third_issue = first_cycle_with(states, 2, "Issue")
    first_write = first_cycle_with(states, 0, "Write")
    assert third_issue == first_write + 1
    assert states[-1].registers["f2"].value is not None


def test_store_then_load_same_address():
    text = "fsw f1, 0(a0)\nflw f2, 0(a0)"
    sim = run(text)
    states = sim.states
    store_commit = max(s.cycle for s in states if s.program_actions[0] == "Write")
    load_read = max(s.cycle for s in states if s.program_actions[1] == "Exec")
    assert store_commit < load_read
    assert states[-1].registers["f2"].value == states[0].registers["f1"].value


def test_stores_to_same_address_commit_in_order():
    text = "fsw f1, 0(a0)\nfsw f2, 0(a0)"
    sim = run(text)
    states = sim.states
    addr = states[0].registers["a0"].value
    first_commit = max(s.cycle for s in states if s.program_actions[0] == "Write")
    second_commit = max(s.cycle for s in states if s.program_actions[1] == "Write")
    assert first_commit < second_commit
    assert states[-1].memory[addr] == states[0].registers["f2"].value


def test_store_waits_for_earlier_load_to_same_address():
    text = "flw f2, 0(a0)\nfsw f1, 0(a0)"
    sim = run(text)
    states = sim.states
    addr = states[0].registers["a0"].value
    load_exec = [s.cycle for s in states if s.program_actions[0] == "Exec"]
    store_commit = [s.cycle for s in states if s.program_actions[1] == "Write"]
    assert load_exec == [2, 3, 4]
    assert store_commit == [6, 7]
    assert states[-1].registers["f2"].value == states[0].memory[addr]
    assert states[-1].memory[addr] == states[0].registers["f1"].value


def test_load_blocked_by_store_with_unresolved_base():
    # The store's base waits on the slow mul, while the load's base is
    # renamed to the faster addi. Both name x1 with offset 0 and resolve to 6.
    text = "# x5 = 2\n# x6 = 3\n# x7 = 6\nmul x1, x5, x6\nfsw f1, 0(x1)\naddi x1, x7, 0\nflw f2, 0(x1)"
    sim = run(text)
    states = sim.states
    load_exec = [s.cycle for s in states if s.program_actions[3] == "Exec"]
    store_commit = [s.cycle for s in states if s.program_actions[1] == "Write"]

    address_cycle = load_exec[0]
    assert states[address_cycle].station("Load2").address_full() == 6
    assert states[address_cycle].station("Load1").address_full() is None
    # No memory access for the load until the store has committed.
    assert all(cycle > max(store_commit) for cycle in load_exec[1:])
    assert load_exec == [7, 11, 12]
    assert store_commit == [9, 10]
    assert states[-1].memory[6] == states[0].registers["f1"].value
    assert states[-1].registers["f2"].value == states[0].registers["f1"].value


def test_load_seeds_unknown_memory():
    text = "li a0, 64\nflw f1, 0(a0)"
    sim = run(text)
    final = sim.states[-1]
    assert final.registers["a0"].value == 64
    assert final.memory[64] == deterministic_float("f1")
    assert final.registers["f1"].value == deterministic_float("f1")


def test_immediate_arithmetic():
    sim = run("# x1 = 10\naddi x2, x1, -3\nmuli x3, x1, 4")
    final = sim.states[-1]
    assert final.registers["x2"].value == 7
    assert final.registers["x3"].value == 40


def test_divide_by_zero_follows_ieee():
    sim = run("# f1 = 1\n# f2 = 0\n# f3 = 0\nfdiv.s f0, f1, f2\nfdiv.s f4, f3, f2")
    final = sim.states[-1]
    assert final.registers["f0"].value == math.inf
    assert math.isnan(final.registers["f4"].value)


def test_custom_latencies():
    fast = run(SAMPLE_PROGRAM_TEXT)
    slow = run(SAMPLE_PROGRAM_TEXT, latencies={"Mult": 10})
    assert slow.cycle > fast.cycle
    assert slow.states[0].station("Mul1").delay == 10


# ---------------------------------------------------------------------------
# Invariants
# ---------------------------------------------------------------------------


ALL_PROGRAMS = list(PROGRAM_TEMPLATES.values()) + [
    "fsw f1, 0(a0)\nflw f2, 0(a0)\nfadd.s f3, f2, f2\nfsw f3, 0(a0)",
]


@pytest.mark.parametrize("text", ALL_PROGRAMS)
def test_register_holds_exactly_one_of_value_and_tag(text):
    sim = run(text)
    initial = sim.states[0]
    for state in sim.states:
        issued = {
            dest
            for code_order in state.program.execution_order
            for dest in state.program.get_at_code_order(code_order).dest_registers
        }
        for name, reg in state.registers.items():
            if name in issued or initial.registers[name].value is not None:
                assert (reg.value is None) != (reg.qi is None)
            else:
                # Written-first registers start with neither until issued to.
                assert reg.value is None and reg.qi is None


@pytest.mark.parametrize("text", ALL_PROGRAMS)
def test_single_cdb_writer_per_cycle(text):
    sim = run(text)
    for steps in sim.inter_states:
        broadcasts = [s for s in steps if s.description.startswith("**Write (CDB)**")]
        assert len(broadcasts) <= 1


@pytest.mark.parametrize("text", ALL_PROGRAMS)
def test_runs_are_deterministic(text):
    first, second = run(text), run(text)
    assert [s.describe() for s in first.states] == [s.describe() for s in second.states]
    assert [[step.description for step in steps] for steps in first.inter_states] == [
        [step.description for step in steps] for steps in second.inter_states
    ]


def test_memory_addresses_are_backfilled():
    sim = run("li a0, 64\nfsw f1, 0(a0)\nflw f2, 4(a1)")
    addresses = set(sim.states[-1].memory)
    assert 64 in addresses
    for state in sim.states:
        assert set(state.memory) == addresses
    assert sim.states[0].memory[64] is None


def test_sub_steps_are_narrated_snapshots():
    sim = run(SAMPLE_PROGRAM_TEXT)
    assert sim.inter_states[0] == []
    first = sim.inter_states[1]
    assert len(first) == 1
    assert first[0].description.startswith("**Issue**")
    assert "`flw f6, 32(a2)`" in first[0].description
    assert first[0].state.station("Load1").busy
    assert first[0].state.registers["f6"].qi == "Load1"
    for cycle, steps in enumerate(sim.inter_states):
        for step in steps:
            assert step.state.cycle == cycle


def test_clone_is_deep():
    sim = run(SAMPLE_PROGRAM_TEXT)
    original = sim.states[3]
    clone = original.clone()
    assert clone.registers == original.registers
    assert clone.reservation_stations == original.reservation_stations
    assert clone.memory == original.memory
    assert clone.program_actions == original.program_actions
    assert clone.program.execution_order == original.program.execution_order
    assert clone.cycle == original.cycle

    before = original.registers["f4"].value
    clone.registers["f4"].set_value(before + 1)
    clone.station("Load1").reset()
    clone.memory[12345] = 1
    clone.program.advance_instruction()
    assert original.registers["f4"].value == before
    assert original.station("Load1").busy
    assert 12345 not in original.memory
    assert original.program.counter == 3


def test_states_do_not_share_substructure():
    sim = run(SAMPLE_PROGRAM_TEXT)
    for previous, current in zip(sim.states, sim.states[1:]):
        assert current.registers is not previous.registers
        assert current.memory is not previous.memory
        for a, b in zip(previous.reservation_stations, current.reservation_stations):
            assert a is not b


def test_step_by_step_matches_run():
    parsed = parse_program(SAMPLE_PROGRAM_TEXT)
    stepped = TomasuloSimulator(parsed)
    while stepped.step():
        pass
    assert stepped.is_finished()
    assert [s.describe() for s in stepped.states] == [s.describe() for s in run(SAMPLE_PROGRAM_TEXT).states]
    stepped.reset()
    assert len(stepped.states) == 1 and not stepped.is_finished()


def test_station_read_helpers():
    sim = run(PROGRAM_TEMPLATES["raw"])
    add1 = sim.states[2].station("Add1")
    assert add1.j_value() == sim.states[0].registers["f1"].value
    assert add1.k_value() == "Mul1"
    assert sim.states[2].registers["f5"].get_value() == "Add1"

    load1 = run(SAMPLE_PROGRAM_TEXT).states[1].station("Load1")
    assert load1.address_offset() == 32
    assert load1.address_full() is None
    assert load1.display_address() == "32"
    assert sim.states[0].station("Add1").address_offset() is None
