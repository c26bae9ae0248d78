"""Machine lifecycle and driver-contract tests."""

from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path

import pytest

from iochannels import ChannelSet
from isa import Signal
from loader import LoadError
from processor import ControlUnit, Datapath, Machine, MachineError, MachineState, MemoryFault, create_load, run_program

TIMEOUT = 5

ECHO_TWO = "3,9,3,10,4,9,4,10,99"
EQUALS_EIGHT = "3,9,8,9,10,9,4,9,99,-1,8"
# counts down from its input, printing every value, then stores 1 at 100
COUNTDOWN = "3,100,4,100,1001,100,-1,100,1005,100,2,1101,0,1,100,99"


def _drain(m: Machine) -> list[tuple[int | None, Signal, str | None]]:
    events = []
    while True:
        ev = m.read(timeout=TIMEOUT)
        events.append(ev)
        if ev[1] in (Signal.HALTED, Signal.ERRORED):
            return events


# --- datapath ---
def test_memory_reads_zero_past_the_end_without_growing() -> None:
    dp = Datapath([1, 2, 3])
    assert dp.read_word(1000) == 0
    assert len(dp) == 3


def test_memory_write_grows_with_zero_fill() -> None:
    dp = Datapath([1, 2, 3])
    dp.write_word(10, 42)
    assert len(dp) == 11
    assert dp.memory[3:10] == [0] * 7
    assert dp.read_word(10) == 42


def test_negative_address_is_a_fault() -> None:
    dp = Datapath([1])
    with pytest.raises(MemoryFault):
        dp.read_word(-1)
    with pytest.raises(MemoryFault):
        dp.write_word(-5, 1)


def test_control_unit_steps_without_a_thread() -> None:
    dp = Datapath([1101, 2, 3, 5, 99])
    cu = ControlUnit(dp, ChannelSet())
    assert cu.run() == (MachineState.HALTED, None)
    assert dp.memory[5] == 5
    assert cu.steps == 2


# --- testable properties ---
def test_add_in_position_mode(make_machine) -> None:
    m = make_machine("1,0,0,0,99")
    m.start()
    assert m.read(timeout=TIMEOUT) == (None, Signal.HALTED, None)
    assert m.wait(TIMEOUT)
    assert m.halted
    assert m.get(0) == 2


@pytest.mark.parametrize(("value", "expected"), [(8, 1), (9, 0)])
def test_equals_with_input(make_machine, value: int, expected: int) -> None:
    m = make_machine(EQUALS_EIGHT)
    outputs, state = run_program(m, [value], timeout=TIMEOUT)
    assert state == MachineState.HALTED
    assert outputs == [expected]


def test_relative_base_write_target(make_machine) -> None:
    m = make_machine("109,2000,21101,7,8,5,99")
    run_program(m, timeout=TIMEOUT)
    assert m.relative_base == 2000
    assert m.get(2005) == 15
    assert len(m.dump()) == 2006
    assert m.get(1999) == 0


def test_input_needed_is_signalled_before_the_machine_blocks(make_machine) -> None:
    m = make_machine(ECHO_TWO)
    m.start()
    assert m.read(timeout=TIMEOUT) == (None, Signal.INPUT, None)
    m.write(5, timeout=TIMEOUT)
    assert m.read(timeout=TIMEOUT) == (None, Signal.INPUT, None)
    m.write(3, timeout=TIMEOUT)
    assert _drain(m) == [(5, Signal.NONE, None), (3, Signal.NONE, None), (None, Signal.HALTED, None)]


def test_eager_writes_with_a_sized_input_channel(make_machine) -> None:
    m = make_machine(ECHO_TWO, input_buffer=2)
    m.start()
    m.write(5, timeout=TIMEOUT)
    m.write(3, timeout=TIMEOUT)
    values = [v for v, sig, _ in _drain(m) if sig == Signal.NONE]
    assert values == [5, 3]


def test_eager_writes_with_a_rendezvous_input_channel(make_machine) -> None:
    m = make_machine(ECHO_TWO)
    m.start()
    m.write(5, timeout=TIMEOUT)
    m.write(3, timeout=TIMEOUT)
    values = [v for v, sig, _ in _drain(m) if sig == Signal.NONE]
    assert values == [5, 3]


def test_write_blocks_until_the_program_asks(make_machine) -> None:
    m = make_machine("104,1,3,7,99")
    m.start()
    with pytest.raises(TimeoutError):
        m.write(9, timeout=0.1)
    assert m.read(timeout=TIMEOUT) == (1, Signal.NONE, None)
    assert m.read(timeout=TIMEOUT) == (None, Signal.INPUT, None)
    m.write(9, timeout=TIMEOUT)
    assert m.read(timeout=TIMEOUT) == (None, Signal.HALTED, None)
    m.wait(TIMEOUT)
    assert m.get(7) == 9


def test_outputs_interleave_with_input_requests_in_order(make_machine) -> None:
    m = make_machine(COUNTDOWN, output_buffer=10)
    outputs, state = run_program(m, [3], timeout=TIMEOUT)
    assert state == MachineState.HALTED
    assert outputs == [3, 2, 1]
    assert m.get(100) == 1


def test_deep_copies_run_identically(make_machine) -> None:
    pristine = make_machine(COUNTDOWN)
    first = copy.deepcopy(pristine)
    second = pristine.copy()
    out1, _ = run_program(first, [4], timeout=TIMEOUT)
    out2, _ = run_program(second, [4], timeout=TIMEOUT)
    assert out1 == out2 == [4, 3, 2, 1]
    assert first.dump() == second.dump()
    # the checkpoint itself was never touched
    assert pristine.state == MachineState.IDLE
    assert pristine.get(100) == 0


def test_copy_keeps_registers_and_is_independent(make_machine) -> None:
    m = make_machine("1,0,0,0,99")
    m.dp.PC = 3
    m.dp.RB = 11
    twin = m.copy()
    assert (twin.pc, twin.relative_base) == (3, 11)
    twin.set(0, 7)
    assert m.get(0) == 1


def test_machines_run_concurrently(make_machine) -> None:
    machines = [make_machine(COUNTDOWN) for _ in range(4)]
    results: dict[int, list[int]] = {}

    def drive(i: int, m: Machine) -> None:
        results[i], _ = run_program(m, [i + 2], timeout=TIMEOUT)

    threads = [threading.Thread(target=drive, args=(i, m)) for i, m in enumerate(machines)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(TIMEOUT)
    assert results == {i: list(range(i + 2, 0, -1)) for i in range(4)}


# --- errors ---
def test_unknown_opcode_reported_through_channels(make_machine) -> None:
    m = make_machine([98])
    m.start()
    assert m.read(timeout=TIMEOUT) == (None, Signal.ERRORED, "Unknown operation 98 at address 0")
    assert m.wait(TIMEOUT)
    assert m.errored and not m.halted
    assert m.error == "Unknown operation 98 at address 0"


def test_memory_is_read_only_after_halt(make_machine) -> None:
    m = make_machine("99")
    run_program(m, timeout=TIMEOUT)
    assert m.get(0) == 99
    with pytest.raises(MachineError):
        m.set(0, 1)


def test_memory_is_not_accessible_while_running(make_machine) -> None:
    m = make_machine("3,0,99")
    m.start()
    assert m.read(timeout=TIMEOUT)[1] == Signal.INPUT
    with pytest.raises(MachineError):
        m.get(0)
    with pytest.raises(MachineError):
        m.copy()
    m.write(1, timeout=TIMEOUT)
    assert m.read(timeout=TIMEOUT)[1] == Signal.HALTED


def test_start_refuses_twice_and_without_program(make_machine) -> None:
    with pytest.raises(MachineError, match="no program loaded"):
        Machine().start()
    m = make_machine("99")
    m.start()
    with pytest.raises(MachineError):
        m.start()
    assert m.read(timeout=TIMEOUT)[1] == Signal.HALTED
    m.wait(TIMEOUT)
    with pytest.raises(MachineError):
        m.start()


def test_malformed_image_prevents_start(tmp_path: Path) -> None:
    p = tmp_path / "bad.txt"
    p.write_text("1,0,zero,99", encoding="utf-8")
    m = Machine()
    with pytest.raises(LoadError):
        m.load(p)
    with pytest.raises(MachineError):
        m.start()


def test_write_after_halt_is_refused(make_machine) -> None:
    m = make_machine("99")
    run_program(m, timeout=TIMEOUT)
    with pytest.raises(MachineError):
        m.write(1)


def test_close_aborts_a_blocked_machine(make_machine) -> None:
    m = make_machine("3,0,99")
    m.start()
    assert m.read(timeout=TIMEOUT)[1] == Signal.INPUT
    m.close()
    assert m.wait(TIMEOUT)
    assert m.errored
    assert m.error == "aborted: channels closed"


def test_run_program_out_of_inputs(make_machine) -> None:
    m = make_machine(ECHO_TWO)
    with pytest.raises(MachineError, match="none is left"):
        run_program(m, [1], timeout=TIMEOUT)
    assert m.errored


# --- trace / factory ---
def test_trace_file_has_one_line_per_instruction(tmp_path: Path, make_machine) -> None:
    trace = tmp_path / "trace.log"
    m = make_machine("1101,2,3,5,99", trace_file=trace)
    run_program(m, timeout=TIMEOUT)
    lines = trace.read_text(encoding="utf-8").splitlines()
    assert lines == [
        "[0, 0] ADD (2 mode IMMEDIATE, 3 mode IMMEDIATE, 5 mode POSITION) 2 + 3 => 5 @ 5",
        "[4, 0] HALT () halt",
    ]


def test_trace_file_is_appended(tmp_path: Path, make_machine) -> None:
    trace = tmp_path / "trace.log"
    trace.write_text("earlier\n", encoding="utf-8")
    run_program(make_machine("109,-4,99", trace_file=trace), timeout=TIMEOUT)
    lines = trace.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "earlier"
    assert lines[1] == "[0, 0] ADJUST_BASE (-4 mode IMMEDIATE) -4 => relative base -4"


def test_no_trace_file_by_default(tmp_path: Path, make_machine, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    run_program(make_machine("1,0,0,0,99"), timeout=TIMEOUT)
    assert list(tmp_path.iterdir()) == []


def test_create_load_applies_config(tmp_path: Path) -> None:
    prog = tmp_path / "prog.txt"
    prog.write_text(ECHO_TWO, encoding="utf-8")
    cfg = tmp_path / "cfg.yaml"
    cfg.write_text("input_buffer: 2\n", encoding="utf-8")
    m = create_load(prog, str(cfg), name="echo")
    assert m.name == "echo"
    assert m.channels.input.capacity == 2
    outputs, state = run_program(m, [5, 3], timeout=TIMEOUT)
    assert outputs == [5, 3]
    assert state == MachineState.HALTED


def test_close_stops_a_machine_that_never_does_io(make_machine) -> None:
    m = make_machine("1105,1,0")
    m.start()
    m.close()
    assert m.wait(TIMEOUT)
    assert m.errored
    assert m.error == "aborted: channels closed"


def test_run_program_timeout_tears_the_machine_down(make_machine) -> None:
    m = make_machine("1105,1,0")
    with pytest.raises(TimeoutError):
        run_program(m, timeout=0.2)
    assert m.wait(TIMEOUT)
    assert not m.running
    assert m.error == "aborted: channels closed"


def test_traces_of_same_named_machines_stay_separate(tmp_path: Path, make_machine) -> None:
    first, second = tmp_path / "first.log", tmp_path / "second.log"
    a = make_machine("3,0,99", trace_file=first, name="twin")
    b = make_machine("1101,2,3,5,99", trace_file=second, name="twin")
    a.start()
    assert a.read(timeout=TIMEOUT)[1] == Signal.INPUT
    # b runs to completion while a is still alive and tracing
    run_program(b, timeout=TIMEOUT)
    a.write(1, timeout=TIMEOUT)
    assert a.read(timeout=TIMEOUT)[1] == Signal.HALTED
    assert a.wait(TIMEOUT)
    assert [line.split("]")[0] for line in first.read_text(encoding="utf-8").splitlines()] == ["[0, 0", "[2, 0"]
    assert len(second.read_text(encoding="utf-8").splitlines()) == 2
    assert "trace.twin" not in logging.Logger.manager.loggerDict
