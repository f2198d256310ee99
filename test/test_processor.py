"""Executor tests: opcode semantics, slicing, input and control flags."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
from isa import OpCode
from processor import (
    BadInstruction,
    Executor,
    MemoryUnderflow,
    RunState,
    SliceStatus,
    Tape,
    init_logging,
    normalize_input,
    run_source,
)
from translator import compile_source


def make(src: str, input_data: object = None, optimize: bool = False, **kw: object) -> Executor:
    program, jumps = compile_source(src, optimize=optimize)
    return Executor(program, jumps, input_data, **kw)  # type: ignore[arg-type]


def test_initial_state() -> None:
    ex = make("+")
    assert ex.state == RunState.READY
    assert (ex.pc, ex.pointer, ex.input_idx) == (0, 0, 0)
    assert ex.tape.snapshot() == [0]


def test_plus_print() -> None:
    ex = make("+++.")
    res = ex.run_slice()
    assert res.status == SliceStatus.FINISHED
    assert res.fault is None
    assert ex.output_buffer == ["\x03"]
    assert ex.state == RunState.FINISHED


@pytest.mark.parametrize("optimize", [False, True])
def test_increment_period_256(optimize: bool) -> None:
    ex = make("+++++" + "+" * 256 + "-" * 256, optimize=optimize)
    ex.run_to_completion()
    assert ex.tape.snapshot() == [5]


@pytest.mark.parametrize("optimize", [False, True])
def test_decrement_wraps(optimize: bool) -> None:
    ex = make("---", optimize=optimize)
    ex.run_to_completion()
    assert ex.tape.snapshot() == [253]


def test_move_left_from_zero_underflows() -> None:
    ex = make(">+<<")
    res = ex.run_slice()
    assert res.status == SliceStatus.FAILED
    assert isinstance(res.fault, MemoryUnderflow)
    assert "out of bound" in res.fault.message
    assert ex.state == RunState.FAILED
    assert ex.pointer == 0
    # a failed executor stays failed
    assert ex.run_slice().status == SliceStatus.FAILED


def test_counted_move_left_underflows() -> None:
    ex = make(">><<<", optimize=True)
    assert isinstance(ex.run_slice().fault, MemoryUnderflow)


def test_tape_grows_with_zero_cells_and_keeps_values() -> None:
    ex = make("+++>>>>++>>", optimize=True)
    ex.run_to_completion()
    assert ex.tape.snapshot() == [3, 0, 0, 0, 2, 0, 0]
    assert ex.pointer == 6


def test_tape_direct() -> None:
    t = Tape()
    t.move_right(3)
    assert len(t) == 4
    t.sub(1)
    assert t.get() == 255
    t.add(2)
    assert t.get() == 1
    t.move_left(3)
    with pytest.raises(MemoryUnderflow):
        t.move_left(1)
    t.set(300)
    assert t.snapshot() == [44, 0, 0, 1]


def test_empty_loop_is_skipped() -> None:
    ex = make("[]")
    res = ex.run_slice()
    assert res.status == SliceStatus.FINISHED
    assert res.steps == 1


def test_loop_clears_cell() -> None:
    ex = make("+++++[-].")
    ex.run_to_completion()
    assert ex.output_buffer == ["\x00"]


def test_missing_jump_target_is_terminal() -> None:
    ex = Executor((int(OpCode.PLUS), int(OpCode.LOOP_END)), {})
    res = ex.run_slice()
    assert res.status == SliceStatus.FAILED
    assert res.fault is not None
    assert res.fault.name == "UnmatchedBrackets"
    assert "']'" in res.fault.message


def test_bad_word_is_terminal() -> None:
    ex = Executor((7,), {})
    res = ex.run_slice()
    assert isinstance(res.fault, BadInstruction)


def test_input_consumed_modulo_256() -> None:
    ex = make(",>,>,", [65, 300, -1])
    ex.run_to_completion()
    assert ex.tape.snapshot() == [65, 44, 255]


def test_input_from_text() -> None:
    ex = make(",.,.", "hi")
    ex.run_to_completion()
    assert "".join(ex.output_buffer) == "hi"


def test_end_of_input_suspends_without_advancing() -> None:
    ex = make("+,.")
    res = ex.run_slice()
    assert res.status == SliceStatus.AWAITING_INPUT
    assert res.fault is None
    assert ex.state == RunState.AWAITING_INPUT
    assert ex.tape.snapshot() == [0]
    assert ex.pc == 1

    # nothing happens until input arrives and resume is issued
    ex.feed_input(b"A")
    assert ex.tape.snapshot() == [0]
    assert ex.resume() is True
    res = ex.run_slice()
    assert res.status == SliceStatus.FINISHED
    assert ex.output_buffer == ["A"]


def test_feed_input_resets_cursor() -> None:
    ex = make(",,,", "a")
    assert ex.run_slice().status == SliceStatus.AWAITING_INPUT
    ex.feed_input("bc")
    assert ex.input_idx == 0
    ex.resume()
    assert ex.run_slice().status == SliceStatus.FINISHED
    assert ex.tape.snapshot() == [ord("c")]


def test_halt_observed_at_slice_boundary_only() -> None:
    ex = make("+[]", slice_steps=10)
    assert ex.run_slice().status == SliceStatus.CONTINUING
    ex.halt()
    # halt wins before any further instruction runs
    steps_before = ex.steps
    res = ex.run_slice()
    assert res.status == SliceStatus.HALTED
    assert ex.steps == steps_before
    assert ex.state == RunState.HALTED


def test_halt_before_first_slice() -> None:
    ex = make("+++")
    assert ex.halt() is False
    assert ex.run_slice().status == SliceStatus.HALTED
    assert ex.tape.snapshot() == [0]


def test_resume_is_noop_unless_halted_or_waiting() -> None:
    ex = make("+")
    assert ex.resume() is False
    ex.run_to_completion()
    assert ex.resume() is False
    assert ex.state == RunState.FINISHED


def test_resume_after_halt_continues() -> None:
    ex = make("+" * 30 + ".", slice_steps=10)
    ex.run_slice()
    ex.halt()
    assert ex.run_slice().status == SliceStatus.HALTED
    assert ex.resume() is True
    assert ex.run_to_completion().status == SliceStatus.FINISHED
    assert ex.output_buffer == [chr(30)]


def test_halt_while_awaiting_input_needs_a_slice() -> None:
    ex = make(",")
    ex.run_slice()
    assert ex.halt() is True
    assert ex.halt() is False
    # still suspended until the requested slice runs
    assert ex.state == RunState.AWAITING_INPUT
    assert ex.run_slice().status == SliceStatus.HALTED
    assert ex.state == RunState.HALTED


def test_resume_before_pending_halt_slice_needs_no_extra_slice() -> None:
    ex = make(",.")
    ex.run_slice()
    assert ex.halt() is True
    ex.feed_input("x")
    # the slice already requested by halt() will do the work
    assert ex.resume() is False
    assert ex.state == RunState.RUNNING
    assert ex.run_slice().status == SliceStatus.FINISHED
    assert ex.output_buffer == ["x"]


def test_halt_requested_mid_slice_waits_for_slice_end() -> None:
    ex: Executor

    def halt_on_print(ch: str) -> None:
        ex.output_buffer.append(ch)
        ex.halt()

    ex = make(".+.+.+" + "+" * 20, slice_steps=10, on_output=halt_on_print)
    res = ex.run_slice()
    # the slice keeps going to its bound despite the halt after the first print
    assert res.status == SliceStatus.CONTINUING
    assert res.steps == 10
    assert ex.output_buffer == ["\x00", "\x01", "\x02"]
    assert ex.tape.snapshot() == [7]

    res = ex.run_slice()
    assert res.status == SliceStatus.HALTED
    assert res.steps == 0
    assert ex.tape.snapshot() == [7]


def test_halt_requested_mid_slice_does_not_cut_program_end() -> None:
    ex: Executor

    def halt_on_print(ch: str) -> None:
        ex.halt()

    ex = make(".+++", on_output=halt_on_print)
    assert ex.run_slice().status == SliceStatus.FINISHED
    assert ex.tape.snapshot() == [3]
    assert ex.run_slice().status == SliceStatus.FINISHED


def test_long_program_spans_slices() -> None:
    ex = make("-[>-[-]<-]")
    results = []
    while True:
        res = ex.run_slice()
        results.append(res)
        if res.status != SliceStatus.CONTINUING:
            break
    assert [r.status for r in results] == [
        SliceStatus.CONTINUING,
        SliceStatus.CONTINUING,
        SliceStatus.FINISHED,
    ]
    assert [r.steps for r in results] == [50000, 50000, 31582]
    assert ex.steps == 131582
    assert ex.slices == 3
    assert ex.runtime > 0
    assert ex.tape.snapshot() == [0, 0]


def test_slice_ending_exactly_at_program_end() -> None:
    ex = make("+++", slice_steps=3)
    assert ex.run_slice().status == SliceStatus.FINISHED


def test_invalid_slice_steps() -> None:
    with pytest.raises(ValueError):
        make("+", slice_steps=0)


@pytest.mark.parametrize(
    "src",
    [
        "++>+++[<+>-]<.",
        "+++[>+++[>+<-]<-]>>.",
        ">>>+++<<<---[>+<-]>.",
        "++++++++[>++++[>++>+++>+++>+<<<<-]>+>+>->>+[<]<-]>>.>---.+++++++..+++.>>.<-.<.+++.------.--------.>>+.>++.",
    ],
)
def test_optimized_and_plain_are_equivalent(src: str) -> None:
    plain = make(src)
    packed = make(src, optimize=True)
    plain.run_to_completion()
    packed.run_to_completion()
    assert plain.output_buffer == packed.output_buffer
    assert plain.tape.snapshot() == packed.tape.snapshot()
    assert plain.pointer == packed.pointer
    assert len(packed.program) <= len(plain.program)


def test_normalize_input() -> None:
    assert normalize_input(None) == []
    assert normalize_input("AŁ") == [65, 0x41]
    assert normalize_input(b"\x00\xff") == [0, 255]
    assert normalize_input([256, 257]) == [0, 1]


def test_run_source() -> None:
    out, steps, state = run_source("+++[>++++++++++<-]>+++.", config={"optimize": True})
    assert out == "!"
    assert state == "finished"
    assert steps > 0


def test_run_source_stops_on_read() -> None:
    out, _, state = run_source(",.", "")
    assert out == ""
    assert state == "awaiting_input"


def test_trace_logging(tmp_path: Path) -> None:
    log = tmp_path / "processor.log"
    init_logging(logfile=str(log), debug=True)
    try:
        make("+.", trace=True).run_to_completion()
        make("+.", trace=True, lenient_log=True).run_to_completion()
    finally:
        root = logging.getLogger()
        for h in list(root.handlers):
            h.close()
            root.removeHandler(h)
    text = log.read_text(encoding="utf-8")
    assert text.count("INSTR: PLUS") == 1
    assert "INSTR: PRINT" in text
    assert "slice 1 -> finished" in text
