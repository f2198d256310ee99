"""Processor (Tape + Executor) and CLI wrapper.

Provides the cooperative VM that runs a compiled program in bounded slices,
logging initialization and a command-line runner.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from config import DEFAULTS, ConfigError, load_config
from isa import OpCode, decode_instr, mnemonic

LOGFILE = "processor.log"
SLICE_STEPS = int(DEFAULTS["slice_steps"])


def init_logging(logfile: str | None = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr
    (stdout carries program output). Passing logfile=None skips the file.

    NOTE: when debug=True we use a compact log format without timestamp so that
    entries look like:
        DEBUG root:processor.py:197 Executor: slice 1 started at pc 0
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    lvl = logging.DEBUG if debug else logging.CRITICAL
    root.setLevel(lvl)

    if debug:
        file_fmt = "%(levelname)s %(name)s:%(filename)s:%(lineno)d %(message)s"
    else:
        file_fmt = "%(levelname)-5s %(message)s"

    # Indents all but the first formatted record so slices read as blocks.
    class _IndentOnceFormatter(logging.Formatter):
        def __init__(self, fmt: str | None = None):
            super().__init__(fmt)
            self._seen_first = False

        def format(self, record: logging.LogRecord) -> str:
            s = super().format(record)
            if not self._seen_first:
                self._seen_first = True
                return s
            return "    " + s

    if logfile is not None:
        fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
        fh.setLevel(lvl)
        if debug:
            fh.setFormatter(_IndentOnceFormatter(file_fmt))
        else:
            fh.setFormatter(logging.Formatter(file_fmt))
        root.addHandler(fh)

    if debug and console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


# ---------- faults ----------
class InterpreterFault(Exception):
    """Terminal fault: aborts the current run."""

    name = "InterpreterFault"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class MemoryUnderflow(InterpreterFault):
    name = "MemoryUnderflow"


class UnmatchedBrackets(InterpreterFault):
    name = "UnmatchedBrackets"


class BadInstruction(InterpreterFault):
    name = "BadInstruction"


class RunState(Enum):
    READY = "ready"
    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    HALTED = "halted"
    FINISHED = "finished"
    FAILED = "failed"


class SliceStatus(Enum):
    CONTINUING = "continuing"
    FINISHED = "finished"
    AWAITING_INPUT = "awaiting_input"
    HALTED = "halted"
    FAILED = "failed"


@dataclass(frozen=True)
class SliceResult:
    """Outcome of one `Executor.run_slice` call. Only FAILED carries a fault."""

    status: SliceStatus
    steps: int = 0
    fault: InterpreterFault | None = None


def normalize_input(data: Any) -> list[int]:
    """Turn str/bytes/int sequences into a list of byte values."""
    if data is None:
        return []
    if isinstance(data, str):
        return [ord(ch) % 256 for ch in data]
    if isinstance(data, (bytes, bytearray)):
        return list(data)
    return [int(v) % 256 for v in data]


class Tape:
    """Growable byte tape with a single cursor."""

    cells: bytearray
    pointer: int

    def __init__(self) -> None:
        self.cells = bytearray(1)
        self.pointer = 0

    def __len__(self) -> int:
        return len(self.cells)

    def get(self) -> int:
        return self.cells[self.pointer]

    def set(self, value: int) -> None:
        self.cells[self.pointer] = value % 256

    def move_right(self, n: int = 1) -> None:
        self.pointer += n
        if self.pointer >= len(self.cells):
            self.cells.extend(bytes(self.pointer - len(self.cells) + 1))

    def move_left(self, n: int = 1) -> None:
        if self.pointer - n < 0:
            err = "Program attempted to access out of bound memory"
            raise MemoryUnderflow(err)
        self.pointer -= n

    def add(self, n: int = 1) -> None:
        self.cells[self.pointer] = (self.cells[self.pointer] + n) % 256

    def sub(self, n: int = 1) -> None:
        self.cells[self.pointer] = (self.cells[self.pointer] - n) % 256

    def snapshot(self) -> list[int]:
        return list(self.cells)


class Executor:
    """Runs a compiled program slice by slice against its own tape.

    Control requests (`halt`, `feed_input`, `resume`) may come from any
    thread. The halt flag is only sampled at the start of `run_slice`.
    """

    program: tuple[int, ...]
    jumps: dict[int, int]
    tape: Tape
    pc: int
    input: list[int]
    input_idx: int
    state: RunState
    steps: int
    runtime: float
    slice_steps: int
    output_buffer: list[str]

    def __init__(
        self,
        program: Sequence[int],
        jumps: dict[int, int],
        input_data: Any = None,
        slice_steps: int = SLICE_STEPS,
        on_output: Callable[[str], None] | None = None,
        trace: bool = False,
        lenient_log: bool = False,
    ) -> None:
        """Create an Executor in READY state."""
        if slice_steps <= 0:
            err = "slice_steps must be positive"
            raise ValueError(err)
        self.program = tuple(program)
        self.jumps = dict(jumps)
        self.tape = Tape()
        self.pc = 0
        self.input = normalize_input(input_data)
        self.input_idx = 0
        self.state = RunState.READY
        self.steps = 0
        self.slices = 0
        self.runtime = 0.0
        self.slice_steps = int(slice_steps)
        self.trace = bool(trace)
        self.lenient_log = bool(lenient_log)
        self.output_buffer = []
        self.on_output = on_output if on_output is not None else self.output_buffer.append

        self._halt = False
        # a slice was requested while suspended and has not run yet
        self._wake_pending = False
        self._lock = threading.Lock()

    # --- control requests ---
    def feed_input(self, data: Any) -> None:
        """Replace pending input and reset the input cursor."""
        values = normalize_input(data)
        with self._lock:
            self.input = values
            self.input_idx = 0
        logging.debug("Executor: input replaced (%d bytes)", len(values))

    def halt(self) -> bool:
        """Request a halt, observed at the next slice boundary.

        Returns True when no slice is pending (the executor is waiting for
        input), in which case the caller must schedule one so the halt is
        observed and reported. The state stays AWAITING_INPUT until then.
        """
        with self._lock:
            self._halt = True
            logging.debug("Executor: halt requested at pc %d", self.pc)
            if self.state == RunState.AWAITING_INPUT and not self._wake_pending:
                self._wake_pending = True
                return True
            return False

    def resume(self) -> bool:
        """Clear halt and make the executor runnable again.

        Returns True when the caller should schedule another slice, that is
        when the executor was HALTED or AWAITING_INPUT.
        """
        with self._lock:
            self._halt = False
            if self.state not in (RunState.HALTED, RunState.AWAITING_INPUT):
                return False
            logging.debug("Executor: resume from %s at pc %d", self.state.value, self.pc)
            self.state = RunState.RUNNING
            return not self._wake_pending

    @property
    def pointer(self) -> int:
        return self.tape.pointer

    def _log_step(self, opcode: OpCode, count: int) -> None:
        if self.lenient_log:
            return
        logging.debug(
            "STATE: %-10s STEP: %6d PC: %5d PTR: %5d CELL: %3d\tINSTR: %s",
            self.state.value.upper(),
            self.steps,
            self.pc,
            self.tape.pointer,
            self.tape.get(),
            mnemonic(opcode, count),
        )

    def _jump(self, op_idx: int, opcode: OpCode) -> int:
        target = self.jumps.get(op_idx)
        if target is None:
            bracket = "[" if opcode == OpCode.LOOP_BEGIN else "]"
            err = f"Unmatched '{bracket}' encountered in source code"
            raise UnmatchedBrackets(err)
        return target

    # --- slice driving ---
    def run_slice(self) -> SliceResult:  # noqa: C901
        """Execute up to `slice_steps` instructions and report how it ended."""
        with self._lock:
            self._wake_pending = False
            if self.state == RunState.FINISHED:
                return SliceResult(SliceStatus.FINISHED)
            if self.state == RunState.FAILED:
                return SliceResult(SliceStatus.FAILED)
            if self._halt:
                self.state = RunState.HALTED
                logging.debug("Executor: halted at slice boundary (pc %d)", self.pc)
                return SliceResult(SliceStatus.HALTED)
            self.state = RunState.RUNNING

        self.slices += 1
        start = time.perf_counter()
        tape = self.tape
        program = self.program
        plen = len(program)
        steps = 0
        status = SliceStatus.CONTINUING
        fault: InterpreterFault | None = None
        logging.debug("Executor: slice %d started at pc %d", self.slices, self.pc)

        try:
            while steps < self.slice_steps:
                if self.pc >= plen:
                    status = SliceStatus.FINISHED
                    break
                try:
                    opcode, count, op_idx = decode_instr(program, self.pc)
                except (EOFError, ValueError) as e:
                    err = f"Bad instruction at {self.pc}: {e}"
                    raise BadInstruction(err) from e

                if self.trace:
                    self._log_step(opcode, count)

                next_pc = op_idx + 1
                if opcode == OpCode.RIGHT:
                    tape.move_right(count)
                elif opcode == OpCode.LEFT:
                    tape.move_left(count)
                elif opcode == OpCode.PLUS:
                    tape.add(count)
                elif opcode == OpCode.MINUS:
                    tape.sub(count)
                elif opcode == OpCode.LOOP_BEGIN:
                    if tape.get() == 0:
                        next_pc = self._jump(op_idx, opcode) + 1
                elif opcode == OpCode.LOOP_END:
                    if tape.get() != 0:
                        next_pc = self._jump(op_idx, opcode) + 1
                elif opcode == OpCode.PRINT:
                    self.on_output(chr(tape.get()))
                elif opcode == OpCode.READ:
                    with self._lock:
                        if self.input_idx < len(self.input):
                            tape.set(self.input[self.input_idx])
                            self.input_idx += 1
                        else:
                            # pc stays on READ so fresh input is consumed on resume
                            tape.set(0)
                            self.state = RunState.AWAITING_INPUT
                            status = SliceStatus.AWAITING_INPUT
                    if status == SliceStatus.AWAITING_INPUT:
                        logging.debug("Executor: end of input at pc %d", self.pc)
                        break

                self.pc = next_pc
                steps += 1
            else:
                if self.pc >= plen:
                    status = SliceStatus.FINISHED
        except InterpreterFault as e:
            status = SliceStatus.FAILED
            fault = e
            logging.debug("Executor: %s at pc %d: %s", e.name, self.pc, e.message)

        self.steps += steps
        self.runtime += time.perf_counter() - start

        with self._lock:
            if status == SliceStatus.FINISHED:
                self.state = RunState.FINISHED
            elif status == SliceStatus.FAILED:
                self.state = RunState.FAILED
        logging.debug(
            "Executor: slice %d -> %s after %d steps (pc %d, total %d)",
            self.slices,
            status.value,
            steps,
            self.pc,
            self.steps,
        )
        return SliceResult(status, steps, fault)

    def run_to_completion(self) -> SliceResult:
        """Run slices back to back until one is not CONTINUING."""
        while True:
            result = self.run_slice()
            if result.status != SliceStatus.CONTINUING:
                return result


# ---------- Public API ----------
def run_source(
    src: str,
    input_data: Any = None,
    config: dict[str, Any] | None = None,
) -> tuple[str, int, str]:
    """Compile and run `src` without a host; return (stdout, steps, state).

    Stops at the first read request, halt or fault.
    """
    from translator import compile_source

    cfg = load_config(config)
    program, jumps = compile_source(src, optimize=cfg["optimize"], alphabet=cfg["alphabet"])
    ex = Executor(
        program,
        jumps,
        input_data,
        slice_steps=cfg["slice_steps"],
        trace=cfg["trace_steps"],
        lenient_log=cfg["lenient_log"],
    )
    ex.run_to_completion()
    return "".join(ex.output_buffer), ex.steps, ex.state.value


# ---------- CLI ----------
if __name__ == "__main__":
    import argparse

    from host import ErrorEvent, FinishedEvent, InlineScheduler, PrintEvent, ReadEvent, Session

    ap = argparse.ArgumentParser(
        description="Cooperative Brainfuck VM runner. Input is read from --input/--input-file, "
        "then from stdin one line per read request."
    )
    ap.add_argument("program", help="program source file (e.g. program.bf)")
    ap.add_argument("--input", default=None, help="initial input text")
    ap.add_argument("--input-file", default=None, help="file whose contents are the initial input")
    ap.add_argument("--optimize", action="store_true", default=None, help="run-length optimize the program")
    ap.add_argument("--alphabet", default=None, help="token alphabet (classic or emoji)")
    ap.add_argument("--config", help="path to yaml config", default=None)

    help_debug = "enable debug logging to logfile (slice and fault details)."
    help_logfile = "path to processor log"
    help_console = "also echo logs to stderr (only when --debug)"
    ap.add_argument("--debug", action="store_true", help=help_debug)
    ap.add_argument("--logfile", default=LOGFILE, help=help_logfile)
    ap.add_argument("--console", action="store_true", help=help_console)
    args = ap.parse_args()

    init_logging(logfile=args.logfile, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
        overrides: dict[str, Any] = {}
        if args.optimize is not None:
            overrides["optimize"] = args.optimize
        if args.alphabet is not None:
            overrides["alphabet"] = args.alphabet
        if overrides:
            cfg = load_config({**cfg, **overrides})
    except ConfigError as e:
        print("Bad config:", e)
        sys.exit(2)

    src_path = Path(args.program)
    if not src_path.exists():
        print("Program file not found:", args.program)
        sys.exit(2)
    src = src_path.read_text(encoding="utf-8")

    initial: Any = args.input or ""
    if args.input_file:
        in_path = Path(args.input_file)
        if not in_path.exists():
            print("Input file not found:", args.input_file)
            sys.exit(2)
        initial = in_path.read_bytes()

    scheduler = InlineScheduler()
    finished: list[FinishedEvent] = []
    failed: list[str] = []
    pending_reads: list[ReadEvent] = []

    def _listener(event: Any) -> None:
        if isinstance(event, PrintEvent):
            sys.stdout.write(event.value)
            sys.stdout.flush()
        elif isinstance(event, ReadEvent):
            pending_reads.append(event)
        elif isinstance(event, ErrorEvent):
            failed.append(event.message)
            print("\nError:", event.message, file=sys.stderr)
        elif isinstance(event, FinishedEvent):
            finished.append(event)

    session = Session(_listener, scheduler=scheduler, config=cfg)
    session.run(src, initial, optimize=cfg["optimize"])

    while not finished:
        scheduler.run_until_idle()
        if pending_reads and not finished:
            pending_reads.clear()
            line = sys.stdin.readline()
            if line == "":
                logging.debug("CLI: stdin closed while program waits for input -> halt")
                session.halt()
            else:
                session.feed_input(line)

    fin = finished[0]
    sys.stdout.write("\n")
    sys.stdout.write(f"RUNTIME: {fin.runtime * 1000:.3f} ms\n")
    sys.stdout.write(f"STEPS: {session.executor.steps if session.executor else 0}\n")
    sys.exit(1 if failed else 0)
