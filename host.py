"""Host control protocol: commands in, events out, slice scheduling.

A `Session` owns at most one live `Executor`. Commands (run / input /
resume / halt) arrive as method calls, command objects or plain message
dicts; events (print / read / error / finished) go to a listener callable.
Slices are handed to a scheduler, which decides when the next one runs.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from config import load_config
from processor import Executor, SliceResult, SliceStatus
from translator import CompileError, compile_program, tokenize


# ---------- commands (host -> core) ----------
@dataclass
class RunCommand:
    program: Any
    input: Any = None
    optimize: bool | None = None


@dataclass
class InputCommand:
    input: Any


@dataclass
class ResumeCommand:
    pass


@dataclass
class HaltCommand:
    pass


Command = RunCommand | InputCommand | ResumeCommand | HaltCommand


# ---------- events (core -> host) ----------
@dataclass
class PrintEvent:
    value: str

    def to_message(self) -> dict[str, Any]:
        return {"command": "print", "value": self.value}


@dataclass
class ReadEvent:
    def to_message(self) -> dict[str, Any]:
        return {"command": "read"}


@dataclass
class ErrorEvent:
    message: str
    name: str = "InterpreterFault"

    def to_message(self) -> dict[str, Any]:
        return {"command": "error", "message": self.message}


@dataclass
class FinishedEvent:
    runtime: float  # seconds
    halted: bool
    tape: list[int] = field(default_factory=lambda: [0])
    pointer: int = 0

    def to_message(self) -> dict[str, Any]:
        return {
            "command": "fin",
            "runtime": int(round(self.runtime * 1000)),
            "halted": self.halted,
            "memory": {"tape": list(self.tape), "idx": self.pointer},
        }


Event = PrintEvent | ReadEvent | ErrorEvent | FinishedEvent


# ---------- schedulers ----------
class Scheduler(Protocol):
    def schedule(self, callback: Callable[[], None]) -> None: ...


class InlineScheduler:
    """FIFO of pending callbacks, drained explicitly by the caller."""

    def __init__(self) -> None:
        self._pending: deque[Callable[[], None]] = deque()

    def __len__(self) -> int:
        return len(self._pending)

    def schedule(self, callback: Callable[[], None]) -> None:
        self._pending.append(callback)

    def run_pending(self) -> int:
        """Run callbacks queued before this call; return how many ran."""
        n = len(self._pending)
        for _ in range(n):
            self._pending.popleft()()
        return n

    def run_until_idle(self, max_callbacks: int | None = None) -> int:
        """Run callbacks (including newly scheduled ones) until none remain."""
        ran = 0
        while self._pending:
            if max_callbacks is not None and ran >= max_callbacks:
                break
            self._pending.popleft()()
            ran += 1
        return ran


class ThreadScheduler:
    """Runs callbacks one at a time on a daemon worker thread.

    `yield_delay` seconds are slept after each callback so control
    requests from other threads get a chance in between slices.
    """

    def __init__(self, yield_delay: float = 0.001) -> None:
        self.yield_delay = float(yield_delay)
        self.errors: list[BaseException] = []
        self._queue: queue.Queue[Callable[[], None] | None] = queue.Queue()
        self._idle = threading.Condition()
        self._outstanding = 0
        self._thread = threading.Thread(target=self._worker, name="vm-scheduler", daemon=True)
        self._thread.start()

    def schedule(self, callback: Callable[[], None]) -> None:
        with self._idle:
            self._outstanding += 1
        self._queue.put(callback)

    def _worker(self) -> None:
        while True:
            cb = self._queue.get()
            if cb is None:
                break
            try:
                cb()
            except Exception as e:
                logging.exception("ThreadScheduler: callback failed")
                self.errors.append(e)
            finally:
                with self._idle:
                    self._outstanding -= 1
                    self._idle.notify_all()
            if self.yield_delay:
                time.sleep(self.yield_delay)

    def join_idle(self, timeout: float | None = None) -> bool:
        """Wait until no callbacks are queued or running; False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, timeout: float | None = None) -> None:
        self._queue.put(None)
        self._thread.join(timeout)


def make_scheduler(config: dict[str, Any]) -> InlineScheduler | ThreadScheduler:
    """Build the scheduler named by config["scheduler"]."""
    if config["scheduler"] == "thread":
        return ThreadScheduler(yield_delay=config["yield_delay"])
    return InlineScheduler()


# ---------- session ----------
class Session:
    """Explicit owner of the current run; dispatches commands and emits events."""

    def __init__(
        self,
        listener: Callable[[Event], None] | None = None,
        scheduler: Scheduler | None = None,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.config = load_config(config)
        self.events: list[Event] = []
        self.listener = listener if listener is not None else self.events.append
        if scheduler is None:
            scheduler = make_scheduler(self.config)
        self.scheduler: Scheduler = scheduler
        self.executor: Executor | None = None
        self.compile_time = 0.0

    # --- event emission ---
    def _emit(self, event: Event) -> None:
        self.listener(event)

    def _finish(self, ex: Executor | None, halted: bool) -> None:
        if ex is None:
            self._emit(FinishedEvent(self.compile_time, halted))
            return
        self._emit(FinishedEvent(ex.runtime, halted, ex.tape.snapshot(), ex.pointer))

    def _print(self, ex: Executor, ch: str) -> None:
        if ex is not self.executor:
            return
        self._emit(PrintEvent(ch))

    def _schedule(self, ex: Executor) -> None:
        self.scheduler.schedule(lambda: self._step(ex))

    def _step(self, ex: Executor) -> None:
        if ex is not self.executor:
            logging.debug("Session: dropping slice of a replaced executor")
            return
        result: SliceResult = ex.run_slice()
        if ex is not self.executor:
            logging.debug("Session: run replaced during slice -> %s dropped", result.status.value)
            return
        status = result.status
        if status == SliceStatus.CONTINUING:
            limit = self.config.get("step_limit")
            if limit is not None and ex.steps >= limit:
                logging.debug("Session: step limit %d reached -> halt", limit)
                ex.halt()
            self._schedule(ex)
        elif status == SliceStatus.FINISHED:
            self._finish(ex, halted=False)
        elif status == SliceStatus.AWAITING_INPUT:
            self._emit(ReadEvent())
        elif status == SliceStatus.HALTED:
            self._finish(ex, halted=True)
        elif status == SliceStatus.FAILED:
            fault = result.fault
            if fault is not None:
                self._emit(ErrorEvent(fault.message, fault.name))
            self._finish(ex, halted=True)

    # --- commands ---
    def run(self, program: Any, input_data: Any = None, optimize: bool | None = None) -> Executor | None:
        """Compile `program` and start a fresh executor.

        Returns the new executor, or None when compilation failed (an error
        and a halted finished event are emitted instead).
        """
        if self.executor is not None:
            self.executor.halt()
        self.executor = None
        if optimize is None:
            optimize = self.config["optimize"]

        start = time.perf_counter()
        try:
            program_words, jumps = compile_program(tokenize(program, self.config["alphabet"]), optimize=optimize)
        except CompileError as e:
            self.compile_time = time.perf_counter() - start
            logging.debug("Session: compile failed: %s", e)
            self._emit(ErrorEvent(e.message, "UnmatchedBrackets"))
            self._finish(None, halted=True)
            return None
        self.compile_time = time.perf_counter() - start

        ex = Executor(
            program_words,
            jumps,
            input_data,
            slice_steps=self.config["slice_steps"],
            on_output=lambda ch: self._print(ex, ch),
            trace=self.config["trace_steps"],
            lenient_log=self.config["lenient_log"],
        )
        # compile time counts toward the reported runtime
        ex.runtime = self.compile_time
        self.executor = ex
        logging.debug("Session: run started (%d words, optimize=%s)", len(program_words), optimize)
        self._schedule(ex)
        return ex

    def feed_input(self, input_data: Any) -> None:
        """Replace pending input, then resume."""
        if self.executor is None:
            logging.debug("Session: input with no executor ignored")
            return
        self.executor.feed_input(input_data)
        self.resume()

    def resume(self) -> None:
        ex = self.executor
        if ex is None:
            return
        if ex.resume():
            self._schedule(ex)

    def halt(self) -> None:
        ex = self.executor
        if ex is None:
            return
        if ex.halt():
            self._schedule(ex)

    def handle(self, command: Command) -> None:
        if isinstance(command, RunCommand):
            self.run(command.program, command.input, command.optimize)
        elif isinstance(command, InputCommand):
            self.feed_input(command.input)
        elif isinstance(command, ResumeCommand):
            self.resume()
        elif isinstance(command, HaltCommand):
            self.halt()
        else:
            err = f"unknown command: {command!r}"
            raise TypeError(err)

    def handle_message(self, message: dict[str, Any]) -> None:
        """Dispatch a wire message such as {"command": "run", "program": ...}."""
        name = message.get("command")
        if name == "run":
            self.handle(RunCommand(message.get("program", ""), message.get("input"), message.get("optimize")))
        elif name == "input":
            self.handle(InputCommand(message.get("input")))
        elif name == "resume":
            self.handle(ResumeCommand())
        elif name == "halt":
            self.handle(HaltCommand())
        else:
            logging.debug("Session: unknown command %r ignored", name)
