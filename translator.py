"""Module: turn symbolic source into an opcode program with a jump table.

This module contains:
- ALPHABETS: fixed token -> OpCode lookup tables
- tokenize(s, alphabet) -> list of OpCode tokens (comments dropped)
- Compiler class that compiles tokens into a program and a jump table
"""

from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Iterable
from pathlib import Path

from isa import REPEATABLE, OpCode, listing

try:
    from config import DEFAULTS

    DEFAULT_ALPHABET = str(DEFAULTS.get("alphabet", "classic"))
except Exception:
    DEFAULT_ALPHABET = "classic"


ALPHABETS: dict[str, dict[str, OpCode]] = {
    "classic": {
        "<": OpCode.LEFT,
        ">": OpCode.RIGHT,
        "+": OpCode.PLUS,
        "-": OpCode.MINUS,
        "[": OpCode.LOOP_BEGIN,
        "]": OpCode.LOOP_END,
        ".": OpCode.PRINT,
        ",": OpCode.READ,
    },
    "emoji": {
        "\U0001f448": OpCode.LEFT,  # 👈
        "\U0001f449": OpCode.RIGHT,  # 👉
        "\U0001f602": OpCode.PLUS,  # 😂
        "\U0001f62d": OpCode.MINUS,  # 😭
        "\U0001f69d": OpCode.LOOP_BEGIN,  # 🚝
        "\U0001f685": OpCode.LOOP_END,  # 🚅
        "\U0001f910": OpCode.PRINT,  # 🤐
        "\U0001f649": OpCode.READ,  # 🙉
    },
}

Program = tuple[int, ...]
JumpTable = dict[int, int]


class CompileError(ValueError):
    """Raised when the source has unbalanced loop brackets."""

    def __init__(self, kind: str, message: str, position: int | None = None, index: int | None = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.position = position  # token position in source
        self.index = index  # program index


def tokenize(s: Iterable[str | OpCode], alphabet: str = DEFAULT_ALPHABET) -> list[OpCode | None]:
    """Map every code point of `s` through the alphabet table.

    `s` may be a string or any sequence of raw tokens; OpCode items pass
    through. Unrecognized characters become None so token positions keep
    matching source positions; the compiler skips them.
    """
    try:
        table = ALPHABETS[alphabet]
    except KeyError as e:
        err = f"unknown alphabet: {alphabet!r}"
        raise ValueError(err) from e
    return [ch if isinstance(ch, OpCode) else table.get(ch) for ch in s]


class Compiler:
    """Compiler: transforms tokens into a program and a jump table."""

    def __init__(self, tokens: Iterable[OpCode | None], optimize: bool = False) -> None:
        """Create a Compiler over `tokens`; run-length packs when `optimize`."""
        self.tokens = list(tokens)
        self.optimize = bool(optimize)
        self.code: list[int] = []
        self.jumps: JumpTable = {}
        self.debug: list[tuple[int, str]] = []

        # pending run of a repeatable op (optimize mode)
        self._run_op: OpCode | None = None
        self._run_count = 0
        # (program index, token position) of unmatched LOOP_BEGINs
        self._stack: list[tuple[int, int]] = []

    @property
    def pc(self) -> int:
        return len(self.code)

    def emit(self, opcode: OpCode, count: int = 1) -> int:
        """Append an instruction (count-prefixed when count > 1); return opcode index."""
        addr = self.pc
        if count > 1:
            self.code.append(count)
            self.debug.append((addr, f"{opcode.name} {count}"))
        else:
            self.debug.append((addr, opcode.name))
        self.code.append(int(opcode))
        return self.pc - 1

    def _flush(self) -> None:
        if self._run_op is None:
            return
        self.emit(self._run_op, self._run_count)
        self._run_op = None
        self._run_count = 0

    def _loop_begin(self, pos: int) -> None:
        idx = self.emit(OpCode.LOOP_BEGIN)
        self._stack.append((idx, pos))

    def _loop_end(self, pos: int) -> None:
        if not self._stack:
            err = f"Unmatched ']' at position {pos}"
            raise CompileError("unmatched_loop_end", err, position=pos, index=self.pc)
        idx = self.emit(OpCode.LOOP_END)
        begin, _ = self._stack.pop()
        self.jumps[begin] = idx
        self.jumps[idx] = begin

    def compile(self) -> tuple[Program, JumpTable]:
        """Single left-to-right pass; returns (program, jumps)."""
        for pos, op in enumerate(self.tokens):
            if op is None:
                continue

            if self.optimize and op in REPEATABLE:
                if self._run_op is not None and self._run_op != op:
                    self._flush()
                self._run_op = op
                self._run_count += 1
                continue

            self._flush()
            if op == OpCode.LOOP_BEGIN:
                self._loop_begin(pos)
            elif op == OpCode.LOOP_END:
                self._loop_end(pos)
            else:
                self.emit(op)

        # ops still buffered if program ends with them
        self._flush()

        if self._stack:
            idx, pos = self._stack[-1]
            err = f"Unmatched '[' at position {pos}"
            raise CompileError("unmatched_loop_begin", err, position=pos, index=idx)

        logging.debug(
            "Compiled %d tokens -> %d words (%d loops, optimize=%s)",
            len(self.tokens),
            len(self.code),
            len(self.jumps) // 2,
            self.optimize,
        )
        return tuple(self.code), dict(self.jumps)


def compile_program(tokens: Iterable[OpCode | None], optimize: bool = False) -> tuple[Program, JumpTable]:
    """Compile already tokenized source."""
    return Compiler(tokens, optimize=optimize).compile()


# --- helper entrypoints for using this module programmatically ---


def compile_source(src: str, optimize: bool = False, alphabet: str = DEFAULT_ALPHABET) -> tuple[Program, JumpTable]:
    """Tokenize and compile source text."""
    return compile_program(tokenize(src, alphabet), optimize=optimize)


def write_program(path: str | Path, program: Iterable[int]) -> None:
    """Write a program as one integer word per line."""
    Path(path).write_text("".join(f"{w}\n" for w in program), encoding="utf-8")


def read_program(path: str | Path) -> tuple[Program, JumpTable]:
    """Load a program written by `write_program` and rebuild its jump table."""
    words = [int(line) for line in Path(path).read_text(encoding="utf-8").split()]
    jumps: JumpTable = {}
    stack: list[int] = []
    for i, w in enumerate(words):
        if w == OpCode.LOOP_BEGIN:
            stack.append(i)
        elif w == OpCode.LOOP_END and stack:
            begin = stack.pop()
            jumps[begin] = i
            jumps[i] = begin
    return tuple(words), jumps


def compile_file(
    input_path: str | Path,
    out_bin: str | Path | None = None,
    optimize: bool = False,
    alphabet: str = DEFAULT_ALPHABET,
    debug: bool = False,
) -> str:
    """Compile a source file and write the program file.

    Returns the written program path. If out_bin is not provided it is
    derived from input_path ("<stem>.bin"). With debug, a listing is also
    written next to it ("<out>.hex").
    """
    p = Path(input_path)
    if not p.exists():
        err = f"Source file not found: {input_path}"
        raise FileNotFoundError(err)

    src = p.read_text(encoding="utf-8")
    program, jumps = compile_source(src, optimize=optimize, alphabet=alphabet)

    out_bin_path = p.with_suffix(".bin") if out_bin is None else Path(out_bin)
    write_program(out_bin_path, program)

    if debug:
        Path(str(out_bin_path) + ".hex").write_text(listing(program, jumps), encoding="utf-8")

    return str(out_bin_path)


# --- CLI ---
if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Compile Brainfuck-family source to a VM program")
    ap.add_argument("input", help="source file (e.g. program.bf)")
    ap.add_argument("-o", "--out", help="output program file (default: <input>.bin)")
    ap.add_argument("--optimize", action="store_true", help="collapse repeated < > + - into counted ops")
    ap.add_argument("--alphabet", choices=sorted(ALPHABETS), default=DEFAULT_ALPHABET, help="token alphabet")
    ap.add_argument("--debug", action="store_true", help="write additional listing file (<out>.hex)")
    args = ap.parse_args()

    try:
        out_bin = compile_file(
            args.input,
            out_bin=args.out,
            optimize=args.optimize,
            alphabet=args.alphabet,
            debug=args.debug,
        )
    except (FileNotFoundError, CompileError) as e:
        print("Compile failed:", e)
        sys.exit(2)
    print(out_bin)
