"""ISA: opcode encodings and helpers."""

from __future__ import annotations

from collections.abc import Sequence
from enum import IntEnum


class OpCode(IntEnum):
    """Keeps opcodes of all eight operations.

    Opcodes are negative so that any positive integer in a compiled program
    is a run-length count for the opcode that follows it.
    """

    LEFT = -8  # ptr -= n
    RIGHT = -7  # ptr += n
    PLUS = -6  # cell += n
    MINUS = -5  # cell -= n
    LOOP_BEGIN = -4  # if cell == 0: pc = jumps[pc]
    LOOP_END = -3  # if cell != 0: pc = jumps[pc]
    PRINT = -2  # emit chr(cell)
    READ = -1  # cell = next input byte


# ops that may be collapsed into a count-prefixed instruction
REPEATABLE = frozenset({OpCode.LEFT, OpCode.RIGHT, OpCode.PLUS, OpCode.MINUS})


def decode_instr(program: Sequence[int], pc: int) -> tuple[OpCode, int, int]:
    """Decode instruction at pc.

    Returns (OpCode, count, opcode_index). When a run-length count precedes
    the opcode, opcode_index is pc + 1, otherwise pc.
    Raises EOFError if pc is past the end of the program.
    """
    if pc >= len(program):
        err = "End of program"
        raise EOFError(err)
    word = program[pc]
    count = 1
    if word > 0:
        count = word
        pc += 1
        if pc >= len(program):
            err = f"Dangling count {count} at end of program"
            raise EOFError(err)
        word = program[pc]
    return OpCode(word), count, pc


def mnemonic(opcode: OpCode, count: int = 1) -> str:
    """Get operation mnemonic."""
    if opcode in REPEATABLE and count > 1:
        return f"{opcode.name} {count}"
    return opcode.name


def listing(program: Sequence[int], jumps: dict[int, int] | None = None) -> str:
    """Render a human-readable listing of a compiled program.

    One line per instruction: "<index> - <words> - <mnemonic>". Loop
    instructions get their jump target appended.
    """
    lines: list[str] = []
    pc = 0
    while pc < len(program):
        try:
            opcode, count, op_idx = decode_instr(program, pc)
        except (EOFError, ValueError) as e:
            rest = " ".join(str(w) for w in program[pc:])
            lines.append(f"{pc} - {rest} - <decode error: {e}>")
            break
        words = " ".join(str(w) for w in program[pc : op_idx + 1])
        mnem = mnemonic(opcode, count)
        if jumps is not None and opcode in (OpCode.LOOP_BEGIN, OpCode.LOOP_END):
            mnem = f"{mnem} -> {jumps.get(op_idx, '?')}"
        lines.append(f"{pc} - {words} - {mnem}")
        pc = op_idx + 1
    return "\n".join(lines)
