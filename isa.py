"""ISA: opcodes, parameter modes, signals and instruction decode helpers."""

from __future__ import annotations

from enum import IntEnum


class OpCode(IntEnum):
    """Keeps opcodes from all operations."""

    ADD = 1  # dst = a + b
    MUL = 2  # dst = a * b
    INPUT = 3  # dst = <input>
    OUTPUT = 4  # <output> = a
    JUMP_IF_TRUE = 5  # if a != 0: PC = target
    JUMP_IF_FALSE = 6  # if a == 0: PC = target
    LESS_THAN = 7  # dst = a < b
    EQUALS = 8  # dst = a == b
    ADJUST_BASE = 9  # RB += a
    HALT = 99


class ParamMode(IntEnum):
    """Addressing discipline of a single operand."""

    POSITION = 0
    IMMEDIATE = 1
    RELATIVE = 2


class Signal(IntEnum):
    """Out-of-band indicator sent by the machine to its driver."""

    NONE = 0
    INPUT = 1
    HALTED = 2
    ERRORED = 3


class DecodeError(ValueError):
    """Raised when an instruction word cannot be decoded."""

    def __init__(self, msg: str, opcode: int | None = None) -> None:
        super().__init__(msg)
        self.opcode = opcode


# Number of operands consumed from memory, regardless of their modes.
OPERAND_COUNT: dict[OpCode, int] = {
    OpCode.ADD: 3,
    OpCode.MUL: 3,
    OpCode.INPUT: 1,
    OpCode.OUTPUT: 1,
    OpCode.JUMP_IF_TRUE: 2,
    OpCode.JUMP_IF_FALSE: 2,
    OpCode.LESS_THAN: 3,
    OpCode.EQUALS: 3,
    OpCode.ADJUST_BASE: 1,
    OpCode.HALT: 0,
}

# Opcodes whose last operand is a destination address.
WRITES_RESULT = frozenset({OpCode.ADD, OpCode.MUL, OpCode.INPUT, OpCode.LESS_THAN, OpCode.EQUALS})


def opcode_of(word: int) -> int:
    """Return the raw two-digit opcode of a word.

    Truncates toward zero, so negative words give negative (unknown) opcodes
    instead of wrapping into valid ones.
    """
    if word < 0:
        return -(-word % 100)
    return word % 100


def param_mode(word: int, index: int) -> ParamMode:
    """Get the mode of operand `index` (0-based) from the hundreds digit upward."""
    digit = (abs(word) // (100 * 10**index)) % 10
    try:
        return ParamMode(digit)
    except ValueError as e:
        msg = f"Unknown parameter mode {digit} for parameter {index + 1} of {word}"
        raise DecodeError(msg) from e


def decode_instr(word: int) -> tuple[OpCode, tuple[ParamMode, ...]]:
    """Decode an instruction word into (OpCode, operand modes).

    Raises DecodeError for unknown opcodes or parameter modes.
    """
    raw = opcode_of(word)
    try:
        op = OpCode(raw)
    except ValueError as e:
        msg = f"Unknown operation {raw}"
        raise DecodeError(msg, opcode=raw) from e
    modes = tuple(param_mode(word, i) for i in range(OPERAND_COUNT[op]))
    return op, modes


def format_operand(param: int, mode: ParamMode) -> str:
    """Render an operand in assembler-like notation."""
    if mode == ParamMode.IMMEDIATE:
        return f"#{param}"
    if mode == ParamMode.RELATIVE:
        return f"rb[{param}]"
    return f"[{param}]"


def mnemonic(opcode: OpCode, params: list[int] | tuple[int, ...] = (), modes: tuple[ParamMode, ...] = ()) -> str:
    """Get operation mnemonic."""
    if not params:
        return opcode.name
    ops = ", ".join(format_operand(p, m) for p, m in zip(params, modes))
    return f"{opcode.name} {ops}"


def disassemble(image: list[int]) -> list[str]:
    """Produce a static listing of a program image.

    Instructions and data share memory, so words that do not decode (and
    any trailing partial instruction) are listed as `DATA`.
    """
    lines: list[str] = []
    pc = 0
    size = len(image)
    while pc < size:
        word = image[pc]
        try:
            op, modes = decode_instr(word)
        except DecodeError:
            lines.append(f"{pc} - {word} - DATA")
            pc += 1
            continue
        count = OPERAND_COUNT[op]
        if pc + count >= size:
            lines.append(f"{pc} - {word} - DATA")
            pc += 1
            continue
        params = image[pc + 1 : pc + 1 + count]
        raw = ",".join(str(w) for w in image[pc : pc + 1 + count])
        lines.append(f"{pc} - {raw} - {mnemonic(op, params, modes)}")
        pc += 1 + count
    return lines
