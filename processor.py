"""Processor (Datapath + ControlUnit + Machine) and CLI wrapper.

Provides threaded machine execution behind a channel-based driver
contract, logging initialization and an optional per-instruction trace
file.
"""

from __future__ import annotations

import argparse
import itertools
import logging
import sys
import threading
from collections import deque
from collections.abc import Iterable
from enum import Enum
from pathlib import Path
from typing import Any

from iochannels import ChannelClosed, ChannelSet
from config import ConfigError, load_config
from isa import OPERAND_COUNT, WRITES_RESULT, DecodeError, OpCode, ParamMode, Signal, decode_instr, disassemble
from loader import LoadError, format_program, load_program

LOGFILE = "processor.log"


def init_logging(logfile: str | None = LOGFILE, debug: bool = False, console: bool = False) -> None:
    """Configure root logger to write to `logfile`.

    If debug=True set DEBUG level. If console=True also echo logs to stderr
    (stdout carries the program output).
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
        if isinstance(h, logging.FileHandler):
            h.close()
    lvl = logging.DEBUG if debug else logging.WARNING
    root.setLevel(lvl)

    if logfile:
        fh = logging.FileHandler(logfile, mode="w", encoding="utf-8")
        fh.setLevel(lvl)
        fh.setFormatter(logging.Formatter("%(levelname)s %(threadName)s:%(filename)s:%(lineno)d %(message)s"))
        root.addHandler(fh)

    if console:
        ch = logging.StreamHandler(sys.stderr)
        ch.setLevel(lvl)
        ch.setFormatter(logging.Formatter("%(levelname)5s %(message)s"))
        root.addHandler(ch)


class MachineError(Exception):
    """Raised on the driver side when a machine is misused."""

    pass


class MemoryFault(Exception):
    """Raised by the datapath for an address outside memory."""

    pass


class MachineState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    HALTED = "halted"
    ERRORED = "errored"


class Datapath:
    """Datapath (memory + registers) for the machine.

    Memory is a flat list of ints that grows on demand: reads past the end
    return 0 without growing, writes past the end zero-fill up to and
    including the target address.
    """

    memory: list[int]
    PC: int
    RB: int

    def __init__(self, image: Iterable[int] | None = None) -> None:
        self.memory = [int(v) for v in image] if image is not None else []
        self.PC = 0
        self.RB = 0

    def __len__(self) -> int:
        return len(self.memory)

    def read_word(self, addr: int) -> int:
        """Read one word. Returns 0 beyond the current extent."""
        if addr < 0:
            msg = f"Invalid address {addr}"
            raise MemoryFault(msg)
        if addr >= len(self.memory):
            return 0
        return self.memory[addr]

    def write_word(self, addr: int, value: int) -> None:
        """Write one word, growing memory with zeros as needed."""
        if addr < 0:
            msg = f"Invalid address {addr}"
            raise MemoryFault(msg)
        size = len(self.memory)
        if addr >= size:
            self.memory.extend([0] * (addr - size + 1))
        self.memory[addr] = int(value)

    def read_next(self) -> int:
        """Fetch the word at PC and advance PC."""
        word = self.read_word(self.PC)
        self.PC += 1
        return word

    def operand_value(self, param: int, mode: ParamMode) -> int:
        if mode == ParamMode.IMMEDIATE:
            return param
        if mode == ParamMode.RELATIVE:
            return self.read_word(self.RB + param)
        return self.read_word(param)

    def dest_addr(self, param: int, mode: ParamMode) -> int:
        # immediate destinations never occur in valid programs; treat as position
        if mode == ParamMode.RELATIVE:
            return self.RB + param
        return param

    def copy(self) -> Datapath:
        dp = Datapath()
        dp.memory = list(self.memory)
        dp.PC = self.PC
        dp.RB = self.RB
        return dp


class ControlUnit:
    """Decode/execute loop over a Datapath, talking through a ChannelSet."""

    def __init__(self, dp: Datapath, channels: ChannelSet, trace: logging.Logger | None = None) -> None:
        self.dp = dp
        self.channels = channels
        self.trace = trace
        self.steps = 0

    def _describe(self, opcode: OpCode, vals: list[int], dst: int) -> str:
        dp = self.dp
        if opcode == OpCode.HALT:
            return "halt"
        if opcode == OpCode.ADD:
            return f"{vals[0]} + {vals[1]} => {dp.read_word(dst)} @ {dst}"
        if opcode == OpCode.MUL:
            return f"{vals[0]} * {vals[1]} => {dp.read_word(dst)} @ {dst}"
        if opcode == OpCode.INPUT:
            return f"input {dp.read_word(dst)} => {dst}"
        if opcode == OpCode.OUTPUT:
            return f"{vals[0]} => output"
        if opcode == OpCode.JUMP_IF_TRUE:
            return f"jump to {vals[1]} if {vals[0]} != 0"
        if opcode == OpCode.JUMP_IF_FALSE:
            return f"jump to {vals[1]} if {vals[0]} == 0"
        if opcode == OpCode.LESS_THAN:
            return f"{vals[0]} < {vals[1]} => {dp.read_word(dst)} @ {dst}"
        if opcode == OpCode.EQUALS:
            return f"{vals[0]} == {vals[1]} => {dp.read_word(dst)} @ {dst}"
        return f"{vals[0]} => relative base {dp.RB}"

    def _trace(
        self,
        at: int,
        rb: int,
        opcode: OpCode,
        params: list[int],
        modes: tuple[ParamMode, ...],
        vals: list[int],
        dst: int,
    ) -> None:
        if self.trace is None:
            return
        ops = ", ".join(f"{p} mode {m.name}" for p, m in zip(params, modes))
        self.trace.info("[%d, %d] %s (%s) %s", at, rb, opcode.name, ops, self._describe(opcode, vals, dst))

    def run(self) -> tuple[MachineState, str | None]:
        """Execute from address 0 until HALT or a fault.

        Returns the terminal (state, error detail). Terminal signals are sent
        by the caller once the state is published. Raises ChannelClosed at
        the next instruction boundary once the channel set was closed.
        """
        dp = self.dp
        dp.PC = 0
        dp.RB = 0
        while True:
            if self.channels.closed:
                msg = "channels closed"
                raise ChannelClosed(msg)
            at = dp.PC
            try:
                if self.step():
                    logging.debug("HALT encountered at %d after %d steps", at, self.steps)
                    return MachineState.HALTED, None
            except DecodeError as e:
                detail = f"{e} at address {at}"
                logging.debug("ControlUnit: %s", detail)
                return MachineState.ERRORED, detail
            except MemoryFault as e:
                detail = f"{e} @ address {at}"
                logging.debug("ControlUnit: %s", detail)
                return MachineState.ERRORED, detail

    def step(self) -> bool:
        """Execute one instruction; return True on HALT."""
        dp = self.dp
        at, rb = dp.PC, dp.RB
        word = dp.read_next()
        opcode, modes = decode_instr(word)
        params = [dp.read_next() for _ in range(OPERAND_COUNT[opcode])]

        dst = 0
        if opcode in WRITES_RESULT:
            dst = dp.dest_addr(params[-1], modes[-1])
            vals = [dp.operand_value(p, m) for p, m in zip(params[:-1], modes[:-1])]
        else:
            vals = [dp.operand_value(p, m) for p, m in zip(params, modes)]

        if opcode == OpCode.ADD:
            dp.write_word(dst, vals[0] + vals[1])
        elif opcode == OpCode.MUL:
            dp.write_word(dst, vals[0] * vals[1])
        elif opcode == OpCode.INPUT:
            self.channels.signal.put(Signal.INPUT)
            value = int(self.channels.input.get())
            logging.debug("INPUT: got %d -> %d", value, dst)
            dp.write_word(dst, value)
        elif opcode == OpCode.OUTPUT:
            logging.debug("OUTPUT: %d", vals[0])
            self.channels.output.put(vals[0])
        elif opcode == OpCode.JUMP_IF_TRUE:
            if vals[0] != 0:
                dp.PC = vals[1]
        elif opcode == OpCode.JUMP_IF_FALSE:
            if vals[0] == 0:
                dp.PC = vals[1]
        elif opcode == OpCode.LESS_THAN:
            dp.write_word(dst, 1 if vals[0] < vals[1] else 0)
        elif opcode == OpCode.EQUALS:
            dp.write_word(dst, 1 if vals[0] == vals[1] else 0)
        elif opcode == OpCode.ADJUST_BASE:
            dp.RB += vals[0]

        self.steps += 1
        if self.trace is not None:
            self._trace(at, rb, opcode, params, modes, vals, dst)
        return opcode == OpCode.HALT


class Machine:
    """An emulated computer running its ControlUnit on a worker thread.

    The driver talks to a running machine only through `write` and `read`;
    memory is readable again once the machine halted or errored.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        input_buffer: int = 0,
        output_buffer: int = 0,
        trace_file: str | Path | None = None,
        name: str | None = None,
    ) -> None:
        self.input_buffer = int(input_buffer)
        self.output_buffer = int(output_buffer)
        self.trace_file = trace_file
        self.name = name or f"machine-{next(Machine._ids)}"
        self.dp = Datapath()
        self.channels = ChannelSet(self.input_buffer, self.output_buffer)
        self.state = MachineState.IDLE
        self.error: str | None = None
        self.steps = 0
        self._thread: threading.Thread | None = None

    @classmethod
    def from_config(cls, cfg: dict[str, Any] | str | Path | None = None, name: str | None = None) -> Machine:
        cfg = load_config(cfg)
        return cls(
            input_buffer=cfg["input_buffer"],
            output_buffer=cfg["output_buffer"],
            trace_file=cfg["trace_file"],
            name=name,
        )

    def __repr__(self) -> str:
        return f"<Machine {self.name} {self.state.value} pc={self.dp.PC} rb={self.dp.RB} mem={len(self.dp)}>"

    # --- status ---
    @property
    def running(self) -> bool:
        return self.state == MachineState.RUNNING

    @property
    def halted(self) -> bool:
        return self.state == MachineState.HALTED

    @property
    def errored(self) -> bool:
        return self.state == MachineState.ERRORED

    @property
    def finished(self) -> bool:
        return self.state in (MachineState.HALTED, MachineState.ERRORED)

    @property
    def pc(self) -> int:
        return self.dp.PC

    @property
    def relative_base(self) -> int:
        return self.dp.RB

    # --- image / memory access (driver side, never while running) ---
    def load_image(self, image: Iterable[int]) -> None:
        """Seed memory from an ordered sequence of ints."""
        if self.state != MachineState.IDLE:
            msg = f"{self.name}: cannot load a program into a {self.state.value} machine"
            raise MachineError(msg)
        self.dp = Datapath(image)
        logging.debug("%s: loaded %d words", self.name, len(self.dp))

    def load(self, path: str | Path) -> None:
        """Load a program image file; raises LoadError and leaves memory untouched."""
        self.load_image(load_program(path))

    def get(self, addr: int) -> int:
        if self.running:
            msg = f"{self.name}: memory is not accessible while running"
            raise MachineError(msg)
        return self.dp.read_word(addr)

    def set(self, addr: int, value: int) -> None:
        if self.state != MachineState.IDLE:
            msg = f"{self.name}: memory is read-only in a {self.state.value} machine"
            raise MachineError(msg)
        self.dp.write_word(addr, value)

    def dump(self) -> list[int]:
        """Snapshot of the whole memory."""
        if self.running:
            msg = f"{self.name}: memory is not accessible while running"
            raise MachineError(msg)
        return list(self.dp.memory)

    def copy(self) -> Machine:
        """Fork an independent, idle machine from this one's memory and registers."""
        if self.running:
            msg = f"{self.name}: cannot copy a running machine"
            raise MachineError(msg)
        twin = Machine(self.input_buffer, self.output_buffer, self.trace_file)
        twin.dp = self.dp.copy()
        return twin

    def __copy__(self) -> Machine:
        return self.copy()

    def __deepcopy__(self, memo: dict[int, Any]) -> Machine:
        return self.copy()

    # --- lifecycle ---
    def start(self) -> None:
        """Begin executing on a worker thread and return immediately."""
        if self.state != MachineState.IDLE:
            msg = f"{self.name}: cannot start a {self.state.value} machine"
            raise MachineError(msg)
        if not self.dp.memory:
            msg = f"{self.name}: no program loaded"
            raise MachineError(msg)
        self.state = MachineState.RUNNING
        self._thread = threading.Thread(target=self._worker, name=self.name, daemon=True)
        self._thread.start()
        logging.debug("%s: started", self.name)

    def _open_trace(self) -> tuple[logging.Logger | None, logging.Handler | None]:
        if not self.trace_file:
            return None, None
        # private to this run: not registered with logging.getLogger, so
        # machines sharing a name never share handlers
        logger = logging.Logger(f"trace.{self.name}", logging.INFO)
        logger.propagate = False
        fh = logging.FileHandler(self.trace_file, mode="a", encoding="utf-8")
        fh.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(fh)
        return logger, fh

    def _worker(self) -> None:
        trace, handler = None, None
        cu = None
        try:
            trace, handler = self._open_trace()
            cu = ControlUnit(self.dp, self.channels, trace)
            state, detail = cu.run()
        except ChannelClosed:
            logging.debug("%s: aborted, channels closed", self.name)
            self.error = "aborted: channels closed"
            self.state = MachineState.ERRORED
            return
        except Exception as e:
            logging.exception("%s: internal error", self.name)
            state, detail = MachineState.ERRORED, f"Internal error: {e}"
        finally:
            if cu is not None:
                self.steps = cu.steps
            if handler is not None and trace is not None:
                trace.removeHandler(handler)
                handler.close()

        # publish the terminal state before the driver can observe the signal
        self.error = detail
        self.state = state
        try:
            if state == MachineState.HALTED:
                self.channels.signal.put(Signal.HALTED)
            else:
                self.channels.send_error(detail or "unknown error")
        except ChannelClosed:
            logging.debug("%s: channels closed before the terminal signal was sent", self.name)
        # nothing will take input any more; release blocked writers
        self.channels.input.close()

    def wait(self, timeout: float | None = None) -> bool:
        """Join the worker. Returns False if it is still alive after `timeout`."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def close(self) -> None:
        """Tear down the channels.

        A machine blocked on input or output stops abruptly, one that is
        computing stops before its next instruction; either way it ends
        ERRORED. Prefer reading until HALTED/ERRORED before closing.
        """
        self.channels.close()

    # --- driver contract ---
    def write(self, value: int, timeout: float | None = None) -> None:
        """Deliver one input value (blocks per the input channel capacity)."""
        if self.finished:
            msg = f"{self.name}: cannot write to a {self.state.value} machine"
            raise MachineError(msg)
        try:
            self.channels.input.put(int(value), timeout)
        except ChannelClosed as e:
            msg = f"{self.name}: machine stopped before taking the input"
            raise MachineError(msg) from e

    def read(self, timeout: float | None = None) -> tuple[int | None, Signal, str | None]:
        """Return the next (value, signal, error) the machine produced.

        See ChannelSet.read.
        """
        return self.channels.read(timeout)


def create_load(
    path: str | Path, cfg: dict[str, Any] | str | Path | None = None, name: str | None = None
) -> Machine:
    """Create a configured machine and load a program file into it.

    `cfg` is anything load_config accepts.
    """
    m = Machine.from_config(cfg, name=name)
    m.load(path)
    return m


def run_program(
    machine: Machine, inputs: Iterable[int] = (), timeout: float | None = None
) -> tuple[list[int], MachineState]:
    """Start `machine` and drive it to completion.

    Inputs are handed over one by one as the program asks for them.
    Returns (outputs, final state); the error detail, if any, is in
    `machine.error`. Raises MachineError if the program asks for more
    input than was supplied and TimeoutError if a read or write exceeds
    `timeout`; in both cases the machine is closed first.
    """
    pending = deque(int(v) for v in inputs)
    outputs: list[int] = []
    machine.start()
    try:
        while True:
            value, sig, err = machine.read(timeout)
            if sig == Signal.NONE and value is not None:
                outputs.append(value)
            elif sig == Signal.INPUT:
                if not pending:
                    msg = f"{machine.name}: program requested input but none is left"
                    raise MachineError(msg)
                machine.write(pending.popleft(), timeout)
            elif sig == Signal.HALTED:
                break
            elif sig == Signal.ERRORED:
                logging.debug("%s: errored: %s", machine.name, err)
                break
    except (MachineError, TimeoutError):
        logging.debug("%s: driver gave up, closing", machine.name)
        machine.close()
        machine.wait(timeout)
        raise
    machine.wait(timeout)
    return outputs, machine.state


# ---------- CLI ----------
def _parse_address(text: str) -> int:
    try:
        addr = int(text)
    except ValueError as e:
        msg = f"expected an integer address, got {text!r}"
        raise argparse.ArgumentTypeError(msg) from e
    if addr < 0:
        msg = f"Bad address {addr}: must be non-negative"
        raise argparse.ArgumentTypeError(msg)
    return addr


def _parse_assignment(text: str) -> tuple[int, int]:
    addr, sep, value = text.partition("=")
    if not sep:
        msg = f"expected ADDR=VALUE, got {text!r}"
        raise argparse.ArgumentTypeError(msg)
    try:
        return _parse_address(addr), int(value)
    except ValueError as e:
        msg = f"expected integers in {text!r}"
        raise argparse.ArgumentTypeError(msg) from e


def build_arg_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Intcode machine runner. Runs a comma-separated program image.")
    ap.add_argument("program", help="program file (comma-separated integers)")
    ap.add_argument("--input", "-i", type=int, action="append", default=[], help="input value (repeatable)")
    ap.add_argument("--config", help="path to yaml config", default=None)
    ap.add_argument("--trace", help="append an instruction trace to this file", default=None)
    ap.add_argument(
        "--set",
        type=_parse_assignment,
        action="append",
        default=[],
        metavar="ADDR=VALUE",
        help="patch memory before start",
    )
    ap.add_argument("--dump-addr", type=_parse_address, action="append", default=[], help="print memory[ADDR] after the run")
    ap.add_argument("--dump", action="store_true", help="print the final memory image")
    ap.add_argument("--disasm", action="store_true", help="print a disassembly of the program and exit")
    ap.add_argument("--debug", action="store_true", help="enable debug logging to logfile")
    ap.add_argument("--logfile", default=LOGFILE, help="path to processor log")
    ap.add_argument("--console", action="store_true", help="also echo logs to stderr")
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)

    init_logging(logfile=args.logfile if args.debug else None, debug=args.debug, console=args.console)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print("Bad config:", e, file=sys.stderr)
        return 2
    if args.trace:
        cfg["trace_file"] = args.trace

    try:
        machine = create_load(args.program, cfg)
    except LoadError as e:
        print("Bad program:", e, file=sys.stderr)
        return 2

    if args.disasm:
        for line in disassemble(machine.dump()):
            print(line)
        return 0

    for addr, value in args.set:
        machine.set(addr, value)

    try:
        outputs, state = run_program(machine, args.input, timeout=cfg["read_timeout"])
    except (MachineError, TimeoutError) as e:
        print("Run failed:", e, file=sys.stderr)
        return 1

    for v in outputs:
        print(v)
    if state == MachineState.ERRORED:
        print("Program error:", machine.error, file=sys.stderr)
        return 1
    for addr in args.dump_addr:
        print(f"[{addr}] = {machine.get(addr)}")
    if args.dump:
        print(format_program(machine.dump()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
