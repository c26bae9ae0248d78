#!/usr/bin/env python3
"""
Fill the `expect` section (state, outputs, error) of a golden YAML by
running its program.
Usage: python generate_golden_fields.py path/to/golden.yaml
"""

import os
import sys

import yaml

from loader import LoadError, parse_program
from processor import Machine, MachineError, run_program

TIMEOUT = 30


def run_golden(doc):
    machine = Machine()
    machine.load_image(parse_program(str(doc["program"])))
    for addr, value in (doc.get("set") or {}).items():
        machine.set(int(addr), int(value))
    outputs, state = run_program(machine, doc.get("inputs") or [], timeout=TIMEOUT)
    return machine, outputs, state


def main(path):
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}

    if "program" not in doc:
        print("No 'program' found in YAML - nothing to run")
        sys.exit(2)

    try:
        machine, outputs, state = run_golden(doc)
    except (LoadError, MachineError, TimeoutError) as e:
        print("Run failed:", e)
        sys.exit(1)

    target = doc.setdefault("expect", {})
    target["state"] = state.value
    if outputs:
        target["outputs"] = outputs
    if machine.error is not None:
        target["error"] = machine.error
    else:
        target.pop("error", None)

    # existing memory expectations are refreshed, never invented
    for addr in list(target.get("memory") or {}):
        target["memory"][addr] = machine.get(int(addr))

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=None, sort_keys=False, allow_unicode=True)

    print(f"Updated {path}: state={state.value} outputs={len(outputs)}")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml")
        sys.exit(1)
    main(sys.argv[1])
