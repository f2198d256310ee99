#!/usr/bin/env python3
"""
Generate out_code_hex (program listing) for golden YAML files.
Usage: python generate_golden_fields.py path/to/golden.yaml [...]
"""

import os
import sys

import yaml

from config import load_config
from isa import listing
from translator import CompileError, compile_source


def check_golden(doc):
    """Raise ValueError if `doc` is not a well-formed golden record."""
    if not isinstance(doc, dict):
        raise ValueError(f"golden record must be a mapping, got {type(doc).__name__}")
    if not isinstance(doc.get("source"), str):
        raise ValueError("'source' must be a string")
    if not isinstance(doc.get("expect", {}), dict):
        raise ValueError("'expect' must be a mapping")
    if not isinstance(doc.get("input_feeds", []), list):
        raise ValueError("'input_feeds' must be a list")
    load_config(doc.get("config") or {})


def build_code_hex(doc):
    cfg = load_config(doc.get("config") or {})
    program, jumps = compile_source(doc.get("source", ""), optimize=cfg["optimize"], alphabet=cfg["alphabet"])
    return listing(program, jumps)


def main(path):
    if not os.path.exists(path):
        print("File not found:", path)
        sys.exit(2)

    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f) or {}

    if "source" not in doc:
        print("No 'source' found in YAML, nothing to compile")
        sys.exit(2)

    try:
        check_golden(doc)
    except ValueError as e:
        print(f"{path}: {e}")
        sys.exit(2)

    try:
        code_hex = build_code_hex(doc)
    except CompileError as e:
        print(f"{path}: not compilable ({e}); left unchanged")
        return

    doc.setdefault("expect", {})
    doc["expect"]["out_code_hex"] = code_hex + "\n"

    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(doc, f, default_flow_style=False, sort_keys=False, allow_unicode=True)

    print(f"Updated {path} with out_code_hex.")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: generate_golden_fields.py path/to/golden.yaml [...]")
        sys.exit(1)
    for p in sys.argv[1:]:
        main(p)
