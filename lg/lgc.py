#!/usr/bin/env python3
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

from llvmlite import binding as llvm  # type: ignore

from lg import ir_printer, native, parser
from lg.llvm_gen import LLVMIRGenerator, LoweringError


def _default_triple() -> str:
    return llvm.get_default_triple()


def compile_file(
    source_path: Path,
    output_path: Optional[Path],
    triple: Optional[str],
    object_only: bool,
    emit_ir: Optional[Path],
    dump: bool,
    clang: Optional[str],
) -> int:
    module = parser.parse_file(source_path)
    if dump:
        print(f"== LG IR for {source_path} ==", file=sys.stderr)
        print(ir_printer.format_module(module), file=sys.stderr, end="")
    llvm_module = LLVMIRGenerator(module).generate()
    triple = triple or _default_triple()
    llvm_module.triple = triple
    if emit_ir is not None:
        emit_ir.write_text(str(llvm_module))
    elif output_path is None:
        sys.stdout.write(str(llvm_module))
    if output_path is not None:
        native.compile_module(
            llvm_module,
            triple,
            output_path,
            kind="object" if object_only else None,
            clang=clang,
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(description="lgc: LG IR -> LLVM IR -> native code")
    ap.add_argument("source", type=Path, help="LG IR source file")
    ap.add_argument("-o", "--output", type=Path, help="Native output (object file or executable)")
    ap.add_argument("--target", help="Target triple (default: the host triple)")
    ap.add_argument("-c", dest="object_only", action="store_true", help="Emit an object file instead of an executable")
    ap.add_argument("--emit-ir", type=Path, metavar="PATH", help="Write the generated LLVM IR to PATH")
    ap.add_argument("--dump", action="store_true", help="Dump the parsed LG IR to stderr before lowering")
    ap.add_argument("--clang", help=f"clang driver to use (default: ${native.CLANG_ENV_VAR}, then PATH)")
    ap.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(name)s: %(levelname)s: %(message)s",
    )

    try:
        return compile_file(
            args.source,
            args.output,
            args.target,
            args.object_only,
            args.emit_ir,
            args.dump,
            args.clang,
        )
    except (parser.ParseError, LoweringError, native.NativeCompileError, OSError) as e:
        print(f"{args.source}: error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
