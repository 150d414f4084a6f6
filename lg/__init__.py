"""
lg package: LG IR → LLVM IR backend.

Modules:
  types, ir_nodes: the LG IR object model
  parser, ir_printer: LG IR text in and out
  llvm_gen: lowering onto llvmlite.ir
  native: clang-driven object/executable emission
  lgc: command-line driver
"""

__all__ = ["types", "ir_nodes", "parser", "ir_printer", "llvm_gen", "native", "lgc"]
