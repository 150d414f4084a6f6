"""
Native emission: write the lowered module as textual LLVM IR next to the
requested output and let clang turn it into an object file or executable.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from llvmlite import ir  # type: ignore

logger = logging.getLogger(__name__)

IR_SUFFIX = ".ll"
CLANG_ENV_VAR = "LG_CLANG"
CLANG_NAMES = ("clang-15", "clang")
DEFAULT_CLANG = "clang"
OBJECT_SUFFIXES = frozenset({".o", ".obj"})


class NativeCompileError(Exception):
    def __init__(self, message: str, result: Optional["CompileResult"] = None) -> None:
        super().__init__(message)
        self.result = result


class EmissionState(Enum):
    IDLE = "idle"
    SERIALIZED = "serialized"
    INVOKED = "invoked"
    CLEANED = "cleaned"
    CLEANUP_FAILED = "cleanup-failed"


@dataclass
class CompileResult:
    output: Path
    ir_path: Path
    command: List[str] = field(default_factory=list)
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    state: EmissionState = EmissionState.IDLE


def find_clang() -> str:
    """Resolve the clang driver: $LG_CLANG, then PATH lookup, then the bare name."""
    override = os.environ.get(CLANG_ENV_VAR)
    if override:
        return override
    for name in CLANG_NAMES:
        path = shutil.which(name)
        if path:
            return path
    return DEFAULT_CLANG


def ir_path_for(output: Path) -> Path:
    return output.with_name(output.name + IR_SUFFIX)


def artifact_kind(output: Path) -> str:
    return "object" if output.suffix in OBJECT_SUFFIXES else "executable"


def build_command(clang: str, triple: str, ir_path: Path, output: Path, kind: str) -> List[str]:
    cmd = [clang, f"--target={triple}", "-x", "ir", str(ir_path)]
    if kind == "object":
        cmd.append("-c")
    cmd.extend(["-o", str(output)])
    return cmd


def compile_module(
    llvm_module: ir.Module,
    triple: str,
    output: Union[str, Path],
    *,
    kind: Optional[str] = None,
    clang: Optional[str] = None,
) -> CompileResult:
    """
    Emit `llvm_module` as a native artifact at `output`.

    The textual IR goes to `<output>.ll`, which is removed once clang has run
    (a failed removal is only logged). A non-zero clang exit status raises
    `NativeCompileError` carrying the result.
    """
    output = Path(output)
    kind = kind or artifact_kind(output)
    if kind not in ("object", "executable"):
        raise ValueError(f"unknown artifact kind {kind!r}")
    llvm_module.triple = triple
    result = CompileResult(output=output, ir_path=ir_path_for(output))

    try:
        try:
            with result.ir_path.open("w") as fh:
                fh.write(str(llvm_module))
                fh.flush()
        except OSError as e:
            raise NativeCompileError(f"failed to write file: {result.ir_path}: {e}", result) from e
        result.state = EmissionState.SERIALIZED

        driver = clang or find_clang()
        result.command = build_command(driver, triple, result.ir_path, output, kind)
        logger.info("running %s", " ".join(result.command))
        try:
            proc = subprocess.run(result.command, capture_output=True, text=True)
        except OSError as e:
            raise NativeCompileError(f"failed to run {driver}: {e}", result) from e
        result.state = EmissionState.INVOKED
        result.returncode = proc.returncode
        result.stdout = proc.stdout
        result.stderr = proc.stderr
    finally:
        _remove_ir_file(result)

    if result.returncode != 0:
        raise NativeCompileError(f"clang failed: {result.stderr.strip()}", result)
    return result


def _remove_ir_file(result: CompileResult) -> None:
    if not result.ir_path.exists():
        result.state = EmissionState.CLEANED
        return
    try:
        result.ir_path.unlink()
    except OSError as e:
        logger.warning("failed to remove file %s: %s", result.ir_path, e)
        result.state = EmissionState.CLEANUP_FAILED
        return
    result.state = EmissionState.CLEANED
