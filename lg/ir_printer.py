from __future__ import annotations

import json

from . import ir_nodes as lg
from .types import VOID, FunctionReferenceType, PointerType, Type


def format_type(ty: Type) -> str:
    return str(ty)


def format_value(value: lg.Value) -> str:
    ty = format_type(value.type)
    if isinstance(value, lg.Register):
        return f"{ty} %{value.name}"
    if isinstance(value, lg.IntegerConstant):
        return f"{ty} {value.value}"
    if isinstance(value, (lg.FloatConstant, lg.DoubleConstant)):
        return f"{ty} {float(value.value)!r}"
    if isinstance(value, lg.StringConstant):
        return f"{ty} {json.dumps(value.value)}"
    if isinstance(value, lg.NullptrConstant):
        return f"{ty} nullptr"
    if isinstance(value, lg.ArrayConstant):
        elems = ", ".join(format_value(e) for e in value.elements)
        return f"{ty} {{{elems}}}"
    if isinstance(value, lg.GlobalReference):
        return f"{ty} @{value.variable.name}"
    if isinstance(value, lg.FunctionReference):
        # Function references only appear through pointers in the text format.
        return f"i8* @{value.function.name}"
    return "<invalid value>"


def _format_args(values) -> str:
    return ", ".join(format_value(v) for v in values)


def _callee_return_type(value: lg.Value) -> Type:
    ty = value.type
    if isinstance(ty, PointerType):
        ty = ty.base
    if isinstance(ty, FunctionReferenceType):
        return ty.return_type
    return VOID


def _format_callee(value: lg.Value) -> str:
    if isinstance(value, lg.FunctionReference):
        return f"@{value.function.name}"
    if isinstance(value, lg.Register):
        return f"%{value.name}"
    return "<invalid callee>"


def format_instr(instr: lg.Instruction) -> str:
    if isinstance(instr, lg.BinaryOperates):
        return f"  %{instr.target.name} = {instr.op.value} {format_value(instr.operand1)}, {format_value(instr.operand2)}"
    if isinstance(instr, lg.UnaryOperates):
        if instr.target is None:
            return f"  {instr.op.value} {format_value(instr.operand)}"
        return f"  %{instr.target.name} = {instr.op.value} {format_value(instr.operand)}"
    if isinstance(instr, lg.Compare):
        return (
            f"  %{instr.target.name} = cmp {instr.condition.value}, "
            f"{format_value(instr.operand1)}, {format_value(instr.operand2)}"
        )
    if isinstance(instr, lg.ConditionalJump):
        operands = format_value(instr.operand1)
        if instr.operand2 is not None:
            operands += f", {format_value(instr.operand2)}"
        return f"  conditional_jump {instr.condition.value}, {operands}, label {instr.target}"
    if isinstance(instr, lg.Goto):
        return f"  goto label {instr.target}"
    if isinstance(instr, lg.Invoke):
        call = f"invoke {format_type(_callee_return_type(instr.func))} {_format_callee(instr.func)}({_format_args(instr.arguments)})"
        if instr.target is not None:
            return f"  %{instr.target.name} = {call}"
        return f"  {call}"
    if isinstance(instr, lg.Return):
        if instr.value is None:
            return "  return"
        return f"  return {format_value(instr.value)}"
    if isinstance(instr, lg.Load):
        return f"  %{instr.target.name} = load {format_value(instr.ptr)}"
    if isinstance(instr, lg.Store):
        return f"  store {format_value(instr.ptr)}, {format_value(instr.value)}"
    if isinstance(instr, lg.StackAllocate):
        size = f", {format_value(instr.size)}" if instr.size is not None else ""
        return f"  %{instr.target.name} = stack_alloc {format_type(instr.type)}{size}"
    if isinstance(instr, lg.GetElementPointer):
        return f"  %{instr.target.name} = getelementptr {_format_args([instr.ptr, *instr.indices])}"
    if isinstance(instr, lg.TypeCast):
        return (
            f"  %{instr.target.name} = {instr.kind.value} {format_value(instr.source)} "
            f"to {format_type(instr.target_type)}"
        )
    if isinstance(instr, lg.Phi):
        edges = ", ".join(f"[label {pred}, {format_value(v)}]" for pred, v in instr.incoming)
        return f"  %{instr.target.name} = phi {edges}"
    if isinstance(instr, lg.Switch):
        cases = "".join(f", [{format_value(v)}, label {target}]" for v, target in instr.cases)
        return f"  switch {format_value(instr.value)}, label {instr.default}{cases}"
    if isinstance(instr, lg.SetRegister):
        return f"  %{instr.target.name} = set {format_value(instr.value)}"
    if isinstance(instr, lg.Assembly):
        return (
            f"  asm {json.dumps(instr.code)}, {json.dumps(instr.constraints)}"
            f"({_format_args(instr.operands)})"
        )
    if isinstance(instr, lg.Nop):
        return "  nop"
    return "  <invalid instr>"


def format_block(block: lg.BasicBlock) -> str:
    lines = [f"{block.name}:"]
    for instr in block.instructions:
        lines.append(format_instr(instr))
    return "\n".join(lines)


def format_function(fn: lg.Function) -> str:
    params = ", ".join(f"{p.type} %{p.name}" for p in fn.params)
    if fn.is_declaration:
        return f"declare {fn.return_type} @{fn.name}({params})"
    header = f"function {fn.return_type} @{fn.name}({params}) {{"
    blocks = "\n".join(format_block(b) for b in fn.blocks.values())
    return f"{header}\n{blocks}\n}}"


def format_global(var: lg.GlobalVariable) -> str:
    kind = "constant" if var.constant else "global"
    text = f"{kind} @{var.name} : {var.type}"
    if var.initializer is not None:
        text += f" = {format_value(var.initializer)}"
    return text


def format_module(module: lg.Module) -> str:
    parts = [format_global(var) for var in module.globals.values()]
    parts.extend(format_function(fn) for fn in module.functions.values())
    return "\n\n".join(parts) + "\n"
