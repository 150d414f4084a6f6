"""
LG IR → LLVM IR lowering (llvmlite object model).

The generator walks one `lg.ir_nodes.Module` in two passes:

  - declaration pass: every global (type only) and every function (signature
    and parameter names) is materialized first, so initializers and bodies can
    refer to symbols that appear later in the module;
  - definition pass: global initializers are attached, then each function
    body is lowered. All basic blocks of a function are created (empty, in
    declared order) before any instruction is lowered, so branches, phis and
    switches may target blocks defined further down.

Conditional jumps name only their taken edge. The not-taken edge is the
block created immediately after the current one, which makes block creation
order part of the semantics.

Register and block bindings live in a `FunctionScope` that exists only while
one function body is lowered.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from llvmlite import ir  # type: ignore

from . import ir_nodes as lg
from .ir_nodes import BinaryOperator, CastKind, Condition, UnaryOperator
from .types import (
    ArrayType,
    DoubleType,
    FloatType,
    FunctionReferenceType,
    IntegerType,
    PointerType,
    Type,
    VoidType,
    is_floating,
    is_integer,
    is_unsigned,
)

logger = logging.getLogger(__name__)

I8P = ir.IntType(8).as_pointer()
I32_TY = ir.IntType(32)


class LoweringError(Exception):
    pass


class UnsupportedTypeError(LoweringError):
    pass


class UnsupportedOperationError(LoweringError):
    pass


class MalformedGlobalInitializerError(LoweringError):
    pass


class MalformedSwitchCaseError(LoweringError):
    pass


# Types ------------------------------------------------------------------------


def lower_type(ty: Type) -> ir.Type:
    """Map an LG IR type onto its llvmlite type.

    - Integer(n, signed/unsigned) → iN (signedness is not part of LLVM types)
    - float → float, double → double, void → void
    - T* → T* (void* becomes i8*)
    - [N x T] → [N x T]
    """
    if isinstance(ty, IntegerType):
        return ir.IntType(ty.size)
    if isinstance(ty, FloatType):
        return ir.FloatType()
    if isinstance(ty, DoubleType):
        return ir.DoubleType()
    if isinstance(ty, VoidType):
        return ir.VoidType()
    if isinstance(ty, PointerType):
        if isinstance(ty.base, VoidType):
            return I8P
        return lower_type(ty.base).as_pointer()
    if isinstance(ty, ArrayType):
        return ir.ArrayType(lower_type(ty.base), ty.length)
    raise UnsupportedTypeError(f"unsupported type {ty}")


def lower_signature(return_type: Type, param_types: Sequence[Type]) -> ir.FunctionType:
    return ir.FunctionType(lower_type(return_type), [lower_type(p) for p in param_types])


def integer_value(ty: IntegerType, value: int) -> int:
    """Truncate `value` to `ty.size` bits, read back as signed or unsigned."""
    bits = ty.size
    raw = int(value) & ((1 << bits) - 1)
    if not ty.unsigned and bits > 1 and raw >> (bits - 1):
        raw -= 1 << bits
    return raw


# Predicates -------------------------------------------------------------------

_COMPARE_OPS: Dict[Condition, str] = {
    Condition.E: "==",
    Condition.NE: "!=",
    Condition.L: "<",
    Condition.LE: "<=",
    Condition.G: ">",
    Condition.GE: ">=",
}


def select_predicate(condition: Condition, ty: Type) -> Tuple[str, str]:
    """
    Pick the IRBuilder compare method and operator for `condition` on operands
    of static type `ty`.

    Integers compare signed or unsigned by their type. Floats use ordered
    predicates for E/NE and unordered ones for the relational conditions.
    Pointers compare as unsigned integers.
    """
    op = _COMPARE_OPS.get(condition)
    if op is None:
        raise UnsupportedOperationError(f"unsupported condition {condition.value}")
    if isinstance(ty, IntegerType):
        return ("icmp_unsigned" if is_unsigned(ty) else "icmp_signed", op)
    if is_floating(ty):
        if condition in (Condition.E, Condition.NE):
            return ("fcmp_ordered", op)
        return ("fcmp_unordered", op)
    if isinstance(ty, PointerType):
        return ("icmp_unsigned", op)
    raise UnsupportedTypeError(f"cannot compare values of type {ty}")


# Function scope ---------------------------------------------------------------


@dataclass
class _PendingPhi:
    node: ir.PhiInstr
    incoming: List[Tuple[str, lg.Value]]


@dataclass
class FunctionScope:
    """Per-function lowering state, discarded once the body is lowered."""

    function: lg.Function
    llvm_function: ir.Function
    blocks: Dict[str, ir.Block] = field(default_factory=dict)
    order: List[str] = field(default_factory=list)
    registers: Dict[str, ir.Value] = field(default_factory=dict)
    phis: List[_PendingPhi] = field(default_factory=list)
    builder: Optional[ir.IRBuilder] = None
    current: Optional[str] = None

    def create_block(self, name: str) -> ir.Block:
        block = self.llvm_function.append_basic_block(name=name)
        self.blocks[name] = block
        self.order.append(name)
        return block

    def block(self, name: str) -> ir.Block:
        try:
            return self.blocks[name]
        except KeyError:
            raise LoweringError(f"unknown block {name} in function {self.function.name}") from None

    def fallthrough(self) -> Optional[ir.Block]:
        """Block created right after the current one, if any."""
        assert self.current is not None
        idx = self.order.index(self.current) + 1
        if idx < len(self.order):
            return self.blocks[self.order[idx]]
        return None

    def bind(self, register: lg.Register, value: ir.Value) -> None:
        if register.name in self.registers:
            raise LoweringError(f"register %{register.name} assigned twice in function {self.function.name}")
        self.registers[register.name] = value

    def lookup(self, register: lg.Register) -> ir.Value:
        try:
            return self.registers[register.name]
        except KeyError:
            raise LoweringError(
                f"register %{register.name} read before it is defined in function {self.function.name}"
            ) from None


# Generator --------------------------------------------------------------------


class LLVMIRGenerator:
    """Lower one LG IR module into an `llvmlite.ir.Module`.

    Instances are single-use lowering sessions: all symbol maps belong to the
    instance, so separate instances never observe each other's state.
    """

    def __init__(self, module: lg.Module, llvm_module: Optional[ir.Module] = None) -> None:
        self.module = module
        self.llvm_module = llvm_module if llvm_module is not None else ir.Module(name=module.name)
        self.global_map: Dict[str, ir.GlobalVariable] = {}
        self.function_map: Dict[str, ir.Function] = {}

    def generate(self) -> ir.Module:
        logger.debug("declaration pass: %d globals, %d functions", len(self.module.globals), len(self.module.functions))
        self._declare_globals()
        self._declare_functions()
        logger.debug("definition pass")
        self._define_globals()
        for fn in self.module.functions.values():
            if not fn.is_declaration:
                self._define_function(fn)
        return self.llvm_module

    # Declaration pass ---------------------------------------------------------

    def _declare_globals(self) -> None:
        for name, var in self.module.globals.items():
            gv = ir.GlobalVariable(self.llvm_module, lower_type(var.type), name=name)
            gv.global_constant = var.constant
            self.global_map[name] = gv

    def _declare_functions(self) -> None:
        for name, fn in self.module.functions.items():
            fn_ty = lower_signature(fn.return_type, [p.type for p in fn.params])
            llvm_fn = ir.Function(self.llvm_module, fn_ty, name=name)
            for arg, param in zip(llvm_fn.args, fn.params):
                arg.name = param.name
            self.function_map[name] = llvm_fn

    # Definition pass ----------------------------------------------------------

    def _define_globals(self) -> None:
        for name, var in self.module.globals.items():
            gv = self.global_map[name]
            if var.initializer is None:
                gv.initializer = ir.Constant(gv.value_type, None)
                continue
            if isinstance(var.initializer, lg.Register):
                raise MalformedGlobalInitializerError(
                    f"initializer of global @{name} is register %{var.initializer.name}, not a constant"
                )
            init = self.lower_constant(var.initializer)
            if not isinstance(init, (ir.Constant, ir.GlobalValue)):
                raise MalformedGlobalInitializerError(f"initializer of global @{name} is not a constant")
            if init.type != gv.value_type:
                if isinstance(init.type, ir.PointerType) and isinstance(gv.value_type, ir.PointerType):
                    init = init.bitcast(gv.value_type)
                else:
                    raise MalformedGlobalInitializerError(
                        f"initializer of global @{name} has type {init.type}, expected {gv.value_type}"
                    )
            gv.initializer = init

    def _define_function(self, fn: lg.Function) -> None:
        scope = FunctionScope(function=fn, llvm_function=self.function_map[fn.name])
        for param, arg in zip(fn.params, scope.llvm_function.args):
            scope.bind(param, arg)
        for block_name in fn.blocks:
            scope.create_block(block_name)
        logger.debug("defining %s (%d blocks)", fn.name, len(scope.order))

        for block_name, block in fn.blocks.items():
            scope.current = block_name
            scope.builder = ir.IRBuilder(scope.blocks[block_name])
            for instr in block.instructions:
                if scope.builder.block.is_terminated and not isinstance(instr, lg.Nop):
                    raise LoweringError(f"instruction after terminator in block {block_name} of function {fn.name}")
                self._lower_instruction(instr, scope)
            if not block.is_terminated:
                nxt = scope.fallthrough()
                if nxt is None:
                    raise LoweringError(f"block {block_name} falls off the end of function {fn.name}")
                scope.builder.branch(nxt)

        # Incoming values may come from back edges, so phis are completed last.
        for pending in scope.phis:
            for pred_name, value in pending.incoming:
                pending.node.add_incoming(self._lower_value(value, scope), scope.block(pred_name))

    # Values -------------------------------------------------------------------

    def _lower_value(self, value: lg.Value, scope: Optional[FunctionScope]) -> ir.Value:
        if isinstance(value, lg.Register):
            if scope is None:
                raise LoweringError(f"register %{value.name} used outside of a function body")
            return scope.lookup(value)
        return self.lower_constant(value)

    def lower_constant(self, value: lg.Value) -> ir.Value:
        """Materialize a constant (or symbol reference); needs no function scope."""
        if isinstance(value, lg.IntegerConstant):
            if not isinstance(value.type, IntegerType):
                raise UnsupportedTypeError(f"integer constant of type {value.type}")
            return ir.Constant(ir.IntType(value.type.size), integer_value(value.type, value.value))
        if isinstance(value, lg.FloatConstant):
            return ir.Constant(ir.FloatType(), float(value.value))
        if isinstance(value, lg.DoubleConstant):
            return ir.Constant(ir.DoubleType(), float(value.value))
        if isinstance(value, lg.StringConstant):
            return self._string_constant(value.value)
        if isinstance(value, lg.NullptrConstant):
            if not isinstance(value.type, PointerType):
                raise UnsupportedTypeError(f"nullptr of non-pointer type {value.type}")
            return ir.Constant(lower_type(value.type), None)
        if isinstance(value, lg.ArrayConstant):
            elements = [self.lower_constant(e) for e in value.elements]
            return ir.Constant(lower_type(value.type), elements)
        if isinstance(value, lg.GlobalReference):
            gv = self.global_map.get(value.variable.name)
            if gv is None:
                raise LoweringError(f"reference to undeclared global @{value.variable.name}")
            return gv
        if isinstance(value, lg.FunctionReference):
            fn = self.function_map.get(value.function.name)
            if fn is None:
                raise LoweringError(f"reference to undeclared function @{value.function.name}")
            return fn
        if isinstance(value, lg.Register):
            raise LoweringError(f"register %{value.name} is not a constant")
        raise UnsupportedOperationError(f"unsupported value {value!r}")

    def _string_constant(self, text: str) -> ir.Value:
        data = bytearray(text.encode("utf-8"))
        data.append(0)
        arr_ty = ir.ArrayType(ir.IntType(8), len(data))
        gv = ir.GlobalVariable(self.llvm_module, arr_ty, name=self.llvm_module.get_unique_name(".str"))
        gv.linkage = "internal"
        gv.global_constant = True
        gv.initializer = ir.Constant(arr_ty, data)
        zero = ir.Constant(I32_TY, 0)
        return gv.gep([zero, zero])

    # Instructions -------------------------------------------------------------

    def _lower_instruction(self, instr: lg.Instruction, scope: FunctionScope) -> None:
        if isinstance(instr, lg.BinaryOperates):
            self._lower_binary(instr, scope)
        elif isinstance(instr, lg.UnaryOperates):
            self._lower_unary(instr, scope)
        elif isinstance(instr, lg.Compare):
            value = self._emit_compare(instr.condition, instr.operand1, instr.operand2, scope, instr.target.name)
            scope.bind(instr.target, value)
        elif isinstance(instr, lg.ConditionalJump):
            self._lower_conditional_jump(instr, scope)
        elif isinstance(instr, lg.Goto):
            scope.builder.branch(scope.block(instr.target))
        elif isinstance(instr, lg.Invoke):
            self._lower_invoke(instr, scope)
        elif isinstance(instr, lg.Return):
            if instr.value is None:
                scope.builder.ret_void()
            else:
                scope.builder.ret(self._lower_value(instr.value, scope))
        elif isinstance(instr, lg.Load):
            elem_ty = lower_type(_pointee(instr.ptr.type, "load"))
            ptr = self._lower_value(instr.ptr, scope)
            scope.bind(instr.target, scope.builder.load(ptr, name=instr.target.name, typ=elem_ty))
        elif isinstance(instr, lg.Store):
            ptr = self._lower_value(instr.ptr, scope)
            value = self._lower_value(instr.value, scope)
            scope.builder.store(value, ptr)
        elif isinstance(instr, lg.StackAllocate):
            ty = lower_type(instr.type)
            size = self._lower_value(instr.size, scope) if instr.size is not None else None
            scope.bind(instr.target, scope.builder.alloca(ty, size=size, name=instr.target.name))
        elif isinstance(instr, lg.GetElementPointer):
            elem_ty = lower_type(_pointee(instr.ptr.type, "getelementptr"))
            base = self._lower_value(instr.ptr, scope)
            indices = [self._lower_value(idx, scope) for idx in instr.indices]
            scope.bind(instr.target, scope.builder.gep(base, indices, name=instr.target.name, source_etype=elem_ty))
        elif isinstance(instr, lg.TypeCast):
            scope.bind(instr.target, self._lower_cast(instr, scope))
        elif isinstance(instr, lg.Phi):
            self._lower_phi(instr, scope)
        elif isinstance(instr, lg.Switch):
            self._lower_switch(instr, scope)
        elif isinstance(instr, lg.SetRegister):
            scope.bind(instr.target, self._lower_value(instr.value, scope))
        elif isinstance(instr, lg.Assembly):
            args = [self._lower_value(op, scope) for op in instr.operands]
            fn_ty = ir.FunctionType(ir.VoidType(), [a.type for a in args])
            scope.builder.asm(fn_ty, instr.code, instr.constraints, args, side_effect=True)
        elif isinstance(instr, lg.Nop):
            pass
        else:
            raise UnsupportedOperationError(f"unsupported instruction: {instr!r}")

    def _lower_binary(self, instr: lg.BinaryOperates, scope: FunctionScope) -> None:
        lhs = self._lower_value(instr.operand1, scope)
        rhs = self._lower_value(instr.operand2, scope)
        ty = instr.operand1.type
        builder = scope.builder
        name = instr.target.name
        floating = is_floating(ty)
        op = instr.op
        if op is BinaryOperator.ADD:
            result = builder.fadd(lhs, rhs, name=name) if floating else builder.add(lhs, rhs, name=name)
        elif op is BinaryOperator.SUB:
            result = builder.fsub(lhs, rhs, name=name) if floating else builder.sub(lhs, rhs, name=name)
        elif op is BinaryOperator.MUL:
            result = builder.fmul(lhs, rhs, name=name) if floating else builder.mul(lhs, rhs, name=name)
        elif op is BinaryOperator.DIV:
            if is_integer(ty):
                div = builder.udiv if is_unsigned(ty) else builder.sdiv
                result = div(lhs, rhs, name=name)
            elif floating:
                result = builder.fdiv(lhs, rhs, name=name)
            else:
                raise UnsupportedTypeError(f"div on values of type {ty}")
        elif op is BinaryOperator.MOD:
            if is_integer(ty):
                rem = builder.urem if is_unsigned(ty) else builder.srem
                result = rem(lhs, rhs, name=name)
            elif floating:
                result = builder.frem(lhs, rhs, name=name)
            else:
                raise UnsupportedTypeError(f"mod on values of type {ty}")
        elif op is BinaryOperator.AND:
            result = builder.and_(lhs, rhs, name=name)
        elif op is BinaryOperator.OR:
            result = builder.or_(lhs, rhs, name=name)
        elif op is BinaryOperator.XOR:
            result = builder.xor(lhs, rhs, name=name)
        elif op is BinaryOperator.SHL:
            result = builder.shl(lhs, rhs, name=name)
        elif op is BinaryOperator.SHR:
            if is_unsigned(ty):
                result = builder.lshr(lhs, rhs, name=name)
            else:
                result = builder.ashr(lhs, rhs, name=name)
        elif op is BinaryOperator.USHR:
            result = builder.lshr(lhs, rhs, name=name)
        else:
            raise UnsupportedOperationError(f"unsupported operator {op}")
        scope.bind(instr.target, result)

    def _lower_unary(self, instr: lg.UnaryOperates, scope: FunctionScope) -> None:
        builder = scope.builder
        op = instr.op
        if op in (UnaryOperator.INC, UnaryOperator.DEC):
            elem_ty = _pointee(instr.operand.type, op.value)
            ll_elem = lower_type(elem_ty)
            ptr = self._lower_value(instr.operand, scope)
            current = builder.load(ptr, typ=ll_elem)
            if is_floating(elem_ty):
                one = ir.Constant(ll_elem, 1.0)
                updated = builder.fadd(current, one) if op is UnaryOperator.INC else builder.fsub(current, one)
            else:
                one = ir.Constant(ll_elem, 1)
                updated = builder.add(current, one) if op is UnaryOperator.INC else builder.sub(current, one)
            builder.store(updated, ptr)
            return
        if instr.target is None:
            raise LoweringError(f"{op.value} requires a target register")
        operand = self._lower_value(instr.operand, scope)
        name = instr.target.name
        if op is UnaryOperator.NOT:
            result = builder.not_(operand, name=name)
        elif op is UnaryOperator.NEG:
            if is_floating(instr.operand.type):
                result = builder.fneg(operand, name=name)
            else:
                result = builder.neg(operand, name=name)
        else:
            raise UnsupportedOperationError(f"unsupported unary operator {op}")
        scope.bind(instr.target, result)

    def _emit_compare(
        self,
        condition: Condition,
        operand1: lg.Value,
        operand2: lg.Value,
        scope: FunctionScope,
        name: str = "",
    ) -> ir.Value:
        method, op = select_predicate(condition, operand1.type)
        lhs = self._lower_value(operand1, scope)
        rhs = self._lower_value(operand2, scope)
        return getattr(scope.builder, method)(op, lhs, rhs, name=name)

    def _lower_conditional_jump(self, instr: lg.ConditionalJump, scope: FunctionScope) -> None:
        taken = scope.block(instr.target)
        not_taken = scope.fallthrough()
        if not_taken is None:
            raise LoweringError(
                f"conditional jump in last block {scope.current} of {scope.function.name} has no fallthrough block"
            )
        builder = scope.builder
        if instr.condition in (Condition.IF_TRUE, Condition.IF_FALSE):
            cond = self._lower_value(instr.operand1, scope)
            if instr.condition is Condition.IF_FALSE:
                cond = builder.not_(cond)
        else:
            if instr.operand2 is None:
                raise LoweringError(f"conditional jump on {instr.condition.value} needs two operands")
            cond = self._emit_compare(instr.condition, instr.operand1, instr.operand2, scope)
        builder.cbranch(cond, taken, not_taken)

    def _lower_invoke(self, instr: lg.Invoke, scope: FunctionScope) -> None:
        sig = instr.func.type
        if isinstance(sig, PointerType):
            sig = sig.base
        if not isinstance(sig, FunctionReferenceType):
            raise UnsupportedTypeError(f"callee of type {instr.func.type} is not a function")
        callee = self._lower_value(instr.func, scope)
        args = [self._lower_value(arg, scope) for arg in instr.arguments]
        returns_value = not isinstance(sig.return_type, VoidType)
        name = instr.target.name if instr.target is not None and returns_value else ""
        result = scope.builder.call(callee, args, name=name)
        if instr.target is not None and returns_value:
            scope.bind(instr.target, result)

    def _lower_cast(self, instr: lg.TypeCast, scope: FunctionScope) -> ir.Value:
        value = self._lower_value(instr.source, scope)
        to_ty = lower_type(instr.target_type)
        builder = scope.builder
        name = instr.target.name
        kind = instr.kind
        if kind is CastKind.ZEXT:
            return builder.zext(value, to_ty, name=name)
        if kind is CastKind.SEXT:
            return builder.sext(value, to_ty, name=name)
        if kind is CastKind.TRUNC:
            return builder.trunc(value, to_ty, name=name)
        if kind is CastKind.ITOF:
            if is_unsigned(instr.source.type):
                return builder.uitofp(value, to_ty, name=name)
            return builder.sitofp(value, to_ty, name=name)
        if kind is CastKind.FTOI:
            if is_unsigned(instr.target_type):
                return builder.fptoui(value, to_ty, name=name)
            return builder.fptosi(value, to_ty, name=name)
        if kind is CastKind.INTTOPTR:
            return builder.inttoptr(value, to_ty, name=name)
        if kind is CastKind.PTRTOINT:
            return builder.ptrtoint(value, to_ty, name=name)
        if kind in (CastKind.PTRTOPTR, CastKind.BITCAST):
            return builder.bitcast(value, to_ty, name=name)
        if kind is CastKind.FEXT:
            return builder.fpext(value, to_ty, name=name)
        if kind is CastKind.FTRUNC:
            return builder.fptrunc(value, to_ty, name=name)
        raise UnsupportedOperationError(f"unsupported cast kind {kind}")

    def _lower_phi(self, instr: lg.Phi, scope: FunctionScope) -> None:
        if not instr.incoming:
            raise LoweringError(f"phi %{instr.target.name} has no incoming values")
        ty = lower_type(instr.incoming[0][1].type)
        for pred_name, _ in instr.incoming:
            scope.block(pred_name)
        node = scope.builder.phi(ty, name=instr.target.name)
        scope.bind(instr.target, node)
        scope.phis.append(_PendingPhi(node=node, incoming=list(instr.incoming)))

    def _lower_switch(self, instr: lg.Switch, scope: FunctionScope) -> None:
        value = self._lower_value(instr.value, scope)
        switch = scope.builder.switch(value, scope.block(instr.default))
        for case_value, target in instr.cases:
            if isinstance(case_value, lg.Register):
                raise MalformedSwitchCaseError(f"switch case %{case_value.name} is not an integer literal")
            const = self.lower_constant(case_value)
            if not (isinstance(const.type, ir.IntType) and isinstance(getattr(const, "constant", None), int)):
                raise MalformedSwitchCaseError(f"switch case {case_value!r} is not an integer literal")
            switch.add_case(const, scope.block(target))


def _pointee(ty: Type, what: str) -> Type:
    if not isinstance(ty, PointerType):
        raise UnsupportedTypeError(f"{what} expects a pointer operand, got {ty}")
    return ty.base


def lower_module(module: lg.Module) -> ir.Module:
    """Lower `module` with a fresh generator."""
    return LLVMIRGenerator(module).generate()
