"""
LG IR text → `lg.ir_nodes.Module`.

Example:

    declare i32 @puts(i8* %s)

    function i32 @main() {
    entry:
        %1 = add i32 1, i32 2
        %2 = cmp le, i32 %1, i32 3
        conditional_jump if_false, i1 %2, label exit
        %3 = invoke i32 @puts(i8* "small")
    exit:
        return i32 %1
    }

Symbols (`@name`) may be used before their definition: all globals and
function signatures are collected before any initializer or body is built.
"""

from __future__ import annotations

import ast
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from lark import Lark, Token, Tree
from lark.exceptions import LarkError, UnexpectedInput

from . import ir_nodes as lg
from .ir_nodes import BinaryOperator, CastKind, Condition, UnaryOperator
from .types import (
    F32,
    F64,
    I1,
    VOID,
    ArrayType,
    DoubleType,
    FloatType,
    FunctionReferenceType,
    IntegerType,
    PointerType,
    Type,
    VoidType,
    array_of,
    pointer_to,
)

_GRAMMAR_PATH = Path(__file__).with_name("grammar.lark")
_GRAMMAR_SRC = _GRAMMAR_PATH.read_text()

_PARSER = Lark(
    _GRAMMAR_SRC,
    parser="lalr",
    start="module",
    propagate_positions=True,
    maybe_placeholders=False,
)


class ParseError(Exception):
    pass


def parse_module(source: str, name: str = "") -> lg.Module:
    try:
        tree = _PARSER.parse(source)
    except UnexpectedInput as e:
        raise ParseError(f"{e.line}:{e.column}: {e.__class__.__name__}: {_first_line(str(e))}") from e
    except LarkError as e:
        raise ParseError(str(e)) from e
    return _ModuleBuilder(name).build(tree)


def parse_file(path: Path) -> lg.Module:
    return parse_module(Path(path).read_text(), name=Path(path).stem)


def _first_line(text: str) -> str:
    return text.strip().splitlines()[0] if text.strip() else text


def _name(tree: Tree) -> str:
    return tree.data if isinstance(tree.data, str) else tree.data.value


def _trees(tree: Tree, kind: Optional[str] = None) -> List[Tree]:
    return [c for c in tree.children if isinstance(c, Tree) and (kind is None or _name(c) == kind)]


def _loc(tree: Tree) -> str:
    line = getattr(tree.meta, "line", None)
    return f"{line}: " if line is not None else ""


def _register_name(token: Token) -> str:
    return str(token)[1:]


def _global_name(token: Token) -> str:
    return str(token)[1:]


def _function_name(token: Token) -> str:
    # Function headers accept both `@name` and a bare `name`.
    text = str(token)
    return text[1:] if text.startswith("@") else text


def _build_type(tree: Tree) -> Type:
    kind = _name(tree)
    if kind == "int_type":
        text = str(tree.children[0])
        size = int(text[1:])
        if size <= 0:
            raise ParseError(f"{_loc(tree)}invalid integer width in {text}")
        return IntegerType(size, unsigned=text[0] == "u")
    if kind == "float_type":
        return F32
    if kind == "double_type":
        return F64
    if kind == "void_type":
        return VOID
    if kind == "pointer_type":
        return pointer_to(_build_type(tree.children[0]))
    if kind == "array_type":
        length = int(tree.children[0])
        return array_of(_build_type(tree.children[1]), length)
    raise ParseError(f"{_loc(tree)}expected a type, got {kind}")


def _gep_result_type(ptr_ty: Type, index_count: int) -> Type:
    if not isinstance(ptr_ty, PointerType):
        return ptr_ty
    current = ptr_ty.base
    for _ in range(index_count - 1):
        if isinstance(current, ArrayType):
            current = current.base
    return pointer_to(current)


class _ModuleBuilder:
    def __init__(self, name: str) -> None:
        self.module = lg.Module(name=name)

    def build(self, tree: Tree) -> lg.Module:
        pending_globals: List[Tuple[lg.GlobalVariable, Optional[Tree]]] = []
        pending_bodies: List[Tuple[lg.Function, List[Tree]]] = []
        for item in _trees(tree):
            kind = _name(item)
            if kind == "global_def":
                pending_globals.append(self._declare_global(item))
            elif kind in ("function_def", "function_decl"):
                fn = self._declare_function(item)
                if kind == "function_def":
                    pending_bodies.append((fn, _trees(item, "block")))
        for var, init in pending_globals:
            if init is not None:
                var.initializer = self._build_value(init)
        for fn, blocks in pending_bodies:
            self._build_body(fn, blocks)
        return self.module

    # Declarations -------------------------------------------------------------

    def _check_symbol(self, name: str, tree: Tree) -> None:
        if name in self.module.globals or name in self.module.functions:
            raise ParseError(f"{_loc(tree)}duplicate symbol @{name}")

    def _declare_global(self, tree: Tree) -> Tuple[lg.GlobalVariable, Optional[Tree]]:
        kind_tok, name_tok = tree.children[0], tree.children[1]
        name = _global_name(name_tok)
        self._check_symbol(name, tree)
        ty = _build_type(tree.children[2])
        init = tree.children[3] if len(tree.children) > 3 else None
        var = self.module.add_global(lg.GlobalVariable(name=name, type=ty, constant=str(kind_tok) == "constant"))
        return var, init

    def _declare_function(self, tree: Tree) -> lg.Function:
        ret_ty = _build_type(tree.children[0])
        name = _function_name(tree.children[1])
        self._check_symbol(name, tree)
        params: List[lg.Register] = []
        for params_tree in _trees(tree, "params"):
            for param in _trees(params_tree, "param"):
                params.append(lg.Register(_register_name(param.children[1]), _build_type(param.children[0])))
        return self.module.add_function(lg.Function(name=name, return_type=ret_ty, params=params))

    # Bodies -------------------------------------------------------------------

    def _build_body(self, fn: lg.Function, blocks: List[Tree]) -> None:
        if not blocks:
            raise ParseError(f"function @{fn.name} has an empty body")
        for block_tree in blocks:
            label = str(block_tree.children[0])
            if label in fn.blocks:
                raise ParseError(f"{_loc(block_tree)}duplicate block {label} in function @{fn.name}")
            block = fn.add_block(label)
            for instr_tree in _trees(block_tree):
                block.append(self._build_instruction(instr_tree))
        for label in _referenced_labels(fn):
            if label not in fn.blocks:
                raise ParseError(f"unknown label {label} in function @{fn.name}")

    def _build_instruction(self, tree: Tree) -> lg.Instruction:
        kind = _name(tree)
        ch = tree.children
        if kind == "assign":
            return self._build_assign(lg.Register(_register_name(ch[0]), VOID), ch[1])
        if kind == "store":
            return lg.Store(ptr=self._build_value(ch[0]), value=self._build_value(ch[1]))
        if kind == "inc_dec":
            return lg.UnaryOperates(op=UnaryOperator(str(ch[0])), operand=self._build_value(ch[1]))
        if kind == "cond_jump":
            values = _trees(tree, "value")
            return lg.ConditionalJump(
                condition=Condition(str(ch[0])),
                operand1=self._build_value(values[0]),
                operand2=self._build_value(values[1]) if len(values) > 1 else None,
                target=str(ch[-1]),
            )
        if kind == "goto":
            return lg.Goto(target=str(ch[0]))
        if kind == "invoke":
            return self._build_invoke(tree, None)
        if kind == "ret":
            return lg.Return(value=self._build_value(ch[0]) if ch else None)
        if kind == "switch":
            return lg.Switch(
                value=self._build_value(ch[0]),
                default=str(ch[1]),
                cases=[(self._build_value(c.children[0]), str(c.children[1])) for c in _trees(tree, "switch_case")],
            )
        if kind == "asm":
            args = [self._build_value(v) for a in _trees(tree, "args") for v in _trees(a, "value")]
            return lg.Assembly(code=ast.literal_eval(ch[0]), constraints=ast.literal_eval(ch[1]), operands=args)
        if kind == "nop":
            return lg.Nop()
        raise ParseError(f"{_loc(tree)}unknown instruction {kind}")

    def _build_assign(self, target: lg.Register, tree: Tree) -> lg.Instruction:
        kind = _name(tree)
        ch = tree.children

        def dest(ty: Type) -> lg.Register:
            return lg.Register(target.name, ty)

        if kind == "binop":
            lhs, rhs = self._build_value(ch[1]), self._build_value(ch[2])
            return lg.BinaryOperates(op=BinaryOperator(str(ch[0])), operand1=lhs, operand2=rhs, target=dest(lhs.type))
        if kind == "unop":
            operand = self._build_value(ch[1])
            return lg.UnaryOperates(op=UnaryOperator(str(ch[0])), operand=operand, target=dest(operand.type))
        if kind == "cmp":
            return lg.Compare(
                condition=Condition(str(ch[0])),
                operand1=self._build_value(ch[1]),
                operand2=self._build_value(ch[2]),
                target=dest(I1),
            )
        if kind == "load":
            ptr = self._build_value(ch[0])
            ty = ptr.type.base if isinstance(ptr.type, PointerType) else ptr.type
            return lg.Load(ptr=ptr, target=dest(ty))
        if kind == "alloca":
            ty = _build_type(ch[0])
            size = self._build_value(ch[1]) if len(ch) > 1 else None
            return lg.StackAllocate(type=ty, size=size, target=dest(pointer_to(ty)))
        if kind == "gep":
            values = [self._build_value(v) for v in ch]
            ptr, indices = values[0], values[1:]
            return lg.GetElementPointer(ptr=ptr, indices=indices, target=dest(_gep_result_type(ptr.type, len(indices))))
        if kind == "cast":
            to_ty = _build_type(ch[2])
            return lg.TypeCast(kind=CastKind(str(ch[0])), source=self._build_value(ch[1]), target_type=to_ty, target=dest(to_ty))
        if kind == "phi":
            incoming = [(str(e.children[0]), self._build_value(e.children[1])) for e in _trees(tree, "phi_edge")]
            return lg.Phi(incoming=incoming, target=dest(incoming[0][1].type))
        if kind == "set":
            value = self._build_value(ch[0])
            return lg.SetRegister(value=value, target=dest(value.type))
        if kind == "invoke":
            return self._build_invoke(tree, target)
        raise ParseError(f"{_loc(tree)}unknown instruction {kind}")

    def _build_invoke(self, tree: Tree, target: Optional[lg.Register]) -> lg.Invoke:
        ret_ty = _build_type(tree.children[0])
        callee_tok = tree.children[1]
        args = [self._build_value(v) for a in _trees(tree, "args") for v in _trees(a, "value")]
        if callee_tok.type == "GLOBAL_NAME":
            name = _global_name(callee_tok)
            fn = self.module.functions.get(name)
            if fn is None:
                raise ParseError(f"{_loc(tree)}unknown function @{name}")
            callee: lg.Value = lg.FunctionReference(fn)
        else:
            sig = FunctionReferenceType(ret_ty, tuple(a.type for a in args))
            callee = lg.Register(_register_name(callee_tok), sig)
        if target is not None:
            if isinstance(ret_ty, VoidType):
                raise ParseError(f"{_loc(tree)}void invoke cannot assign %{target.name}")
            target = lg.Register(target.name, ret_ty)
        return lg.Invoke(func=callee, arguments=args, target=target)

    # Values -------------------------------------------------------------------

    def _build_value(self, tree: Tree) -> lg.Value:
        ty = _build_type(tree.children[0])
        operand = tree.children[1]
        if isinstance(operand, Token):
            if operand.type == "REGISTER":
                return lg.Register(_register_name(operand), ty)
            if operand.type == "STRING":
                return lg.StringConstant(ast.literal_eval(operand))
            if operand.type == "GLOBAL_NAME":
                return self._reference(_global_name(operand), tree)
            raise ParseError(f"{_loc(tree)}unexpected token {operand}")
        kind = _name(operand)
        if kind == "number":
            return _number(ty, str(operand.children[0]), tree)
        if kind == "nullptr":
            return lg.NullptrConstant(ty)
        if kind == "boolean":
            return lg.IntegerConstant(ty, 1 if operand.children[0].type == "TRUE" else 0)
        if kind == "array_literal":
            if not isinstance(ty, ArrayType):
                raise ParseError(f"{_loc(tree)}array literal of non-array type {ty}")
            elements = [self._build_value(v) for v in _trees(operand, "value")]
            if len(elements) != ty.length:
                raise ParseError(f"{_loc(tree)}array literal has {len(elements)} elements, expected {ty.length}")
            return lg.ArrayConstant(ty, elements)
        raise ParseError(f"{_loc(tree)}unexpected operand {kind}")

    def _reference(self, name: str, tree: Tree) -> lg.Value:
        var = self.module.globals.get(name)
        if var is not None:
            return lg.GlobalReference(var)
        fn = self.module.functions.get(name)
        if fn is not None:
            return lg.FunctionReference(fn)
        raise ParseError(f"{_loc(tree)}unknown symbol @{name}")


def _number(ty: Type, text: str, tree: Tree) -> lg.Value:
    if isinstance(ty, IntegerType):
        try:
            return lg.IntegerConstant(ty, int(text))
        except ValueError:
            raise ParseError(f"{_loc(tree)}invalid integer literal {text} for {ty}") from None
    if isinstance(ty, FloatType):
        return lg.FloatConstant(float(text))
    if isinstance(ty, DoubleType):
        return lg.DoubleConstant(float(text))
    raise ParseError(f"{_loc(tree)}numeric literal of type {ty}")


def _referenced_labels(fn: lg.Function) -> List[str]:
    labels: Dict[str, None] = {}
    for block in fn.blocks.values():
        for instr in block.instructions:
            if isinstance(instr, (lg.ConditionalJump, lg.Goto)):
                labels[instr.target] = None
            elif isinstance(instr, lg.Phi):
                for pred, _ in instr.incoming:
                    labels[pred] = None
            elif isinstance(instr, lg.Switch):
                labels[instr.default] = None
                for _, target in instr.cases:
                    labels[target] = None
    return list(labels)
