"""
LG IR object model.

The graph is built by the parser (or directly by callers/tests) and only read
by the backend. Types live in `lg.types`; everything else lives here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .types import I8, F32, F64, FunctionReferenceType, PointerType, ArrayType, Type


# Values -----------------------------------------------------------------------


class Value:
    type: Type


@dataclass(frozen=True)
class Register(Value):
    name: str
    type: Type


@dataclass(frozen=True)
class IntegerConstant(Value):
    type: Type
    value: int


@dataclass(frozen=True)
class FloatConstant(Value):
    value: float

    @property
    def type(self) -> Type:
        return F32


@dataclass(frozen=True)
class DoubleConstant(Value):
    value: float

    @property
    def type(self) -> Type:
        return F64


@dataclass(frozen=True)
class StringConstant(Value):
    value: str

    @property
    def type(self) -> Type:
        return PointerType(I8)


@dataclass(frozen=True)
class NullptrConstant(Value):
    type: Type


@dataclass(frozen=True)
class ArrayConstant(Value):
    type: ArrayType
    elements: List[Value] = field(default_factory=list)


@dataclass(frozen=True)
class GlobalReference(Value):
    variable: "GlobalVariable"

    @property
    def type(self) -> Type:
        return PointerType(self.variable.type)


@dataclass(frozen=True)
class FunctionReference(Value):
    function: "Function"

    @property
    def type(self) -> Type:
        return self.function.reference_type


# Instructions -----------------------------------------------------------------


class BinaryOperator(Enum):
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    MOD = "mod"
    AND = "and"
    OR = "or"
    XOR = "xor"
    SHL = "shl"
    SHR = "shr"
    USHR = "ushr"


class UnaryOperator(Enum):
    INC = "inc"
    DEC = "dec"
    NOT = "not"
    NEG = "neg"


class Condition(Enum):
    E = "e"
    NE = "ne"
    L = "l"
    LE = "le"
    G = "g"
    GE = "ge"
    IF_TRUE = "if_true"
    IF_FALSE = "if_false"


class CastKind(Enum):
    ZEXT = "zext"
    SEXT = "sext"
    TRUNC = "trunc"
    ITOF = "itof"
    FTOI = "ftoi"
    INTTOPTR = "inttoptr"
    PTRTOINT = "ptrtoint"
    PTRTOPTR = "ptrtoptr"
    FEXT = "fext"
    FTRUNC = "ftrunc"
    BITCAST = "bitcast"


class Instruction:
    pass


@dataclass(frozen=True)
class BinaryOperates(Instruction):
    op: BinaryOperator
    operand1: Value
    operand2: Value
    target: Register


@dataclass(frozen=True)
class UnaryOperates(Instruction):
    op: UnaryOperator
    operand: Value
    target: Optional[Register] = None  # unused by INC/DEC


@dataclass(frozen=True)
class Compare(Instruction):
    condition: Condition
    operand1: Value
    operand2: Value
    target: Register


@dataclass(frozen=True)
class ConditionalJump(Instruction):
    """Branch to `target` when the condition holds; otherwise fall through to
    the block that follows this one in the function's block order."""

    condition: Condition
    operand1: Value
    target: str
    operand2: Optional[Value] = None


@dataclass(frozen=True)
class Goto(Instruction):
    target: str


@dataclass(frozen=True)
class Invoke(Instruction):
    func: Value
    arguments: List[Value] = field(default_factory=list)
    target: Optional[Register] = None


@dataclass(frozen=True)
class Return(Instruction):
    value: Optional[Value] = None


@dataclass(frozen=True)
class Load(Instruction):
    ptr: Value
    target: Register


@dataclass(frozen=True)
class Store(Instruction):
    ptr: Value
    value: Value


@dataclass(frozen=True)
class StackAllocate(Instruction):
    type: Type
    target: Register
    size: Optional[Value] = None


@dataclass(frozen=True)
class GetElementPointer(Instruction):
    ptr: Value
    indices: List[Value]
    target: Register


@dataclass(frozen=True)
class TypeCast(Instruction):
    kind: CastKind
    source: Value
    target_type: Type
    target: Register


@dataclass(frozen=True)
class Phi(Instruction):
    incoming: List[Tuple[str, Value]]
    target: Register


@dataclass(frozen=True)
class Switch(Instruction):
    value: Value
    default: str
    cases: List[Tuple[Value, str]] = field(default_factory=list)


@dataclass(frozen=True)
class SetRegister(Instruction):
    value: Value
    target: Register


@dataclass(frozen=True)
class Assembly(Instruction):
    code: str
    constraints: str
    operands: List[Value] = field(default_factory=list)


@dataclass(frozen=True)
class Nop(Instruction):
    pass


TERMINATORS = (ConditionalJump, Goto, Return, Switch)


# Structure --------------------------------------------------------------------


@dataclass(eq=False)
class BasicBlock:
    name: str
    instructions: List[Instruction] = field(default_factory=list)

    def append(self, instr: Instruction) -> Instruction:
        self.instructions.append(instr)
        return instr

    @property
    def is_terminated(self) -> bool:
        """True when the last instruction other than `nop` is a terminator."""
        for instr in reversed(self.instructions):
            if not isinstance(instr, Nop):
                return isinstance(instr, TERMINATORS)
        return False


@dataclass(eq=False)
class Function:
    name: str
    return_type: Type
    params: List[Register] = field(default_factory=list)
    blocks: Dict[str, BasicBlock] = field(default_factory=dict)

    @property
    def is_declaration(self) -> bool:
        """External functions carry a signature but no body."""
        return not self.blocks

    @property
    def reference_type(self) -> FunctionReferenceType:
        return FunctionReferenceType(self.return_type, tuple(p.type for p in self.params))

    def add_block(self, name: str) -> BasicBlock:
        if name in self.blocks:
            raise ValueError(f"duplicate block {name} in function {self.name}")
        block = BasicBlock(name=name)
        self.blocks[name] = block
        return block


@dataclass(eq=False)
class GlobalVariable:
    name: str
    type: Type
    constant: bool = False
    initializer: Optional[Value] = None


@dataclass(eq=False)
class Module:
    name: str = ""
    globals: Dict[str, GlobalVariable] = field(default_factory=dict)
    functions: Dict[str, Function] = field(default_factory=dict)

    def add_global(self, variable: GlobalVariable) -> GlobalVariable:
        if variable.name in self.globals:
            raise ValueError(f"duplicate global {variable.name}")
        self.globals[variable.name] = variable
        return variable

    def add_function(self, function: Function) -> Function:
        if function.name in self.functions:
            raise ValueError(f"duplicate function {function.name}")
        self.functions[function.name] = function
        return function
