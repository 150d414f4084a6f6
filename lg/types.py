from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple


class Type:
    """Base class for LG IR types."""


@dataclass(frozen=True)
class IntegerType(Type):
    size: int
    unsigned: bool = False

    def __str__(self) -> str:
        return f"{'u' if self.unsigned else 'i'}{self.size}"


@dataclass(frozen=True)
class FloatType(Type):
    def __str__(self) -> str:
        return "float"


@dataclass(frozen=True)
class DoubleType(Type):
    def __str__(self) -> str:
        return "double"


@dataclass(frozen=True)
class VoidType(Type):
    def __str__(self) -> str:
        return "void"


@dataclass(frozen=True)
class PointerType(Type):
    base: Type

    def __str__(self) -> str:
        return f"{self.base}*"


@dataclass(frozen=True)
class ArrayType(Type):
    base: Type
    length: int

    def __str__(self) -> str:
        return f"[{self.length} x {self.base}]"


@dataclass(frozen=True)
class StructureType(Type):
    name: str
    fields: Tuple[Type, ...] = ()

    def __str__(self) -> str:
        return f"%{self.name}"


@dataclass(frozen=True)
class FunctionReferenceType(Type):
    return_type: Type
    param_types: Tuple[Type, ...] = ()

    def __str__(self) -> str:
        params = ", ".join(str(p) for p in self.param_types)
        return f"{self.return_type}({params})"


I1 = IntegerType(1)
I8 = IntegerType(8)
I16 = IntegerType(16)
I32 = IntegerType(32)
I64 = IntegerType(64)
U8 = IntegerType(8, unsigned=True)
U16 = IntegerType(16, unsigned=True)
U32 = IntegerType(32, unsigned=True)
U64 = IntegerType(64, unsigned=True)
F32 = FloatType()
F64 = DoubleType()
VOID = VoidType()


def is_integer(ty: Type) -> bool:
    return isinstance(ty, IntegerType)


def is_floating(ty: Type) -> bool:
    return isinstance(ty, (FloatType, DoubleType))


def is_unsigned(ty: Type) -> bool:
    return isinstance(ty, IntegerType) and ty.unsigned


def pointer_to(base: Type) -> PointerType:
    return PointerType(base)


def array_of(base: Type, length: int) -> ArrayType:
    return ArrayType(base, length)
