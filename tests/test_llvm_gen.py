from __future__ import annotations

import re

import pytest

pytest.importorskip("llvmlite")

from llvmlite import ir  # type: ignore

from lg import ir_nodes as lg
from lg.ir_nodes import BinaryOperator, CastKind, Condition, UnaryOperator
from lg.llvm_gen import (
    LLVMIRGenerator,
    LoweringError,
    MalformedGlobalInitializerError,
    MalformedSwitchCaseError,
    UnsupportedOperationError,
    UnsupportedTypeError,
    lower_module,
)
from lg.types import F32, F64, I1, I8, I32, I64, U32, VOID, ArrayType, PointerType, StructureType


def _reg(name: str, ty=I32) -> lg.Register:
    return lg.Register(name, ty)


def _int(value: int, ty=I32) -> lg.IntegerConstant:
    return lg.IntegerConstant(ty, value)


def _function(module: lg.Module, name: str, ret=I32, params=()) -> lg.Function:
    return module.add_function(lg.Function(name=name, return_type=ret, params=list(params)))


def _single_block(ret, params, *instrs) -> str:
    """Lower `define @f(params) { entry: instrs }` and return the function's IR text."""
    module = lg.Module(name="t")
    fn = _function(module, "f", ret, params)
    entry = fn.add_block("entry")
    for instr in instrs:
        entry.append(instr)
    return str(lower_module(module).get_global("f"))


# Scenarios ---------------------------------------------------------------------


def test_add_and_return():
    a, b, t = _reg("a"), _reg("b"), _reg("t")
    text = _single_block(
        I32,
        [a, b],
        lg.BinaryOperates(BinaryOperator.ADD, a, b, t),
        lg.Return(t),
    )
    assert 'define i32 @"f"(i32 %"a", i32 %"b")' in text
    assert '%"t" = add i32 %"a", %"b"' in text
    assert 'ret i32 %"t"' in text


def test_main_adding_constants_has_one_block():
    module = lg.Module()
    main = _function(module, "main", I32)
    t = _reg("t")
    entry = main.add_block("entry")
    entry.append(lg.BinaryOperates(BinaryOperator.ADD, _int(1), _int(2), t))
    entry.append(lg.Return(t))

    llvm_fn = lower_module(module).get_global("main")
    assert len(llvm_fn.blocks) == 1
    assert [i.opname for i in llvm_fn.blocks[0].instructions] == ["add", "ret"]
    assert '%"t" = add i32 1, 2' in str(llvm_fn)


def test_conditional_jump_falls_through_to_next_declared_block():
    module = lg.Module()
    x = _reg("x")
    fn = _function(module, "f", I32, [x])
    entry = fn.add_block("entry")
    body = fn.add_block("body")
    exit_ = fn.add_block("exit")
    c = _reg("c", I1)
    entry.append(lg.Compare(Condition.E, x, _int(0), c))
    entry.append(lg.ConditionalJump(Condition.IF_TRUE, c, "exit"))
    body.append(lg.Return(_int(1)))
    exit_.append(lg.Return(_int(0)))

    llvm_fn = lower_module(module).get_global("f")
    assert [b.name for b in llvm_fn.blocks] == ["entry", "body", "exit"]
    text = str(llvm_fn)
    assert '%"c" = icmp eq i32 %"x", 0' in text
    assert 'br i1 %"c", label %"exit", label %"body"' in text


def test_conditional_jump_if_false_negates_condition():
    module = lg.Module()
    c = _reg("c", I1)
    fn = _function(module, "f", VOID, [c])
    entry = fn.add_block("entry")
    fn.add_block("other").append(lg.Return())
    fn.add_block("taken").append(lg.Return())
    entry.append(lg.ConditionalJump(Condition.IF_FALSE, c, "taken"))

    llvm_fn = lower_module(module).get_global("f")
    opnames = [i.opname for i in llvm_fn.blocks[0].instructions]
    assert opnames == ["xor", "br"]
    assert 'label %"taken", label %"other"' in str(llvm_fn)


def test_conditional_jump_with_two_operands_compares_inline():
    module = lg.Module()
    a, b = _reg("a"), _reg("b")
    fn = _function(module, "f", VOID, [a, b])
    fn.add_block("entry").append(lg.ConditionalJump(Condition.LE, a, "done", b))
    fn.add_block("next").append(lg.Return())
    fn.add_block("done").append(lg.Return())

    text = str(lower_module(module).get_global("f"))
    assert 'icmp sle i32 %"a", %"b"' in text
    assert 'label %"done", label %"next"' in text


def test_switch_cases_and_default():
    module = lg.Module()
    v = _reg("v")
    fn = _function(module, "f", I32, [v])
    fn.add_block("entry").append(
        lg.Switch(v, "other", [(_int(1), "one"), (_int(2), "two")])
    )
    fn.add_block("one").append(lg.Return(_int(10)))
    fn.add_block("two").append(lg.Return(_int(20)))
    fn.add_block("other").append(lg.Return(_int(0)))

    text = str(lower_module(module).get_global("f"))
    assert 'switch i32 %"v", label %"other"' in text
    assert 'i32 1, label %"one"' in text
    assert 'i32 2, label %"two"' in text


def test_call_to_function_declared_later():
    module = lg.Module()
    main = _function(module, "main", I32)
    n = _reg("n")
    ext = _function(module, "ext", I32, [n])
    r = _reg("r")
    entry = main.add_block("entry")
    entry.append(lg.Invoke(lg.FunctionReference(ext), [_int(7)], r))
    entry.append(lg.Return(r))

    text = str(lower_module(module))
    assert 'declare i32 @"ext"(i32 %"n")' in text
    assert '%"r" = call i32 @"ext"(i32 7)' in text


def test_void_call_binds_nothing():
    module = lg.Module()
    sink = _function(module, "sink", VOID, [_reg("v")])
    f = _function(module, "f", VOID)
    entry = f.add_block("entry")
    entry.append(lg.Invoke(lg.FunctionReference(sink), [_int(1)], _reg("ignored")))
    entry.append(lg.Return())

    text = str(lower_module(module).get_global("f"))
    assert 'call void @"sink"(i32 1)' in text
    assert '"ignored"' not in text


def test_call_through_register_bound_to_function():
    module = lg.Module()
    ext = _function(module, "ext", I32, [_reg("x")])
    fn = _function(module, "f", I32)
    fp, r = _reg("fp", ext.reference_type), _reg("r")
    entry = fn.add_block("entry")
    entry.append(lg.SetRegister(lg.FunctionReference(ext), fp))
    entry.append(lg.Invoke(fp, [_int(3)], r))
    entry.append(lg.Return(r))

    text = str(lower_module(module).get_global("f"))
    assert '%"r" = call i32 @"ext"(i32 3)' in text


def test_function_pointer_parameters_are_unsupported():
    module = lg.Module()
    sig = lg.Function(name="_", return_type=I32, params=[_reg("x")]).reference_type
    _function(module, "f", VOID, [_reg("fp", PointerType(sig))])
    with pytest.raises(UnsupportedTypeError):
        lower_module(module)


def test_global_initializer_references_later_function():
    module = lg.Module()
    var = module.add_global(lg.GlobalVariable("handler", PointerType(I8), constant=True))
    target = _function(module, "target", VOID)
    target.add_block("entry").append(lg.Return())
    var.initializer = lg.FunctionReference(target)

    text = str(lower_module(module))
    assert '@"handler" = constant i8* bitcast (void ()* @"target" to i8*)' in text
    assert 'define void @"target"()' in text


def test_global_defaults_and_constant_initializers():
    module = lg.Module()
    module.add_global(lg.GlobalVariable("zero", I32))
    module.add_global(lg.GlobalVariable("five", I64, constant=True, initializer=_int(5, I64)))
    module.add_global(
        lg.GlobalVariable("arr", ArrayType(I8, 2), initializer=lg.ArrayConstant(ArrayType(I8, 2), [_int(1, I8), _int(2, I8)]))
    )
    module.add_global(lg.GlobalVariable("p", PointerType(I32), initializer=lg.NullptrConstant(PointerType(I32))))

    text = str(lower_module(module))
    assert '@"zero" = global i32 0' in text
    assert '@"five" = constant i64 5' in text
    assert '@"arr" = global [2 x i8] [i8 1, i8 2]' in text
    assert '@"p" = global i32* null' in text


def test_global_register_initializer_is_rejected():
    module = lg.Module()
    module.add_global(lg.GlobalVariable("g", I32, initializer=_reg("x")))
    with pytest.raises(MalformedGlobalInitializerError):
        lower_module(module)


def test_string_constant_becomes_internal_global():
    module = lg.Module()
    s = _reg("s")
    puts = _function(module, "puts", I32, [_reg("s", PointerType(I8))])
    main = _function(module, "main", I32)
    entry = main.add_block("entry")
    entry.append(lg.Invoke(lg.FunctionReference(puts), [lg.StringConstant("hi")], s))
    entry.append(lg.Return(_int(0)))

    text = str(lower_module(module))
    assert '@".str" = internal constant [3 x i8] c"hi\\00"' in text
    assert 'getelementptr ([3 x i8], [3 x i8]* @".str", i32 0, i32 0)' in text


# Opcode selection --------------------------------------------------------------


@pytest.mark.parametrize(
    "op, ty, expected",
    [
        (BinaryOperator.ADD, I32, "add i32"),
        (BinaryOperator.ADD, F32, "fadd float"),
        (BinaryOperator.SUB, F64, "fsub double"),
        (BinaryOperator.MUL, I32, "mul i32"),
        (BinaryOperator.DIV, I32, "sdiv i32"),
        (BinaryOperator.DIV, U32, "udiv i32"),
        (BinaryOperator.DIV, F64, "fdiv double"),
        (BinaryOperator.MOD, I32, "srem i32"),
        (BinaryOperator.MOD, U32, "urem i32"),
        (BinaryOperator.MOD, F32, "frem float"),
        (BinaryOperator.AND, I32, "and i32"),
        (BinaryOperator.OR, I32, "or i32"),
        (BinaryOperator.XOR, I32, "xor i32"),
        (BinaryOperator.SHL, I32, "shl i32"),
        (BinaryOperator.SHR, I32, "ashr i32"),
        (BinaryOperator.SHR, U32, "lshr i32"),
        (BinaryOperator.USHR, I32, "lshr i32"),
    ],
)
def test_binary_opcode_follows_operand_type(op, ty, expected):
    a, b = _reg("a", ty), _reg("b", ty)
    text = _single_block(ty, [a, b], lg.BinaryOperates(op, a, b, _reg("t", ty)), lg.Return(_reg("t", ty)))
    assert f'%"t" = {expected} %"a", %"b"' in text


def test_div_on_pointers_is_unsupported():
    p = _reg("p", PointerType(I32))
    with pytest.raises(UnsupportedTypeError):
        _single_block(VOID, [p], lg.BinaryOperates(BinaryOperator.DIV, p, p, _reg("t")), lg.Return())


@pytest.mark.parametrize(
    "condition, ty, expected",
    [
        (Condition.E, I32, "icmp eq i32"),
        (Condition.NE, I32, "icmp ne i32"),
        (Condition.L, I32, "icmp slt i32"),
        (Condition.LE, I32, "icmp sle i32"),
        (Condition.G, I32, "icmp sgt i32"),
        (Condition.GE, I32, "icmp sge i32"),
        (Condition.L, U32, "icmp ult i32"),
        (Condition.LE, U32, "icmp ule i32"),
        (Condition.G, U32, "icmp ugt i32"),
        (Condition.GE, U32, "icmp uge i32"),
        (Condition.E, F32, "fcmp oeq float"),
        (Condition.NE, F32, "fcmp one float"),
        (Condition.L, F64, "fcmp ult double"),
        (Condition.LE, F64, "fcmp ule double"),
        (Condition.G, F32, "fcmp ugt float"),
        (Condition.GE, F32, "fcmp uge float"),
        (Condition.E, PointerType(I8), "icmp eq i8*"),
        (Condition.L, PointerType(I8), "icmp ult i8*"),
    ],
)
def test_compare_predicate_table(condition, ty, expected):
    a, b, c = _reg("a", ty), _reg("b", ty), _reg("c", I1)
    text = _single_block(I1, [a, b], lg.Compare(condition, a, b, c), lg.Return(c))
    assert f'%"c" = {expected} %"a", %"b"' in text


def test_compare_with_branch_only_condition_is_rejected():
    a, c = _reg("a"), _reg("c", I1)
    with pytest.raises(UnsupportedOperationError):
        _single_block(I1, [a], lg.Compare(Condition.IF_TRUE, a, a, c), lg.Return(c))


# Unary operators ---------------------------------------------------------------


def test_inc_is_load_add_store_without_result():
    p = _reg("p", PointerType(I32))
    module = lg.Module()
    fn = _function(module, "f", VOID, [p])
    entry = fn.add_block("entry")
    entry.append(lg.UnaryOperates(UnaryOperator.INC, p))
    entry.append(lg.Return())

    llvm_fn = lower_module(module).get_global("f")
    assert [i.opname for i in llvm_fn.blocks[0].instructions][:3] == ["load", "add", "store"]
    assert "add i32" in str(llvm_fn) and ", 1" in str(llvm_fn)


def test_dec_on_float_pointer_uses_fsub():
    p = _reg("p", PointerType(F64))
    text = _single_block(VOID, [p], lg.UnaryOperates(UnaryOperator.DEC, p), lg.Return())
    assert "fsub double" in text


def test_inc_requires_pointer_operand():
    with pytest.raises(UnsupportedTypeError):
        _single_block(VOID, [_reg("x")], lg.UnaryOperates(UnaryOperator.INC, _reg("x")), lg.Return())


def test_not_and_neg():
    x, f = _reg("x"), _reg("f", F32)
    text = _single_block(
        VOID,
        [x, f],
        lg.UnaryOperates(UnaryOperator.NOT, x, _reg("n")),
        lg.UnaryOperates(UnaryOperator.NEG, x, _reg("m")),
        lg.UnaryOperates(UnaryOperator.NEG, f, _reg("g", F32)),
        lg.Return(),
    )
    assert '%"n" = xor i32 %"x", -1' in text
    assert '%"m" = sub i32 0, %"x"' in text
    assert '%"g" = fneg float %"f"' in text


# Memory, casts, joins ----------------------------------------------------------


def test_stack_allocate_store_load():
    slot, v = _reg("slot", PointerType(I32)), _reg("v")
    text = _single_block(
        I32,
        [],
        lg.StackAllocate(I32, slot),
        lg.Store(slot, _int(42)),
        lg.Load(slot, v),
        lg.Return(v),
    )
    assert '%"slot" = alloca i32' in text
    assert 'store i32 42, i32* %"slot"' in text
    assert '%"v" = load i32, i32* %"slot"' in text


def test_stack_allocate_with_element_count():
    n, buf = _reg("n", I64), _reg("buf", PointerType(I32))
    text = _single_block(VOID, [n], lg.StackAllocate(I32, buf, n), lg.Return())
    assert '%"buf" = alloca i32, i64 %"n"' in text


def test_store_lowers_pointer_before_value():
    ptr, value = _reg("p", PointerType(I32)), _reg("v")
    with pytest.raises(LoweringError, match="register %p read before"):
        _single_block(VOID, [], lg.Store(ptr, value), lg.Return())


def test_getelementptr_into_array():
    arr = _reg("arr", PointerType(ArrayType(I32, 4)))
    elem = _reg("e", PointerType(I32))
    text = _single_block(
        VOID,
        [arr],
        lg.GetElementPointer(arr, [_int(0), _int(2)], elem),
        lg.Store(elem, _int(1)),
        lg.Return(),
    )
    assert '%"e" = getelementptr [4 x i32], [4 x i32]* %"arr", i32 0, i32 2' in text


def test_load_from_non_pointer_is_unsupported():
    with pytest.raises(UnsupportedTypeError):
        _single_block(I32, [_reg("x")], lg.Load(_reg("x"), _reg("v")), lg.Return(_reg("v")))


@pytest.mark.parametrize(
    "kind, src_ty, dst_ty, opcode",
    [
        (CastKind.ZEXT, I8, I32, "zext"),
        (CastKind.SEXT, I8, I32, "sext"),
        (CastKind.TRUNC, I64, I32, "trunc"),
        (CastKind.ITOF, I32, F64, "sitofp"),
        (CastKind.ITOF, U32, F64, "uitofp"),
        (CastKind.FTOI, F64, I32, "fptosi"),
        (CastKind.FTOI, F64, U32, "fptoui"),
        (CastKind.INTTOPTR, I64, PointerType(I8), "inttoptr"),
        (CastKind.PTRTOINT, PointerType(I8), I64, "ptrtoint"),
        (CastKind.PTRTOPTR, PointerType(I8), PointerType(I32), "bitcast"),
        (CastKind.BITCAST, I32, F32, "bitcast"),
        (CastKind.FEXT, F32, F64, "fpext"),
        (CastKind.FTRUNC, F64, F32, "fptrunc"),
    ],
)
def test_casts(kind, src_ty, dst_ty, opcode):
    src, dst = _reg("s", src_ty), _reg("d", dst_ty)
    text = _single_block(VOID, [src], lg.TypeCast(kind, src, dst_ty, dst), lg.Return())
    assert f'%"d" = {opcode} ' in text


def test_phi_with_back_edge():
    module = lg.Module()
    n = _reg("n")
    fn = _function(module, "count", I32, [n])
    entry = fn.add_block("entry")
    loop = fn.add_block("loop")
    done = fn.add_block("done")
    i, nxt, c = _reg("i"), _reg("next"), _reg("c", I1)
    entry.append(lg.Goto("loop"))
    loop.append(lg.Phi([("entry", _int(0)), ("loop", nxt)], i))
    loop.append(lg.BinaryOperates(BinaryOperator.ADD, i, _int(1), nxt))
    loop.append(lg.Compare(Condition.L, nxt, n, c))
    loop.append(lg.ConditionalJump(Condition.IF_TRUE, c, "loop"))
    done.append(lg.Return(nxt))

    text = str(lower_module(module).get_global("count"))
    assert re.search(r'%"i" = phi\s+i32 \[0, %"entry"\], \[%"next", %"loop"\]', text)
    assert 'br i1 %"c", label %"loop", label %"done"' in text


def test_set_register_binds_without_emitting():
    x = _reg("x")
    text = _single_block(I32, [], lg.SetRegister(_int(9), x), lg.Return(x))
    assert "ret i32 9" in text


def test_inline_assembly_is_side_effecting():
    x = _reg("x")
    text = _single_block(VOID, [x], lg.Assembly("nop", "r", [x]), lg.Nop(), lg.Return())
    assert re.search(r'call void asm sideeffect "nop", "r"\s*\(i32 %"x"\)', text)


def test_unterminated_block_falls_through():
    module = lg.Module()
    fn = _function(module, "f", VOID)
    fn.add_block("a").append(lg.Nop())
    fn.add_block("b").append(lg.Return())
    text = str(lower_module(module).get_global("f"))
    assert 'br label %"b"' in text


def test_last_block_must_terminate():
    module = lg.Module()
    fn = _function(module, "f", VOID)
    fn.add_block("only").append(lg.Nop())
    with pytest.raises(LoweringError, match="falls off the end"):
        lower_module(module)


def test_trailing_nop_after_return_is_allowed():
    module = lg.Module()
    fn = _function(module, "f", VOID)
    entry = fn.add_block("entry")
    entry.append(lg.Return())
    entry.append(lg.Nop())
    fn.add_block("unreached").append(lg.Return())

    assert entry.is_terminated
    text = str(lower_module(module).get_global("f"))
    assert 'br label %"unreached"' not in text


def test_instruction_after_terminator():
    module = lg.Module()
    fn = _function(module, "f", I32)
    entry = fn.add_block("entry")
    entry.append(lg.Return(_int(0)))
    entry.append(lg.SetRegister(_int(1), _reg("x")))
    assert not entry.is_terminated
    with pytest.raises(LoweringError, match="instruction after terminator"):
        lower_module(module)


def test_conditional_jump_in_last_block_has_no_fallthrough():
    module = lg.Module()
    c = _reg("c", I1)
    fn = _function(module, "f", VOID, [c])
    fn.add_block("entry").append(lg.ConditionalJump(Condition.IF_TRUE, c, "entry"))
    with pytest.raises(LoweringError, match="no fallthrough"):
        lower_module(module)


def test_switch_case_must_be_integer_literal():
    module = lg.Module()
    v = _reg("v")
    fn = _function(module, "f", VOID, [v])
    fn.add_block("entry").append(lg.Switch(v, "out", [(v, "out")]))
    fn.add_block("out").append(lg.Return())
    with pytest.raises(MalformedSwitchCaseError):
        lower_module(module)


def test_unknown_branch_target():
    module = lg.Module()
    fn = _function(module, "f", VOID)
    fn.add_block("entry").append(lg.Goto("nowhere"))
    with pytest.raises(LoweringError, match="unknown block nowhere"):
        lower_module(module)


# Scoping and determinism -------------------------------------------------------


def test_registers_do_not_leak_between_functions():
    module = lg.Module()
    x = _reg("x")
    first = _function(module, "first", I32, [x])
    first.add_block("entry").append(lg.Return(x))
    second = _function(module, "second", I32)
    second.add_block("entry").append(lg.Return(x))
    with pytest.raises(LoweringError, match="read before it is defined"):
        lower_module(module)


def test_register_assigned_twice():
    a = _reg("a")
    with pytest.raises(LoweringError, match="assigned twice"):
        _single_block(
            I32,
            [a],
            lg.BinaryOperates(BinaryOperator.ADD, a, a, a),
            lg.Return(a),
        )


def test_fresh_generators_are_deterministic():
    module = lg.Module(name="det")
    module.add_global(lg.GlobalVariable("counter", I32, initializer=_int(3)))
    puts = _function(module, "puts", I32, [_reg("s", PointerType(I8))])
    a = _reg("a")
    fn = _function(module, "f", I32, [a])
    entry = fn.add_block("entry")
    entry.append(lg.Invoke(lg.FunctionReference(puts), [lg.StringConstant("x")], None))
    entry.append(lg.Return(a))

    first = str(LLVMIRGenerator(module).generate())
    second = str(LLVMIRGenerator(module).generate())
    assert first == second


def test_generator_writes_into_supplied_module():
    target = ir.Module(name="host")
    module = lg.Module()
    _function(module, "ext", VOID)
    result = LLVMIRGenerator(module, target).generate()
    assert result is target
    assert 'declare void @"ext"()' in str(target)


def test_structure_types_are_unsupported():
    module = lg.Module()
    module.add_global(lg.GlobalVariable("s", StructureType("pair", (I32, I32))))
    with pytest.raises(UnsupportedTypeError):
        lower_module(module)
