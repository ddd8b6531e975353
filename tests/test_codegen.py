import pytest

from codegen import CodeGenerator, KSElaborationError, mangle
from operators import OperatorTable
from parser import Parser, Prototype
from prototypes import PrototypeRegistry


def compile_definition(text: str, registry: PrototypeRegistry = None):
    registry = registry if registry is not None else PrototypeRegistry()
    codegen = CodeGenerator(registry)
    func = Parser.from_source(text).parse_definition()
    unit = codegen.begin_unit()
    handle = codegen.declare_function(unit, func.proto)
    codegen.define_function_body(handle, func.body)
    return codegen.finalize_unit(unit)


def test_mangle():
    assert mangle("foo") == "ks_foo"
    assert mangle("binary|") == "ks_binary_7c"
    assert mangle("unary-") == "ks_unary_2d"


def test_units_are_numbered():
    codegen = CodeGenerator(PrototypeRegistry())
    assert codegen.begin_unit().name == "unit_0000"
    assert codegen.begin_unit().name == "unit_0001"


def test_finalized_unit_exports_definition():
    compiled = compile_definition("def add(a b) a + b * 2")
    assert set(compiled.exports) == {"add"}
    assert compiled.imports == {}
    assert compiled.exports["add"].arity == 2
    assert "def ks_add(a_0, b_1):" in compiled.source
    assert "c0 = f64(2.0)" in compiled.source
    assert compiled.code is not None


def test_constants_are_pooled():
    compiled = compile_definition("def f(x) x * 2 + 2")
    assert compiled.source.count("f64(2.0)") == 1


def test_forward_declared_callee_becomes_import():
    registry = PrototypeRegistry()
    registry.declare(Prototype("foo", ("a",)))
    compiled = compile_definition("def bar(x) foo(x) + 1", registry)
    assert set(compiled.imports) == {"foo"}
    assert compiled.imports["foo"].symbol == "ks_foo"
    assert "# declare ks_foo(a)" in compiled.source


def test_recursive_call_resolves_within_unit():
    compiled = compile_definition("def fib(x) if x < 3 then 1 else fib(x-1) + fib(x-2)")
    assert compiled.imports == {}
    assert "ks_fib(" in compiled.source


def test_shadowed_bindings_get_distinct_storage():
    compiled = compile_definition("def f(x) var x = x + 1 in for x = 0, x < 3 in x")
    for storage in ("x_0", "x_1", "x_2"):
        assert storage in compiled.source


@pytest.mark.parametrize(
    "text, message",
    [
        ("def f(x) y", "Unknown variable name 'y'"),
        ("def f(x) g(x)", "Unknown function referenced 'g'"),
        ("def f(x) f(x, x)", "Incorrect number of arguments passed to 'f': expected 1, got 2"),
        ("def f(x) !x", "Unknown unary operator '!'"),
        ("def f(x) x | x", "Unknown binary operator '\\|'"),
        ("def f(x) (var y = 1 in y) + y", "Unknown variable name 'y'"),
        ("def f(x) (for i = 0, i < 1 in i) + i", "Unknown variable name 'i'"),
    ],
)
def test_elaboration_errors(text, message):
    table = OperatorTable()
    table.set_precedence("|", 5)
    func = Parser.from_source(text, table).parse_definition()
    codegen = CodeGenerator(PrototypeRegistry())
    unit = codegen.begin_unit()
    handle = codegen.declare_function(unit, func.proto)
    with pytest.raises(KSElaborationError, match=message):
        codegen.define_function_body(handle, func.body)
    assert not handle.has_body


def test_body_cannot_be_defined_twice_in_a_unit():
    codegen = CodeGenerator(PrototypeRegistry())
    func = Parser.from_source("def f(x) x").parse_definition()
    unit = codegen.begin_unit()
    handle = codegen.declare_function(unit, func.proto)
    codegen.define_function_body(handle, func.body)
    with pytest.raises(KSElaborationError, match="cannot be redefined"):
        codegen.define_function_body(codegen.declare_function(unit, func.proto), func.body)


def test_conflicting_declaration_in_unit():
    codegen = CodeGenerator(PrototypeRegistry())
    unit = codegen.begin_unit()
    codegen.declare_function(unit, Prototype("f", ("a",)))
    with pytest.raises(KSElaborationError, match="redeclared"):
        codegen.declare_function(unit, Prototype("f", ("a", "b")))


def test_declaration_only_unit():
    codegen = CodeGenerator(PrototypeRegistry())
    unit = codegen.begin_unit()
    codegen.declare_function(unit, Prototype("sin", ("x",)))
    compiled = codegen.finalize_unit(unit)
    assert compiled.exports == {}
    assert set(compiled.imports) == {"sin"}
    assert compiled.source.startswith("# unit_0000\n# declare ks_sin(x)")
