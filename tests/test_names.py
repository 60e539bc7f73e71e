"""Tests for name classification, declaration discovery and reference rewriting"""

import pytest

from widgetpack import (
    apply_defines,
    binding_scopes,
    classify_names,
    declared_names,
    free_names,
    render,
    replace_references,
    tokenize,
)


def roles_of(code):
    tokens = tokenize(code)
    roles = classify_names(tokens)
    return [(t.value, r) for t, r in zip(tokens, roles) if t.kind == "name"]


def declared(code):
    return declared_names(tokenize(code))


class TestClassifyNames:
    def test_object_literal(self):
        roles = dict(roles_of("const a = { b: c, d };"))
        assert roles["a"] == "ref"
        assert roles["b"] == "key"
        assert roles["c"] == "ref"
        assert roles["d"] == "shorthand"

    def test_member_access(self):
        assert roles_of("obj.prop;") == [("obj", "ref"), ("prop", "property")]

    def test_labels(self):
        roles = roles_of("outer: for (;;) { break outer; }")
        assert roles[0] == ("outer", "label")
        assert ("outer", "label") == roles[-1]

    def test_class_members(self):
        """Test method names are keys while body references stay refs"""
        roles = dict(roles_of("class A { method() { return x; } }"))
        assert roles["A"] == "ref"
        assert roles["method"] == "key"
        assert roles["x"] == "ref"

    def test_keywords_have_no_role(self):
        roles = dict(roles_of("const a = 1;"))
        assert roles["const"] is None


class TestDeclaredNames:
    def test_function_and_parameters(self):
        code = "function f(a, {b, c: d}, ...e) { let [x, y = 1] = g; var z; }"
        assert declared(code) == {"f", "a", "b", "d", "e", "x", "y", "z"}

    def test_arrow_parameters(self):
        code = "const h = (p, q) => p + q; items.map(v => v);"
        assert declared(code) == {"h", "p", "q", "v"}

    def test_catch_binding(self):
        assert declared("try { x(); } catch (err) {}") == {"err"}

    def test_method_parameters(self):
        assert declared("const o = { m(k) { return k; } };") == {"o", "k"}

    def test_class_name(self):
        assert declared("class Foo {}") == {"Foo"}

    def test_free_names_not_declared(self):
        assert declared("console.log(window.x);") == set()


class TestReplaceReferences:
    def test_only_references_rewritten(self):
        """Test properties and keys keep their names"""
        code = "foo(bar); x.bar; ({ bar: 1 });"
        assert replace_references(code, {"bar": "baz"}) == (
            "foo(baz); x.bar; ({ bar: 1 });"
        )

    def test_shorthand_expanded(self):
        code = "const o = { w };"
        assert replace_references(code, {"w": "widget"}) == "const o = { w: widget };"

    def test_compound_expression_parenthesized(self):
        assert replace_references("x = A * 3;", {"A": "1 + 2"}) == "x = (1 + 2) * 3;"

    def test_member_expression_not_parenthesized(self):
        assert replace_references("go(a);", {"a": "__m1.a"}) == "go(__m1.a);"

    def test_no_replacements(self):
        code = "let  spaced   =  1 ;"
        assert replace_references(code, {}) is code


class TestApplyDefines:
    @pytest.fixture
    def defines(self):
        return {
            "process.env.NODE_ENV": '"production"',
            "global": "globalThis",
            "__XCON_DEV__": "false",
        }

    def test_dotted_define(self, defines):
        code = 'if (process.env.NODE_ENV === "production") {}'
        assert apply_defines(code, defines) == (
            'if ("production" === "production") {}'
        )

    def test_partial_chain_untouched(self, defines):
        code = "log(process.env.OTHER);"
        assert apply_defines(code, defines) == code

    def test_identifier_define(self, defines):
        code = "if (__XCON_DEV__) global.debug = obj.__XCON_DEV__;"
        assert apply_defines(code, defines) == (
            "if (false) globalThis.debug = obj.__XCON_DEV__;"
        )

    def test_strings_untouched(self, defines):
        code = 'log("__XCON_DEV__");'
        assert apply_defines(code, defines) == code


class TestTokenize:
    @pytest.mark.parametrize(
        "code",
        [
            "let a = 1;\n",
            "f(x) // done\n\n",
            "  \n",
            "var s = `a${b}c`;   ",
        ],
    )
    def test_render_is_lossless(self, code):
        assert render(tokenize(code)) == code

    def test_trailing_whitespace_kept_by_rewrites(self):
        assert replace_references("use(a);\n", {"a": "b"}) == "use(b);\n"

    def test_regex_after_control_head(self):
        """Test a slash after an if/while head starts a regular expression"""
        tokens = tokenize("if (x) /re/.test(s);")
        assert [t.kind for t in tokens][4:6] == ["regex", "punct"]
        assert tokens[4].value == "/re/"

    def test_division_after_call(self):
        tokens = tokenize("f(x) / 2 / g;")
        assert [t.value for t in tokens if t.kind == "punct"].count("/") == 2
        assert not any(t.kind == "regex" for t in tokens)

    def test_division_after_nested_call_in_head(self):
        tokens = tokenize("if (f(a) / 2) b();")
        assert not any(t.kind == "regex" for t in tokens)


def free(code):
    tokens = tokenize(code)
    roles = classify_names(tokens)
    return free_names(tokens, roles, binding_scopes(tokens, roles))


class TestBindingScopes:
    def test_parameter_shadowing_a_global(self):
        """Test a global also used as a parameter name is still free"""
        code = "function f(open) { return open + 1; }\nopen('x');"
        assert free(code) == {"open"}

    def test_declared_names_are_bound(self):
        code = "function f(a) { var b = a; return b; }\nf(1);"
        assert free(code) == set()

    def test_var_hoists_to_function(self):
        code = "function f() { if (x) { var y = 1; } return y; }"
        assert free(code) == {"x"}

    def test_let_is_block_scoped(self):
        code = "function f() { { let y = 1; } return y; }"
        assert free(code) == {"y"}

    def test_for_head_binding(self):
        code = "for (let i = 0; i < n; i++) use(i);\ni;"
        assert free(code) == {"n", "use", "i"}

    def test_function_expression_name(self):
        """Test a function expression's own name is not visible outside it"""
        code = "var g = function close() { return close; };\nclose();"
        assert free(code) == {"close"}

    def test_arrow_and_catch(self):
        code = "items.map(v => v * 2);\ntry { run(); } catch (err) { log(err); }"
        assert free(code) == {"items", "run", "log"}

    def test_method_parameters(self):
        code = "var o = { m(k) { return k; } };\nk;"
        assert free(code) == {"k"}
