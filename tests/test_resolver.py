"""Tests for specifier resolution, role classification and graph discovery"""

import logging
from pathlib import Path
from unittest.mock import Mock

import pytest

from widgetpack import (
    BuildConfig,
    MultiChunkViolation,
    ResolutionError,
    Resolver,
    Role,
    scan_imports,
    tokenize,
)


def write(root: Path, name: str, text: str = "") -> Path:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf8")
    return path


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


@pytest.fixture
def config(root):
    return BuildConfig.production(root=str(root), entries=["src/index.js"])


@pytest.fixture
def resolver(config):
    resolver = Resolver(config)
    resolver.log = Mock(spec=logging.Logger)
    return resolver


class TestResolve:
    """Alias, relative and extension-probing resolution"""

    def test_relative_with_extension_lookup(self, root, resolver):
        importer = write(root, "src/index.js")
        target = write(root, "src/util.ts")
        assert resolver.resolve("./util", importer) == target

    def test_resolve_extensions_in_order(self, root, resolver):
        """Test .ts is preferred over .js when both exist"""
        importer = write(root, "src/index.js")
        ts = write(root, "src/dup.ts")
        write(root, "src/dup.js")
        assert resolver.resolve("./dup", importer) == ts

    def test_directory_index(self, root, resolver):
        importer = write(root, "src/index.js")
        index = write(root, "src/widgets/index.js")
        assert resolver.resolve("./widgets", importer) == index

    def test_alias(self, root, resolver):
        importer = write(root, "src/deep/nested/file.js")
        target = write(root, "src/core/context.js")
        assert resolver.resolve("@/core/context", importer) == target
        assert resolver.resolve("~xcon/core/context", importer) == target

    def test_longest_alias_wins(self, root):
        """Test '@/widgets' is matched before '@'"""
        config = BuildConfig.production(
            root=str(root), aliases={"@": "lib", "@/widgets": "src/widgets"}
        )
        target = write(root, "src/widgets/a.js")
        write(root, "lib/widgets/a.js")
        assert Resolver(config).resolve("@/widgets/a") == target

    def test_alias_prefix_needs_separator(self, root, resolver):
        """Test '@' does not capture '@xcons/widget'"""
        assert resolver.expand_alias("@xcons/widget") is None
        assert resolver.expand_alias("@/x") == resolver.root / "src" / "x"

    def test_entry_relative_to_root(self, root, resolver):
        entry = write(root, "src/index.js")
        assert resolver.resolve("src/index.js") == entry

    def test_missing_file(self, root, resolver):
        importer = write(root, "src/index.js")
        with pytest.raises(ResolutionError) as excinfo:
            resolver.resolve("./missing", importer)
        assert excinfo.value.specifier == "./missing"
        assert excinfo.value.importer == importer


class TestClassify:
    @pytest.mark.parametrize(
        "name, role",
        [
            ("a.ts", Role.SCRIPT),
            ("a.js", Role.SCRIPT),
            ("a.json", Role.SCRIPT),
            ("a.tbhtml", Role.TEMPLATE),
            ("a.html", Role.TEMPLATE),
            ("a.scss", Role.STYLE),
            ("a.css", Role.STYLE),
            ("logo.svg", Role.ASSET),
        ],
    )
    def test_roles(self, resolver, name, role):
        assert resolver.classify(Path(name)) is role


class TestScanImports:
    def test_static_forms(self):
        code = (
            "import a from './a';\n"
            "import b, { c as d, e } from './b';\n"
            "import * as ns from './ns';\n"
            "import './side-effect';\n"
        )
        refs = scan_imports(tokenize(code))
        assert [r.specifier for r in refs] == ["./a", "./b", "./ns", "./side-effect"]
        assert refs[0].default == "a"
        assert refs[1].named == (("c", "d"), ("e", "e"))
        assert refs[1].bindings == ["b", "d", "e"]
        assert refs[2].namespace == "ns"

    def test_reexports(self):
        code = "export * from './all';\nexport { x as y } from './x';\n"
        refs = scan_imports(tokenize(code))
        assert refs[0].star and refs[0].reexport
        assert refs[1].named == (("x", "y"),)

    def test_type_only_import_skipped(self):
        refs = scan_imports(tokenize("import type { IWidget } from './types';\n"))
        assert refs == []

    def test_dynamic_import(self):
        refs = scan_imports(tokenize("const m = import('./lazy');\n"))
        assert len(refs) == 1
        assert refs[0].dynamic
        assert refs[0].specifier == "./lazy"

    def test_computed_dynamic_import(self):
        """Test a computed specifier cannot be inlined into one chunk"""
        with pytest.raises(MultiChunkViolation):
            scan_imports(tokenize("import('./pages/' + name);\n"))

    def test_member_named_import_ignored(self):
        refs = scan_imports(tokenize("loader.import('./x');\n"))
        assert refs == []


class TestDiscover:
    def test_graph(self, root, resolver):
        """Test discovery follows static and dynamic imports, skipping externals"""
        write(
            root,
            "src/index.js",
            "import $ from 'jquery';\n"
            "import { a } from './a';\n"
            "import tpl from './view.html';\n"
            "import('./lazy');\n",
        )
        write(root, "src/a.js", "export const a = 1;\n")
        write(root, "src/view.html", "<div></div>")
        write(root, "src/lazy.js", "export default 2;\n")

        graph = resolver.discover()

        names = [p.name for p in graph.units]
        assert names == ["index.js", "a.js", "view.html", "lazy.js"]
        assert graph.externals_used == {"jquery"}
        assert [p.name for p in graph.dynamic_targets] == ["lazy.js"]
        assert graph.units[root / "src" / "view.html"].role is Role.TEMPLATE

    def test_shared_module_loaded_once(self, root, resolver):
        write(root, "src/index.js", "import './a';\nimport './b';\n")
        write(root, "src/a.js", "import './shared';\n")
        write(root, "src/b.js", "import './shared';\n")
        write(root, "src/shared.js", "export const s = 1;\n")
        graph = resolver.discover()
        assert len(graph) == 4

    def test_unresolvable_import(self, root, resolver):
        write(root, "src/index.js", "import x from './nope';\n")
        with pytest.raises(ResolutionError):
            resolver.discover()
