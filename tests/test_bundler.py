"""Tests for linking a module graph into a single script artifact"""

from dataclasses import replace
from pathlib import Path

import pytest

from widgetpack import (
    BuildConfig,
    Bundler,
    ExternalRegistry,
    MultiChunkViolation,
    Resolver,
    TransformStage,
)


def write(root: Path, name: str, text: str) -> None:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf8")


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve()


@pytest.fixture
def bundle(root):
    """link the files under root, returning the BundleOutput"""

    def _bundle(files, **overrides):
        for name, text in files.items():
            write(root, name, text)
        overrides.setdefault("entries", ["src/index.js"])
        config = BuildConfig.production(root=str(root), **overrides)
        registry = ExternalRegistry.from_config(config)
        graph = Resolver(config, registry).discover()
        fragments = TransformStage(config).run(list(graph.units.values()))
        return Bundler(config, registry).bundle(graph, fragments)

    return _bundle


class TestExternals:
    def test_external_default_uses_global(self, bundle):
        """Test an external import becomes a reference to the host global"""
        output = bundle(
            {
                "src/index.js": (
                    "import $ from 'jquery';\n"
                    "export function show(x) { return $(x); }\n"
                )
            }
        )
        code = output.chunk.code
        assert "jQuery(x)" in code
        assert "import" not in code
        assert "'jquery'" not in code
        assert code.count("= function (__exports) {") == 1

    def test_external_named_import(self, bundle):
        output = bundle(
            {
                "src/index.js": (
                    "import { register } from '@xcons/widget';\n"
                    "register('card');\n"
                )
            }
        )
        assert "XconWidget.register('card');" in output.chunk.code

    def test_dynamic_external(self, bundle):
        output = bundle({"src/index.js": "import('jquery').then(init);\n"})
        assert "Promise.resolve(jQuery).then(init);" in output.chunk.code


class TestSingleChunk:
    FILES = {
        "src/index.js": (
            "import { a } from './a';\n"
            "import b from './b';\n"
            "export function run() {\n"
            "  return import('./lazy').then(function (m) { return m.default + a + b; });\n"
            "}\n"
        ),
        "src/a.js": "export const a = 1;\n",
        "src/b.js": "export default 2;\n",
        "src/lazy.js": "export default 3;\n",
    }

    def test_dynamic_import_inlined(self, bundle):
        """Test four modules with a dynamic import yield exactly one script"""
        output = bundle(self.FILES)
        assert len(output.artifacts) == 1
        assert output.chunk.file_name == "widget.js"
        code = output.chunk.code
        assert code.count("= function (__exports) {") == 4
        assert "Promise.resolve().then(function () { return __require(3); })" in code
        assert "import(" not in code

    def test_module_table_layout(self, bundle):
        code = bundle(self.FILES).chunk.code
        assert code.startswith("(function () {\n\"use strict\";")
        assert code.rstrip().endswith("__require(0);\n})();")
        assert "// src/index.js\n__modules[0] = function (__exports) {" in code
        assert "// src/lazy.js\n__modules[3]" in code

    def test_imports_rewritten(self, bundle):
        code = bundle(self.FILES).chunk.code
        assert "var __m1 = __require(1);" in code
        assert "var __m2 = __require(2);" in code
        assert "m.default + __m1.a + __m2.default" in code

    def test_exports_become_getters(self, bundle):
        code = bundle(self.FILES).chunk.code
        assert "__define(__exports, { a: function () { return a; } });" in code
        assert "__exports.default = 2;" in code
        assert "__define(__exports, { run: function () { return run; } });" in code

    def test_shadowed_import_copied(self, bundle):
        """Test an import shadowed by a local binding is copied, not rewritten"""
        output = bundle(
            {
                "src/index.js": (
                    "import { a } from './a';\n"
                    "function f(a) { return a; }\n"
                    "f(a);\n"
                ),
                "src/a.js": "export const a = 1;\n",
            }
        )
        code = output.chunk.code
        assert "var a = __m1.a;" in code
        assert "function f(a) { return a; }" in code

    def test_star_reexport(self, bundle):
        output = bundle(
            {
                "src/index.js": "export * from './a';\n",
                "src/a.js": "export const a = 1;\n",
            }
        )
        assert "__star(__exports, __m1);" in output.chunk.code

    def test_chunking_rejected(self, root, bundle):
        """Test a configured split is refused before anything is emitted"""
        write(root, "src/index.js", "export const a = 1;\n")
        config = BuildConfig.production(root=str(root), entries=["src/index.js"])
        registry = ExternalRegistry.from_config(config)
        graph = Resolver(config, registry).discover()
        fragments = TransformStage(config).run(list(graph.units.values()))
        split = replace(config, manual_chunks=(("vendor", "jquery"),))
        with pytest.raises(MultiChunkViolation):
            Bundler(split, registry).bundle(graph, fragments)


class TestAssets:
    def test_asset_artifact(self, bundle):
        output = bundle(
            {
                "src/index.js": "import logo from './logo.svg';\nshow(logo);\n",
                "src/logo.svg": "<svg/>",
            }
        )
        assert [a.file_name for a in output.assets] == ["assets/logo.svg"]
        assert output.assets[0].data == b"<svg/>"
        assert "show(__m1.default);" in output.chunk.code
        assert len(output.artifacts) == 2

    def test_extracted_styles(self, bundle):
        output = bundle(
            {
                "src/index.js": "import './card.css';\n",
                "src/card.css": "a { color: red; }\n",
            },
            transform={"extractStyles": True},
        )
        assert [a.file_name for a in output.assets] == ["assets/widget.css"]
        assert output.assets[0].data == b"a{color: red}"

    def test_public_dir_copied(self, bundle):
        output = bundle(
            {
                "src/index.js": "export const a = 1;\n",
                "public/favicon.ico": "icon",
                "public/img/bg.png": "png",
            },
            copyPublicDir=True,
        )
        names = [a.file_name for a in output.assets]
        assert names == ["favicon.ico", "img/bg.png"]
