"""Tests for the -n/--dry-run feature"""

import pytest
from unittest.mock import Mock, patch
from widgetpack import BuildConfig, ConfigError, ResolutionError, WidgetBuilder, logging


@pytest.fixture
def root(tmp_path):
    """Create a small widget source tree"""
    root = tmp_path.resolve()
    src = root / "src"
    src.mkdir()
    (src / "index.js").write_text(
        "import $ from 'jquery';\n"
        "import logo from './logo.svg';\n"
        "import('./lazy').then(function (m) { m.default($, logo); });\n",
        encoding="utf8",
    )
    (src / "lazy.js").write_text("export default function (q) {}\n", encoding="utf8")
    (src / "logo.svg").write_text("<svg/>", encoding="utf8")
    return root


@pytest.fixture
def builder(root):
    """Create a production WidgetBuilder for testing"""
    config = BuildConfig.production(root=str(root), entries=["src/index.js"])
    builder = WidgetBuilder(config)
    builder.log = Mock(spec=logging.Logger)
    return builder


def plan_output(builder):
    output = []
    with patch('builtins.print', side_effect=lambda x: output.append(x)):
        builder.plan()
    return '\n'.join(str(x) for x in output)


class TestPlanMethod:
    """Tests for the plan() method"""

    def test_plan_does_not_build(self, builder, root):
        """Test that plan does not run the build or write output"""
        with patch.object(builder, 'build') as mock_build, \
             patch.object(builder, 'write_output') as mock_write, \
             patch('builtins.print'):
            builder.plan()

            mock_build.assert_not_called()
            mock_write.assert_not_called()
        assert not (root / "dist").exists()

    def test_plan_prints_sections(self, builder):
        """Test that plan produces every section"""
        full_output = plan_output(builder)

        assert "BUILD PLAN" in full_output
        assert "[Build Target]" in full_output
        assert "[Externals] (3)" in full_output
        assert "[Modules] (3)" in full_output
        assert "[Shrink Policy]" in full_output
        assert "[Size Thresholds]" in full_output
        assert "No changes were made." in full_output

    def test_plan_shows_target(self, builder):
        full_output = plan_output(builder)
        assert "XCon Widget" in full_output
        assert "production" in full_output
        assert "es2020" in full_output
        assert "dist/widget.js" in full_output

    def test_plan_shows_externals(self, builder):
        full_output = plan_output(builder)
        assert "jquery -> jQuery" in full_output
        assert "@xcons/widget -> XconWidget" in full_output

    def test_plan_shows_modules(self, builder):
        """Test modules are listed with their role and dynamic marker"""
        full_output = plan_output(builder)
        assert "src/index.js" in full_output
        assert "src/lazy.js (dynamic)" in full_output
        assert "asset     src/logo.svg" in full_output

    def test_plan_shows_shrink_policy(self, builder):
        full_output = plan_output(builder)
        assert "Compress passes:   2" in full_output
        assert "Drop statements:   console-call, debugger" in full_output
        assert "Pure functions:    console.debug, console.info" in full_output
        assert "WidgetContext" in full_output
        assert "jQuery" in full_output

    def test_plan_shows_thresholds(self, builder):
        full_output = plan_output(builder)
        assert "warn-large" in full_output
        assert "acceptable" in full_output
        assert "optimal" in full_output


class TestPlanDevelopment:
    """Tests for plan() with a development configuration"""

    def test_plan_development_policy(self, root):
        config = BuildConfig.development(root=str(root), entries=["src/index.js"])
        builder = WidgetBuilder(config)
        full_output = plan_output(builder)
        assert "development" in full_output
        assert "Compress passes:   0" in full_output
        assert "Drop statements:   (none)" in full_output
        assert "Rename:            False" in full_output


class TestPlanErrors:
    def test_plan_unresolvable(self, builder, root):
        """Test plan surfaces resolution errors without writing anything"""
        (root / "src" / "index.js").write_text("import './nope';\n", encoding="utf8")
        with patch('builtins.print'):
            with pytest.raises(ResolutionError):
                builder.plan()
        assert not (root / "dist").exists()

    def test_plan_shows_out_dir_policy(self, builder):
        assert "Empty outDir:      True" in plan_output(builder)

    def test_plan_refuses_root_as_out_dir(self, root):
        config = BuildConfig.production(root=str(root), entries=["src/index.js"], outDir=".")
        with pytest.raises(ConfigError), patch('builtins.print'):
            WidgetBuilder(config).plan()
