#!/usr/bin/env python3
"""widgetpack.py - packages a browser widget into a single production script

features:

- Resolves an ES module graph from one or more entry points into exactly one
  script artifact (widget.js). Dynamic imports are inlined, never split.
- Declared externals are never embedded: every access site reads the
  registered global name instead (jquery -> jQuery).
- Deterministic multi-pass shrinking: console/debugger dropping, pure call
  removal, dead-branch elimination and identifier renaming which never
  touches the reserved public names.
- Lifecycle hooks fired in a fixed order, with a size report classified
  against fixed budgets.

class structure:

BuildConfig
    ShrinkPolicy
    TransformOptions
    LoggerOptions

ShellCmd
    Resolver
    ScriptTransform
    TemplateTransform
    StyleTransform
    TransformStage
    WidgetBuilder

ExternalRegistry
Bundler
Shrinker
    PublicSurface
Reporter
Lifecycle

"""

import argparse
import collections
import concurrent.futures
import copy
import datetime
import enum
import gzip
import hashlib
import itertools
import json
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence, Union

from rjsmin import jsmin

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
CssFn = Callable[[str], str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

TARGETS = (
    "es2015",
    "es2016",
    "es2017",
    "es2018",
    "es2019",
    "es2020",
    "es2021",
    "es2022",
    "esnext",
)

# strict-mode reserved words; never renamed, never treated as bindings
KEYWORDS = frozenset(
    """
    await break case catch class const continue debugger default delete do
    else enum export extends false finally for function if implements import
    in instanceof interface let new null package private protected public
    return static super switch this throw true try typeof var void while with
    yield
    """.split()
)

# words that may be identifiers but carry grammar meaning in some positions
CONTEXTUAL = frozenset("as async from get of set constructor".split())

BUILTIN_GLOBALS = frozenset(
    """
    AbortController Array ArrayBuffer BigInt Blob Boolean CustomEvent DataView
    Date Element Error Event EvalError File FileReader FormData Function
    HTMLElement Image Infinity IntersectionObserver Intl JSON Map Math
    MutationObserver NaN Node Number Object Promise Proxy RangeError
    ReferenceError Reflect RegExp ResizeObserver Set String Symbol SyntaxError
    TextDecoder TextEncoder TypeError URIError URL URLSearchParams WeakMap
    WeakSet WebSocket Worker XMLHttpRequest alert arguments atob btoa
    cancelAnimationFrame clearInterval clearTimeout confirm console crypto
    customElements decodeURI decodeURIComponent document encodeURI
    encodeURIComponent eval event exports fetch frames getComputedStyle global
    globalThis history isFinite isNaN localStorage location matchMedia module
    navigator parent parseFloat parseInt performance process prompt
    queueMicrotask requestAnimationFrame require screen self sessionStorage
    setInterval setTimeout structuredClone top undefined window
    """.split()
)

PRODUCTION_CONFIG: dict[str, Any] = {
    "name": "XCon Widget",
    "mode": "production",
    "root": ".",
    "entries": ["src/index.ts"],
    "target": "es2020",
    "outDir": "dist",
    "assetsDir": "assets",
    "outputFileName": "widget.js",
    "externals": {
        "jquery": "jQuery",
        "$": "$",
        "@xcons/widget": "XconWidget",
    },
    "aliases": {"@": "src", "~xcon": "src", "~": "src"},
    "resolveExtensions": [".ts", ".js", ".json"],
    "recognizedExtensions": {
        "script": [".ts", ".js", ".mjs", ".json"],
        "template": [".tbhtml", ".html"],
        "style": [".css", ".scss", ".sass"],
    },
    "defines": {
        "process.env.NODE_ENV": '"production"',
        "global": "globalThis",
        "__XCON_DEV__": "false",
        "__XCON_VERSION__": '"1.0.0"',
        "__XCON_WIDGET_DEV_KIT__": '""',
        "__XCON_BUILD_MODE__": '"production"',
    },
    "banner": "",
    "shrink": {
        "compressPasses": 2,
        "dropStatements": ["console-call", "debugger"],
        "pureFunctionNames": ["console.info", "console.debug"],
        "reservedNames": ["Widget", "IWidget", "WidgetContext", "XconWidget"],
        "keepConsoleMethods": ["error", "warn"],
        "stripComments": True,
        "mangle": True,
    },
    "transform": {
        "minifyTemplates": True,
        "minifyStyles": True,
        "removeComments": True,
        "preserveWhitespace": False,
        "showProcessedFiles": False,
        "extractStyles": False,
        "tsCommand": ["esbuild", "--loader=ts", "--format=esm", "--log-level=warning"],
        "styleCommand": None,
    },
    "sizeThresholds": [
        {
            "byteLimit": 300000,
            "classification": "warn-large",
            "level": "warning",
            "message": "⚠️  Widget bundle is large (>300KB). Consider optimization.",
        },
        {
            "byteLimit": 100000,
            "classification": "acceptable",
            "level": "info",
            "message": "✅ Widget bundle size is acceptable (>100KB but <300KB)",
        },
    ],
    "optimalClassification": "optimal",
    "optimalMessage": "🎉 Widget bundle is optimally sized (<100KB)",
    "chunkSizeWarningLimit": 500,
    "reportCompressedSize": True,
    "manualChunks": {},
    "inlineDynamicImports": True,
    "copyPublicDir": False,
    "publicDir": "public",
    "jobs": 4,
    "logger": {
        "enabled": True,
        "logLevel": "warn",
        "prefix": "XCon-Prod",
        "timestamp": False,
        "colors": False,
    },
}

DEVELOPMENT_CONFIG: dict[str, Any] = copy.deepcopy(PRODUCTION_CONFIG)
DEVELOPMENT_CONFIG.update(
    {
        "mode": "development",
        "reportCompressedSize": False,
    }
)
DEVELOPMENT_CONFIG["defines"].update(
    {
        "process.env.NODE_ENV": '"development"',
        "__XCON_DEV__": "true",
        "__XCON_BUILD_MODE__": '"development"',
    }
)
DEVELOPMENT_CONFIG["logger"].update({"logLevel": "info", "prefix": "XCon-Dev"})

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)

# ----------------------------------------------------------------------------
# logging config

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "silent": logging.CRITICAL + 10,
}


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"

    COLORS = {
        logging.DEBUG: grey,
        logging.INFO: green,
        logging.WARNING: yellow,
        logging.ERROR: red,
        logging.CRITICAL: bold_red,
    }

    def __init__(
        self,
        prefix: str = "",
        timestamp: bool = False,
        use_color: bool = COLOR,
    ) -> None:
        super().__init__()
        self.prefix = prefix
        self.timestamp = timestamp
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        parts = []
        if self.prefix:
            parts.append(f"[{self.prefix}]")
        if self.timestamp:
            created = datetime.datetime.fromtimestamp(record.created)
            parts.append(created.strftime("%H:%M:%S"))
        level = record.levelname
        name = record.name
        if self.use_color:
            color = self.COLORS.get(record.levelno, self.grey)
            level = f"{color}{level}{self.reset}"
            name = f"{self.white}{name}{self.reset}"
        parts.append(f"{level} - {name} - {record.getMessage()}")
        text = " ".join(parts)
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return text


def setup_logging(options: "LoggerOptions", debug: bool = DEBUG) -> logging.Handler:
    """install a single stream handler honoring the configured logger options"""
    handler = logging.StreamHandler()
    handler.setFormatter(
        CustomFormatter(
            prefix=options.prefix,
            timestamp=options.timestamp,
            use_color=options.colors and COLOR,
        )
    )
    if not options.enabled:
        level = LOG_LEVELS["silent"]
    elif debug:
        level = logging.DEBUG
    else:
        level = LOG_LEVELS[options.log_level]
    logging.basicConfig(level=level, handlers=[handler], force=True)
    # the size report is always shown, like the console output it replaces
    if options.enabled:
        logging.getLogger("Reporter").setLevel(min(level, logging.INFO))
    return handler


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    pass


class ConfigError(BuildError):
    """Exception for invalid build configuration"""

    pass


class CommandError(BuildError):
    """Exception for external command execution errors"""

    pass


class SyntaxScanError(BuildError):
    """Exception for source text the tokenizer cannot scan"""

    pass


class ResolutionError(BuildError):
    """An import specifier cannot be mapped to an existing file"""

    def __init__(self, specifier: str, importer: Optional[Path] = None) -> None:
        self.specifier = specifier
        self.importer = importer
        where = f" (imported from {importer})" if importer else ""
        super().__init__(f"cannot resolve '{specifier}'{where}")


class TransformError(BuildError):
    """A collaborator failed to produce executable code from a source unit"""

    def __init__(self, unit: "ModuleUnit", cause: BaseException) -> None:
        self.unit = unit
        self.cause = cause
        super().__init__(f"failed to transform {unit.resolved_path}: {cause}")


class MultiChunkViolation(BuildError):
    """The module graph would need more than one script artifact"""

    pass


class ShrinkInvariantViolation(BuildError):
    """Renaming would alter a reserved name or produce a collision"""

    pass


# ----------------------------------------------------------------------------
# enums


class Mode(enum.Enum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Role(enum.Enum):
    SCRIPT = "script"
    TEMPLATE = "template"
    STYLE = "style"
    ASSET = "asset"


class StatementKind(enum.Enum):
    CONSOLE_CALL = "console-call"
    DEBUGGER = "debugger"


class BuildState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    TRANSFORMING = "transforming"
    BUNDLING = "bundling"
    SHRINKING = "shrinking"
    REPORTING = "reporting"
    COMPLETED = "completed"
    FAILED = "failed"


# ----------------------------------------------------------------------------
# configuration dataclasses


def _enum_value(enum_cls: type, value: Any, what: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        choices = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"invalid {what} '{value}' (expected one of: {choices})") from e


def _check_keys(data: Mapping[str, Any], known: Iterable[str], section: str) -> None:
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"unknown {section} option(s): {', '.join(unknown)}")


@dataclass(frozen=True)
class External:
    """A module supplied by the host page under a global name"""

    module_id: str
    global_name: str


@dataclass(frozen=True)
class SizeThreshold:
    """A byte budget: totals above `byte_limit` get `classification`"""

    byte_limit: int
    classification: str
    level: str = "info"
    message: str = ""

    @property
    def levelno(self) -> int:
        return LOG_LEVELS.get(self.level, logging.INFO)


@dataclass(frozen=True)
class ShrinkPolicy:
    """Compression and renaming policy for the merged script"""

    compress_passes: int = 2
    drop_statements: frozenset = frozenset(
        {StatementKind.CONSOLE_CALL, StatementKind.DEBUGGER}
    )
    pure_function_names: frozenset = frozenset()
    reserved_names: frozenset = frozenset()
    strip_comments: bool = True
    keep_console_methods: frozenset = frozenset({"error", "warn"})
    mangle: bool = True

    _KEYS = {
        "compressPasses": "compress_passes",
        "dropStatements": "drop_statements",
        "pureFunctionNames": "pure_function_names",
        "reservedNames": "reserved_names",
        "stripComments": "strip_comments",
        "keepConsoleMethods": "keep_console_methods",
        "mangle": "mangle",
    }

    def __post_init__(self) -> None:
        if not isinstance(self.compress_passes, int) or self.compress_passes < 0:
            raise ConfigError(f"invalid compressPasses: {self.compress_passes!r}")

    @property
    def is_noop(self) -> bool:
        return (
            self.compress_passes == 0
            and not self.mangle
            and not self.strip_comments
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ShrinkPolicy":
        _check_keys(data, cls._KEYS, "shrink")
        kwargs: dict[str, Any] = {}
        for key, attr in cls._KEYS.items():
            if key not in data:
                continue
            value = data[key]
            if attr == "drop_statements":
                value = frozenset(
                    _enum_value(StatementKind, v, "statement kind") for v in value
                )
            elif attr in ("pure_function_names", "reserved_names", "keep_console_methods"):
                value = frozenset(value)
            kwargs[attr] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "compressPasses": self.compress_passes,
            "dropStatements": sorted(k.value for k in self.drop_statements),
            "pureFunctionNames": sorted(self.pure_function_names),
            "reservedNames": sorted(self.reserved_names),
            "stripComments": self.strip_comments,
            "keepConsoleMethods": sorted(self.keep_console_methods),
            "mangle": self.mangle,
        }


NOOP_POLICY = ShrinkPolicy(
    compress_passes=0,
    drop_statements=frozenset(),
    strip_comments=False,
    keep_console_methods=frozenset(),
    mangle=False,
)


@dataclass(frozen=True)
class TransformOptions:
    """Per-role options for the template, style and script collaborators"""

    minify_templates: bool = True
    minify_styles: bool = True
    remove_comments: bool = True
    preserve_whitespace: bool = False
    show_processed_files: bool = False
    extract_styles: bool = False
    ts_command: tuple = ("esbuild", "--loader=ts", "--format=esm", "--log-level=warning")
    style_command: Optional[tuple] = None
    css_transforms: tuple = ()

    _KEYS = {
        "minifyTemplates": "minify_templates",
        "minifyStyles": "minify_styles",
        "removeComments": "remove_comments",
        "preserveWhitespace": "preserve_whitespace",
        "showProcessedFiles": "show_processed_files",
        "extractStyles": "extract_styles",
        "tsCommand": "ts_command",
        "styleCommand": "style_command",
    }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TransformOptions":
        _check_keys(data, cls._KEYS, "transform")
        kwargs: dict[str, Any] = {}
        for key, attr in cls._KEYS.items():
            if key not in data:
                continue
            value = data[key]
            if attr in ("ts_command", "style_command") and value is not None:
                value = tuple(shlex.split(value) if isinstance(value, str) else value)
            kwargs[attr] = value
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key, attr in self._KEYS.items():
            value = getattr(self, attr)
            out[key] = list(value) if isinstance(value, tuple) else value
        return out


@dataclass(frozen=True)
class LoggerOptions:
    """Leveled, optionally prefixed/timestamped/colorized log channel"""

    enabled: bool = True
    log_level: str = "warn"
    prefix: str = ""
    timestamp: bool = False
    colors: bool = False

    _KEYS = {
        "enabled": "enabled",
        "logLevel": "log_level",
        "prefix": "prefix",
        "timestamp": "timestamp",
        "colors": "colors",
    }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LoggerOptions":
        _check_keys(data, cls._KEYS, "logger")
        options = cls(**{cls._KEYS[k]: v for k, v in data.items()})
        if options.log_level not in LOG_LEVELS:
            raise ConfigError(f"invalid logLevel '{options.log_level}'")
        return options

    def to_dict(self) -> dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in self._KEYS.items()}


@dataclass(frozen=True)
class RecognizedExtensions:
    """Three disjoint extension sets, one per transformable role"""

    script: tuple = (".ts", ".js", ".mjs", ".json")
    template: tuple = (".tbhtml", ".html")
    style: tuple = (".css", ".scss", ".sass")

    def role_of(self, path: Path) -> Role:
        suffix = path.suffix.lower()
        for role, extensions in (
            (Role.SCRIPT, self.script),
            (Role.TEMPLATE, self.template),
            (Role.STYLE, self.style),
        ):
            if suffix in extensions:
                return role
        return Role.ASSET

    def overlaps(self) -> set[str]:
        seen: collections.Counter = collections.Counter(
            [*set(self.script), *set(self.template), *set(self.style)]
        )
        return {ext for ext, count in seen.items() if count > 1}


@dataclass(frozen=True)
class BuildConfig:
    """Immutable build configuration, created once per build invocation"""

    name: str = "XCon Widget"
    mode: Mode = Mode.PRODUCTION
    root: Path = Path(".")
    entries: tuple = ("src/index.ts",)
    target: str = "es2020"
    out_dir: str = "dist"
    assets_dir: str = "assets"
    output_file_name: str = "widget.js"
    externals: tuple = ()
    aliases: tuple = ()
    resolve_extensions: tuple = (".ts", ".js", ".json")
    recognized_extensions: RecognizedExtensions = field(
        default_factory=RecognizedExtensions
    )
    defines: tuple = ()
    banner: str = ""
    shrink: ShrinkPolicy = field(default_factory=ShrinkPolicy)
    transform: TransformOptions = field(default_factory=TransformOptions)
    size_thresholds: tuple = ()
    optimal_classification: str = "optimal"
    optimal_message: str = ""
    chunk_size_warning_limit: int = 500
    report_compressed_size: bool = True
    manual_chunks: tuple = ()
    inline_dynamic_imports: bool = True
    copy_public_dir: bool = False
    public_dir: str = "public"
    jobs: int = 4
    logger: LoggerOptions = field(default_factory=LoggerOptions)

    _KEYS = {
        "name": "name",
        "mode": "mode",
        "root": "root",
        "entries": "entries",
        "target": "target",
        "outDir": "out_dir",
        "assetsDir": "assets_dir",
        "outputFileName": "output_file_name",
        "externals": "externals",
        "aliases": "aliases",
        "resolveExtensions": "resolve_extensions",
        "recognizedExtensions": "recognized_extensions",
        "defines": "defines",
        "banner": "banner",
        "shrink": "shrink",
        "transform": "transform",
        "sizeThresholds": "size_thresholds",
        "optimalClassification": "optimal_classification",
        "optimalMessage": "optimal_message",
        "chunkSizeWarningLimit": "chunk_size_warning_limit",
        "reportCompressedSize": "report_compressed_size",
        "manualChunks": "manual_chunks",
        "inlineDynamicImports": "inline_dynamic_imports",
        "copyPublicDir": "copy_public_dir",
        "publicDir": "public_dir",
        "jobs": "jobs",
        "logger": "logger",
    }

    def __post_init__(self) -> None:
        # thresholds are always evaluated from the largest limit down
        ordered = tuple(
            sorted(self.size_thresholds, key=lambda t: t.byte_limit, reverse=True)
        )
        object.__setattr__(self, "size_thresholds", ordered)
        object.__setattr__(self, "root", Path(self.root))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}' {self.mode.value}>"

    # -- derived views

    @property
    def is_production(self) -> bool:
        return self.mode is Mode.PRODUCTION

    @property
    def shrink_policy(self) -> ShrinkPolicy:
        """shrinking only applies to production builds"""
        return self.shrink if self.is_production else NOOP_POLICY

    @property
    def alias_map(self) -> dict[str, str]:
        return dict(self.aliases)

    @property
    def define_map(self) -> dict[str, str]:
        return dict(self.defines)

    @property
    def root_path(self) -> Path:
        return self.root.resolve()

    @property
    def out_path(self) -> Path:
        return self.root_path / self.out_dir

    @property
    def public_path(self) -> Path:
        return self.root_path / self.public_dir

    # -- construction

    @classmethod
    def from_dict(
        cls, data: Mapping[str, Any], base_dir: Optional[Pathlike] = None
    ) -> "BuildConfig":
        """build a config from the declarative camelCase mapping"""
        _check_keys(data, cls._KEYS, "build")
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            attr = cls._KEYS[key]
            if attr == "mode":
                value = _enum_value(Mode, value, "mode")
            elif attr == "root":
                value = Path(value)
                if base_dir is not None and not value.is_absolute():
                    value = Path(base_dir) / value
            elif attr == "externals":
                value = _parse_externals(value)
            elif attr in ("aliases", "defines", "manual_chunks"):
                value = tuple((str(k), str(v)) for k, v in dict(value).items())
            elif attr in ("entries", "resolve_extensions"):
                value = tuple(value)
            elif attr == "recognized_extensions":
                _check_keys(value, ("script", "template", "style"), "recognizedExtensions")
                value = RecognizedExtensions(
                    **{role: tuple(exts) for role, exts in value.items()}
                )
            elif attr == "shrink":
                value = ShrinkPolicy.from_dict(value)
            elif attr == "transform":
                value = TransformOptions.from_dict(value)
            elif attr == "logger":
                value = LoggerOptions.from_dict(value)
            elif attr == "size_thresholds":
                value = tuple(_parse_threshold(t) for t in value)
            kwargs[attr] = value
        config = cls(**kwargs)
        config.validate()
        return config

    @classmethod
    def from_file(cls, path: Pathlike, mode: Optional[str] = None) -> "BuildConfig":
        """load a json configuration file over the defaults of its mode

        A relative root is taken from the file's folder.
        """
        path = Path(path)
        return cls.from_dict(layer_config(read_config(path), mode), base_dir=path.parent)

    @classmethod
    def production(cls, **overrides: Any) -> "BuildConfig":
        data = copy.deepcopy(PRODUCTION_CONFIG)
        data.update(overrides)
        return cls.from_dict(data)

    @classmethod
    def development(cls, **overrides: Any) -> "BuildConfig":
        data = copy.deepcopy(DEVELOPMENT_CONFIG)
        data.update(overrides)
        return cls.from_dict(data)

    def validate(self) -> None:
        """check fatal misconfiguration; suspicious settings only warn"""
        log = logging.getLogger(self.__class__.__name__)
        if self.target not in TARGETS:
            raise ConfigError(f"unknown target '{self.target}'")
        if not self.output_file_name or "/" in self.output_file_name:
            raise ConfigError(f"invalid outputFileName '{self.output_file_name}'")
        if not self.entries:
            raise ConfigError("at least one entry point is required")
        if self.jobs < 1:
            raise ConfigError(f"jobs must be positive, got {self.jobs}")
        if self.is_production and self.shrink.compress_passes < 1:
            raise ConfigError("compressPasses must be a positive integer")
        if self.manual_chunks:
            raise MultiChunkViolation(
                "manualChunks would split the widget into several script files"
            )
        if not self.inline_dynamic_imports:
            raise MultiChunkViolation(
                "dynamic imports must be inlined into the single widget script"
            )
        overlaps = self.recognized_extensions.overlaps()
        if overlaps:
            log.warning(
                "extensions in more than one role (first role wins): %s",
                ", ".join(sorted(overlaps)),
            )

    def check_out_dir(self) -> bool:
        """whether outDir may be emptied before the new output moves in

        Only an outDir strictly inside root is emptied; one outside root
        keeps its other files.

        Raises:
            ConfigError: If outDir is root, an ancestor of root, or holds an entry
        """
        root = self.root_path
        out = self.out_path.resolve()
        if out == root or out in root.parents:
            raise ConfigError(f"outDir '{self.out_dir}' would replace the project root {root}")
        for entry in self.entries:
            if out in (root / entry).resolve().parents:
                raise ConfigError(f"outDir '{self.out_dir}' contains the entry '{entry}'")
        return root in out.parents

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "mode": self.mode.value,
            "root": str(self.root),
            "entries": list(self.entries),
            "target": self.target,
            "outDir": self.out_dir,
            "assetsDir": self.assets_dir,
            "outputFileName": self.output_file_name,
            "externals": [
                {"moduleId": e.module_id, "globalName": e.global_name}
                for e in self.externals
            ],
            "aliases": dict(self.aliases),
            "resolveExtensions": list(self.resolve_extensions),
            "recognizedExtensions": {
                "script": list(self.recognized_extensions.script),
                "template": list(self.recognized_extensions.template),
                "style": list(self.recognized_extensions.style),
            },
            "defines": dict(self.defines),
            "banner": self.banner,
            "shrink": self.shrink.to_dict(),
            "transform": self.transform.to_dict(),
            "sizeThresholds": [
                {
                    "byteLimit": t.byte_limit,
                    "classification": t.classification,
                    "level": t.level,
                    "message": t.message,
                }
                for t in self.size_thresholds
            ],
            "optimalClassification": self.optimal_classification,
            "optimalMessage": self.optimal_message,
            "chunkSizeWarningLimit": self.chunk_size_warning_limit,
            "reportCompressedSize": self.report_compressed_size,
            "manualChunks": dict(self.manual_chunks),
            "inlineDynamicImports": self.inline_dynamic_imports,
            "copyPublicDir": self.copy_public_dir,
            "publicDir": self.public_dir,
            "jobs": self.jobs,
            "logger": self.logger.to_dict(),
        }

    def write_json(self, to: Pathlike) -> None:
        """Write configuration to JSON file"""
        with open(to, "w", encoding="utf8") as f:
            json.dump(self.to_dict(), f, indent=4, ensure_ascii=False)


def _parse_externals(value: Any) -> tuple:
    """accept {id: global} or [{moduleId, globalName}] / [[id, global]]"""
    if isinstance(value, Mapping):
        return tuple(External(str(k), str(v)) for k, v in value.items())
    externals = []
    for item in value:
        if isinstance(item, Mapping):
            externals.append(External(item["moduleId"], item["globalName"]))
        else:
            module_id, global_name = item
            externals.append(External(module_id, global_name))
    return tuple(externals)


def _parse_threshold(item: Mapping[str, Any]) -> SizeThreshold:
    _check_keys(item, ("byteLimit", "classification", "level", "message"), "threshold")
    threshold = SizeThreshold(
        byte_limit=int(item["byteLimit"]),
        classification=item["classification"],
        level=item.get("level", "info"),
        message=item.get("message", ""),
    )
    if threshold.level not in LOG_LEVELS:
        raise ConfigError(f"invalid threshold level '{threshold.level}'")
    return threshold


def merge_config(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """overlay a partial configuration on base; nested mappings merge per key"""
    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def layer_config(data: Mapping[str, Any], mode: Optional[str] = None) -> dict[str, Any]:
    """data on top of the defaults of its mode (`mode` wins over data's own)"""
    mode = _enum_value(Mode, mode or data.get("mode", Mode.PRODUCTION.value), "mode").value
    defaults = DEVELOPMENT_CONFIG if mode == Mode.DEVELOPMENT.value else PRODUCTION_CONFIG
    merged = merge_config(defaults, data)
    merged["mode"] = mode
    return merged


def read_config(path: Pathlike) -> dict[str, Any]:
    """the raw mapping of a json configuration file"""
    try:
        with open(path, encoding="utf8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must hold a json object")
    return data


# ----------------------------------------------------------------------------
# build data model


@dataclass(frozen=True)
class ModuleUnit:
    """One resolved source file"""

    specifier: str
    resolved_path: Path
    role: Role
    raw_content: bytes

    @property
    def text(self) -> str:
        return self.raw_content.decode("utf8")


@dataclass(frozen=True)
class IntermediateFragment:
    """Executable module code produced from a ModuleUnit"""

    source_unit: ModuleUnit
    emitted_code: str
    source_map: Optional[str] = None
    styles: Optional[str] = None


@dataclass(frozen=True)
class BundleArtifact:
    """The single packaged script"""

    file_name: str
    code: str
    kind: str = "chunk"

    @property
    def data(self) -> bytes:
        return self.code.encode("utf8")

    @property
    def byte_length(self) -> int:
        return len(self.data)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.data).hexdigest()


@dataclass(frozen=True)
class AssetArtifact:
    """A non-script resource copied verbatim"""

    file_name: str
    data: bytes
    kind: str = "asset"

    @property
    def byte_length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class BundleOutput:
    """Final artifact set handed to hooks; read-only by construction"""

    chunk: BundleArtifact
    assets: tuple = ()

    @property
    def artifacts(self) -> tuple:
        return (self.chunk, *self.assets)


@dataclass(frozen=True)
class ReportEntry:
    name: str
    size_bytes: int
    kind: str
    gzip_bytes: Optional[int] = None


@dataclass(frozen=True)
class SizeReport:
    """Per-artifact and total sizes with the budget classification"""

    entries: tuple
    total_bytes: int
    classification: str
    threshold: SizeThreshold

    def to_dict(self) -> dict[str, Any]:
        return {
            "perArtifact": [
                {
                    "name": e.name,
                    "sizeBytes": e.size_bytes,
                    "kind": e.kind,
                    "gzipBytes": e.gzip_bytes,
                }
                for e in self.entries
            ],
            "totalBytes": self.total_bytes,
            "classification": self.classification,
        }


@dataclass(frozen=True)
class BuildResult:
    output: BundleOutput
    report: SizeReport
    out_dir: Optional[Path] = None


# ----------------------------------------------------------------------------
# javascript tokens


class TokenList(list):
    """tokens of one source text plus the whitespace after the last token"""

    tail: str = ""


@dataclass
class Token:
    """A javascript token and the exact source text preceding it"""

    kind: str
    value: str
    pre: str = ""

    @property
    def newline_before(self) -> bool:
        return "\n" in self.pre

    def with_value(self, value: str) -> "Token":
        return Token(self.kind, value, self.pre)


IDENT_RE = re.compile(r"[A-Za-z_$\u0080-\uffff][\w$\u0080-\uffff]*")
NUMBER_RE = re.compile(
    r"0[xXoObB][0-9a-fA-F_]+n?"
    r"|(?:\d[\d_]*(?:\.[\d_]*)?|\.\d[\d_]*)(?:[eE][+-]?\d[\d_]*)?n?"
)
PUNCTUATORS = sorted(
    """
    >>>= ... === !== **= <<= >>= >>> &&= ||= ??= => == != <= >= && || ?? ?.
    ++ -- += -= *= /= %= &= |= ^= ** << >> { } ( ) [ ] ; , < > + - * / % & |
    ^ ! ~ ? : = . @
    """.split(),
    key=len,
    reverse=True,
)
REGEX_AFTER_NAMES = frozenset(
    "return typeof instanceof in of new delete void throw case do else yield await".split()
)
EXPRESSION_KEYWORDS = frozenset(
    "return typeof instanceof in of new delete void throw yield await".split()
)
STATEMENT_BOUNDARY = frozenset((";", "{", "}"))


def _scan_string(code: str, i: int) -> int:
    quote = code[i]
    j = i + 1
    n = len(code)
    while j < n:
        c = code[j]
        if c == "\\":
            j += 2
            continue
        if c == quote:
            return j + 1
        if c == "\n":
            break
        j += 1
    raise SyntaxScanError(f"unterminated string at offset {i}")


def _scan_template(code: str, j: int) -> tuple[int, bool]:
    """scan template text from j; returns (end, stopped_at_substitution)"""
    n = len(code)
    while j < n:
        c = code[j]
        if c == "\\":
            j += 2
        elif c == "`":
            return j + 1, False
        elif c == "$" and code.startswith("${", j):
            return j + 2, True
        else:
            j += 1
    raise SyntaxScanError("unterminated template literal")


def _scan_regex(code: str, i: int) -> int:
    j = i + 1
    n = len(code)
    in_class = False
    while j < n:
        c = code[j]
        if c == "\\":
            j += 2
            continue
        if c == "\n":
            break
        if in_class:
            if c == "]":
                in_class = False
        elif c == "[":
            in_class = True
        elif c == "/":
            j += 1
            while j < n and (code[j].isalnum() or code[j] in "_$"):
                j += 1
            return j
        j += 1
    raise SyntaxScanError(f"unterminated regular expression at offset {i}")


def _regex_allowed(prev: Optional[Token], closed_head: bool = False) -> bool:
    """whether a `/` after prev starts a regular expression

    `closed_head` tells whether a `)` prev closed an if/while/for/with head.
    """
    if prev is None:
        return True
    if prev.kind == "punct":
        if prev.value == ")":
            return closed_head
        return prev.value not in ("]", "}")
    if prev.kind == "name":
        return prev.value in REGEX_AFTER_NAMES
    if prev.kind == "template":
        return prev.value.endswith("${")
    return False


def tokenize(code: str) -> TokenList:
    """split javascript source into tokens, keeping whitespace in `pre`"""
    tokens = TokenList()
    braces: list[str] = []
    # one flag per open paren: does it hold an if/while/for/with head
    parens: list[bool] = []
    closed_head = False
    last: Optional[Token] = None
    n = len(code)
    i = 0
    if code.startswith("#!"):
        i = code.find("\n")
        i = n if i == -1 else i
    pending = i
    while i < n:
        ch = code[i]
        if ch.isspace() or ch == "\ufeff":
            i += 1
            continue
        pre = code[pending:i]
        if code.startswith("//", i):
            end = code.find("\n", i)
            end = n if end == -1 else end
            kind = "comment"
        elif code.startswith("/*", i):
            end = code.find("*/", i + 2)
            if end == -1:
                raise SyntaxScanError(f"unterminated comment at offset {i}")
            end += 2
            kind = "comment"
        elif ch in "'\"":
            end = _scan_string(code, i)
            kind = "str"
        elif ch == "`" or (ch == "}" and braces and braces[-1] == "`"):
            if ch == "}":
                braces.pop()
            end, substitution = _scan_template(code, i + 1)
            if substitution:
                braces.append("`")
            kind = "template"
        elif ch.isdigit() or (ch == "." and i + 1 < n and code[i + 1].isdigit()):
            m = NUMBER_RE.match(code, i)
            assert m is not None
            end = m.end()
            kind = "num"
        elif ch == "#" and IDENT_RE.match(code, i + 1):
            end = IDENT_RE.match(code, i + 1).end()  # type: ignore[union-attr]
            kind = "private"
        elif IDENT_RE.match(code, i):
            end = IDENT_RE.match(code, i).end()  # type: ignore[union-attr]
            kind = "name"
        elif ch == "/" and _regex_allowed(last, closed_head):
            end = _scan_regex(code, i)
            kind = "regex"
        else:
            for punct in PUNCTUATORS:
                if code.startswith(punct, i):
                    break
            else:
                raise SyntaxScanError(f"unexpected character {ch!r} at offset {i}")
            if punct == "?." and i + 2 < n and code[i + 2].isdigit():
                punct = "?"
            if punct == "{":
                braces.append("{")
            elif punct == "}" and braces:
                braces.pop()
            elif punct == "(":
                parens.append(_is_name(last, "if", "while", "for", "with"))
            elif punct == ")":
                closed_head = parens.pop() if parens else False
            end = i + len(punct)
            kind = "punct"
        tok = Token(kind, code[i:end], pre)
        tokens.append(tok)
        if kind != "comment":
            last = tok
        i = pending = end
    tokens.tail = code[pending:]
    return tokens


def render(tokens: Sequence[Token]) -> str:
    """reproduce source text, whitespace included"""
    return "".join(t.pre + t.value for t in tokens) + getattr(tokens, "tail", "")


def _ends_expression(tok: Token) -> bool:
    if tok.kind in ("name", "num", "str", "regex", "private"):
        return True
    if tok.kind == "template":
        return tok.value.endswith("`")
    return tok.value in (")", "]", "}", "++", "--")


def _may_start_statement(tok: Token) -> bool:
    if tok.kind in ("name", "num", "str", "regex", "private"):
        return True
    if tok.kind == "template":
        return tok.value.startswith("`")
    return tok.value in ("++", "--", "{", "!", "~")


def _next_index(tokens: Sequence[Token], i: int) -> int:
    """index of the first non-comment token at or after i, or -1"""
    n = len(tokens)
    while i < n:
        if tokens[i].kind != "comment":
            return i
        i += 1
    return -1


def _prev_index(tokens: Sequence[Token], i: int) -> int:
    """index of the last non-comment token at or before i, or -1"""
    while i >= 0:
        if tokens[i].kind != "comment":
            return i
        i -= 1
    return -1


def _prev_sig(tokens: Sequence[Token], i: int) -> Optional[Token]:
    j = _prev_index(tokens, i - 1)
    return tokens[j] if j >= 0 else None


def _next_sig(tokens: Sequence[Token], i: int) -> Optional[Token]:
    j = _next_index(tokens, i + 1)
    return tokens[j] if j >= 0 else None


def _is_punct(tok: Optional[Token], *values: str) -> bool:
    return tok is not None and tok.kind == "punct" and tok.value in values


def _is_name(tok: Optional[Token], *values: str) -> bool:
    return tok is not None and tok.kind == "name" and (not values or tok.value in values)


def _is_member_access(tokens: Sequence[Token], i: int) -> bool:
    return _is_punct(_prev_sig(tokens, i), ".", "?.")


def _is_statement_start(tokens: Sequence[Token], i: int) -> bool:
    prev = _prev_sig(tokens, i)
    return prev is None or _is_punct(prev, *STATEMENT_BOUNDARY)


def _depth_delta(tok: Token) -> int:
    if tok.kind == "punct":
        if tok.value in ("(", "[", "{"):
            return 1
        if tok.value in (")", "]", "}"):
            return -1
        return 0
    if tok.kind == "template":
        delta = -1 if tok.value.startswith("}") else 0
        return delta + (1 if tok.value.endswith("${") else 0)
    return 0


def _match_close(tokens: Sequence[Token], i: int) -> int:
    """index of the bracket closing the one opened at i"""
    depth = 0
    for j in range(i, len(tokens)):
        depth += _depth_delta(tokens[j])
        if depth == 0:
            return j
    raise SyntaxScanError(f"unbalanced '{tokens[i].value}'")


def _match_open(tokens: Sequence[Token], i: int) -> int:
    """index of the bracket opening the one closed at i"""
    depth = 0
    for j in range(i, -1, -1):
        depth -= _depth_delta(tokens[j])
        if depth == 0:
            return j
    raise SyntaxScanError(f"unbalanced '{tokens[i].value}'")


def _consume_semicolon(tokens: Sequence[Token], j: int) -> int:
    k = _next_index(tokens, j)
    if k >= 0 and _is_punct(tokens[k], ";"):
        return k + 1
    return j


def _statement_end(tokens: Sequence[Token], start: int) -> int:
    """index where a simple statement or expression starting at start ends

    Stops at a `;`, before a closing bracket of the enclosing level, before
    a top-level `,`, or where automatic semicolon insertion would end it.
    """
    depth = 0
    last: Optional[Token] = None
    j = start
    n = len(tokens)
    while j < n:
        tok = tokens[j]
        if tok.kind == "comment":
            j += 1
            continue
        delta = _depth_delta(tok)
        if depth == 0:
            if delta < 0:
                return j
            if _is_punct(tok, ";", ","):
                return j
            if (
                last is not None
                and tok.newline_before
                and _ends_expression(last)
                and _may_start_statement(tok)
            ):
                return j
        depth += delta
        last = tok
        j += 1
    return n


# ----------------------------------------------------------------------------
# javascript name analysis


DESTRUCTURING_KEYWORDS = frozenset(("var", "let", "const", "default"))


def _brace_opens_expression(prev: Optional[Token], colon_is_expression: bool) -> bool:
    if prev is None:
        return False
    if prev.kind == "punct":
        if prev.value == ":":
            return colon_is_expression
        return prev.value not in (")", "]", "}", ";", "{", "=>")
    if prev.kind == "template":
        return prev.value.endswith("${")
    if prev.kind == "name":
        return prev.value in EXPRESSION_KEYWORDS or prev.value in DESTRUCTURING_KEYWORDS
    return False


def _name_role(
    tokens: Sequence[Token], i: int, prev: Optional[Token], context: str
) -> Optional[str]:
    tok = tokens[i]
    if tok.value in KEYWORDS:
        return None
    if _is_punct(prev, ".", "?."):
        return "property"
    nxt = _next_sig(tokens, i)
    if context == "object":
        at_member = _is_punct(prev, "{", ",")
        after_modifier = _is_name(prev, "get", "set", "async") or _is_punct(prev, "*")
        if at_member and _is_punct(nxt, ":"):
            return "key"
        if (at_member or after_modifier) and _is_punct(nxt, "("):
            return "key"
        if at_member and tok.value in ("get", "set", "async") and (
            nxt is not None and (nxt.kind in ("name", "str", "num") or _is_punct(nxt, "[", "*"))
        ):
            return "key"
        if at_member and _is_punct(nxt, ",", "}", "="):
            return "shorthand"
        return "ref"
    if context == "class":
        member = (
            prev is None
            or _is_punct(prev, "{", "}", ";", "*")
            or _is_name(prev, "static", "get", "set", "async")
            or (tok.newline_before and _ends_expression(prev))
        )
        return "key" if member else "ref"
    if context == "block":
        if _is_punct(nxt, ":") and (prev is None or _is_punct(prev, *STATEMENT_BOUNDARY)):
            return "label"
    if _is_name(prev, "break", "continue") and not tok.newline_before:
        return "label"
    return "ref"


def classify_names(tokens: Sequence[Token]) -> list[Optional[str]]:
    """role of every name token: property, key, shorthand, label or ref"""
    roles: list[Optional[str]] = [None] * len(tokens)
    stack: list[str] = []
    ternaries: list[int] = [0]
    class_depth: Optional[int] = None
    colon_is_expression = False
    prev: Optional[Token] = None
    for i, tok in enumerate(tokens):
        if tok.kind == "comment":
            continue
        context = stack[-1] if stack else "block"
        value = tok.value
        if tok.kind == "punct":
            if value == "{":
                if class_depth is not None and class_depth == len(stack):
                    opened = "class"
                    class_depth = None
                elif _brace_opens_expression(prev, colon_is_expression):
                    opened = "object"
                else:
                    opened = "block"
                stack.append(opened)
                ternaries.append(0)
            elif value in ("(", "["):
                stack.append("paren")
                ternaries.append(0)
            elif value in (")", "]", "}"):
                if stack:
                    stack.pop()
                    ternaries.pop()
            elif value == "?":
                ternaries[-1] += 1
            elif value == ":":
                if ternaries[-1] > 0:
                    ternaries[-1] -= 1
                    colon_is_expression = True
                else:
                    colon_is_expression = context == "object"
        elif tok.kind == "template":
            if value.startswith("}") and stack:
                stack.pop()
                ternaries.pop()
            if value.endswith("${"):
                stack.append("paren")
                ternaries.append(0)
        elif tok.kind == "name":
            if (
                value == "class"
                and not _is_punct(prev, ".", "?.")
                and not _is_punct(_next_sig(tokens, i), ":")
            ):
                class_depth = len(stack)
            roles[i] = _name_role(tokens, i, prev, context)
        prev = tok
    return roles


def _skip_default(tokens: Sequence[Token], i: int, limit: int) -> int:
    depth = 0
    while i < limit:
        tok = tokens[i]
        delta = _depth_delta(tok)
        if depth == 0 and (delta < 0 or _is_punct(tok, ",")):
            return i
        depth += delta
        i += 1
    return limit


def pattern_bindings(tokens: Sequence[Token], open_idx: int) -> set[str]:
    """names bound by a parameter list or destructuring pattern"""
    close = _match_close(tokens, open_idx)
    names: set[str] = set()
    levels = ["object" if tokens[open_idx].value == "{" else "list"]
    i = open_idx + 1
    while i < close:
        tok = tokens[i]
        if tok.kind == "punct":
            prev = _prev_sig(tokens, i)
            if tok.value == "=":
                i = _skip_default(tokens, i + 1, close)
                continue
            if tok.value == "[" and levels[-1] == "object" and _is_punct(prev, "{", ","):
                i = _match_close(tokens, i) + 1
                continue
            if tok.value == "{":
                levels.append("object")
            elif tok.value == "[":
                levels.append("list")
            elif tok.value in ("}", "]") and len(levels) > 1:
                levels.pop()
        elif tok.kind == "name" and tok.value not in KEYWORDS:
            nxt = _next_sig(tokens, i)
            if not (levels[-1] == "object" and _is_punct(nxt, ":")):
                names.add(tok.value)
        i += 1
    return names


def declarator_bindings(tokens: Sequence[Token], j: int) -> set[str]:
    """names declared by a var/let/const declarator list starting at j"""
    names: set[str] = set()
    while 0 <= j < len(tokens):
        tok = tokens[j]
        if tok.kind == "name" and tok.value not in KEYWORDS:
            names.add(tok.value)
            j = _next_index(tokens, j + 1)
        elif _is_punct(tok, "{", "["):
            names |= pattern_bindings(tokens, j)
            j = _next_index(tokens, _match_close(tokens, j) + 1)
        else:
            break
        if j >= 0 and _is_punct(tokens[j], "="):
            j = _next_index(tokens, _statement_end(tokens, j + 1))
        if j >= 0 and _is_punct(tokens[j], ","):
            j = _next_index(tokens, j + 1)
            continue
        break
    return names


def declared_names(
    tokens: Sequence[Token], roles: Optional[Sequence[Optional[str]]] = None
) -> set[str]:
    """every name introduced by a declaration, parameter or catch clause"""
    if roles is None:
        roles = classify_names(tokens)
    names: set[str] = set()
    for i, tok in enumerate(tokens):
        if tok.kind == "name" and not _is_member_access(tokens, i):
            value = tok.value
            j = _next_index(tokens, i + 1)
            if j < 0:
                continue
            if value in ("var", "let", "const"):
                names |= declarator_bindings(tokens, j)
            elif value == "function":
                if _is_punct(tokens[j], "*"):
                    j = _next_index(tokens, j + 1)
                if j >= 0 and _is_name(tokens[j]) and tokens[j].value not in KEYWORDS:
                    names.add(tokens[j].value)
                    j = _next_index(tokens, j + 1)
                if j >= 0 and _is_punct(tokens[j], "("):
                    names |= pattern_bindings(tokens, j)
            elif value == "class":
                if _is_name(tokens[j]) and tokens[j].value not in KEYWORDS:
                    names.add(tokens[j].value)
            elif value == "catch" and _is_punct(tokens[j], "("):
                names |= pattern_bindings(tokens, j)
        elif _is_punct(tok, "=>"):
            p = _prev_index(tokens, i - 1)
            if p < 0:
                continue
            if _is_name(tokens[p]) and tokens[p].value not in KEYWORDS:
                names.add(tokens[p].value)
            elif _is_punct(tokens[p], ")"):
                names |= pattern_bindings(tokens, _match_open(tokens, p))
        elif _is_punct(tok, "("):
            p = _prev_index(tokens, i - 1)
            if p >= 0 and roles[p] == "key":
                after = _next_sig(tokens, _match_close(tokens, i))
                if _is_punct(after, "{"):
                    names |= pattern_bindings(tokens, i)
    return names - KEYWORDS


def _bracket_pairs(tokens: Sequence[Token]) -> dict[int, int]:
    """closing index of every opening bracket, template substitutions included"""
    pairs: dict[int, int] = {}
    stack: list[int] = []
    for i, tok in enumerate(tokens):
        if tok.kind == "template" and tok.value.startswith("}"):
            if stack:
                pairs[stack.pop()] = i
            if tok.value.endswith("${"):
                stack.append(i)
            continue
        delta = _depth_delta(tok)
        if delta > 0:
            stack.append(i)
        elif delta < 0 and stack:
            pairs[stack.pop()] = i
    return pairs


def _opens_function_body(
    tokens: Sequence[Token], roles: Sequence[Optional[str]], i: int
) -> bool:
    p = _prev_index(tokens, i - 1)
    if p < 0:
        return False
    if _is_punct(tokens[p], "=>"):
        return True
    if not _is_punct(tokens[p], ")"):
        return False
    q = _prev_index(tokens, _match_open(tokens, p) - 1)
    if q < 0:
        return False
    head = tokens[q]
    if _is_name(head, "function") or roles[q] == "key":
        return True
    before = _prev_sig(tokens, q)
    return (
        _is_name(head)
        and head.value not in KEYWORDS
        and (_is_name(before, "function") or _is_punct(before, "*"))
    )


def _declares_statement(tokens: Sequence[Token], i: int) -> bool:
    """whether the function/class keyword at i starts a declaration"""
    p = _prev_index(tokens, i - 1)
    if p >= 0 and _is_name(tokens[p], "async"):
        p = _prev_index(tokens, p - 1)
    return p < 0 or _is_punct(tokens[p], *STATEMENT_BOUNDARY)


def binding_scopes(
    tokens: Sequence[Token], roles: Optional[Sequence[Optional[str]]] = None
) -> dict[str, list[tuple[int, int]]]:
    """inclusive token ranges within which each declared name is bound

    A range never reaches past the real scope of its binding: constructs
    that are not understood get the smaller range.
    """
    if roles is None:
        roles = classify_names(tokens)
    pairs = _bracket_pairs(tokens)
    last = len(tokens) - 1
    scopes: dict[str, list[tuple[int, int]]] = collections.defaultdict(list)
    # open brackets as (index, opens a function body)
    stack: list[tuple[int, bool]] = []

    def close(i: int) -> int:
        return pairs.get(i, last)

    def function_scope() -> tuple[int, int]:
        for open_idx, is_body in reversed(stack):
            if is_body:
                return open_idx, close(open_idx)
        return 0, last

    def block_scope() -> tuple[int, int]:
        if not stack:
            return 0, last
        open_idx = stack[-1][0]
        head = _prev_sig(tokens, open_idx)
        if _is_name(head, "await"):
            head = _prev_sig(tokens, _prev_index(tokens, open_idx - 1))
        if _is_punct(tokens[open_idx], "(") and _is_name(head, "for"):
            end = branch_end(tokens, _next_index(tokens, close(open_idx) + 1))
            if end > 0:
                return open_idx, end - 1
        return open_idx, close(open_idx)

    def function_end(paren: int) -> int:
        body = _next_index(tokens, close(paren) + 1)
        if body >= 0 and _is_punct(tokens[body], "{"):
            return close(body)
        return close(paren)

    def bind(names: Iterable[str], scope: tuple[int, int]) -> None:
        for name in names:
            if name not in KEYWORDS:
                scopes[name].append(scope)

    for i, tok in enumerate(tokens):
        if tok.kind == "template":
            if tok.value.startswith("}") and stack:
                stack.pop()
            if tok.value.endswith("${"):
                stack.append((i, False))
            continue
        if tok.kind == "punct":
            value = tok.value
            if value in ("(", "[", "{"):
                if value == "(":
                    p = _prev_index(tokens, i - 1)
                    if p >= 0 and roles[p] == "key":
                        bind(pattern_bindings(tokens, i), (i, function_end(i)))
                body = value == "{" and _opens_function_body(tokens, roles, i)
                stack.append((i, body))
            elif value in (")", "]", "}"):
                if stack:
                    stack.pop()
            elif value == "=>":
                p = _prev_index(tokens, i - 1)
                body_start = _next_index(tokens, i + 1)
                if p < 0 or body_start < 0:
                    continue
                if _is_punct(tokens[body_start], "{"):
                    end = close(body_start)
                else:
                    end = _statement_end(tokens, body_start)
                if _is_punct(tokens[p], ")"):
                    start = _match_open(tokens, p)
                    bind(pattern_bindings(tokens, start), (start, end))
                elif _is_name(tokens[p]):
                    bind([tokens[p].value], (p, end))
            continue
        if tok.kind != "name" or _is_member_access(tokens, i):
            continue
        j = _next_index(tokens, i + 1)
        if j < 0:
            continue
        if tok.value == "var":
            bind(declarator_bindings(tokens, j), function_scope())
        elif tok.value in ("let", "const"):
            bind(declarator_bindings(tokens, j), block_scope())
        elif tok.value == "function":
            if _is_punct(tokens[j], "*"):
                j = _next_index(tokens, j + 1)
            name = None
            if j >= 0 and _is_name(tokens[j]) and tokens[j].value not in KEYWORDS:
                name = tokens[j].value
                j = _next_index(tokens, j + 1)
            if j < 0 or not _is_punct(tokens[j], "("):
                continue
            end = function_end(j)
            bind(pattern_bindings(tokens, j), (j, end))
            if name is not None:
                # a function expression's name is only visible inside it
                bind([name], block_scope() if _declares_statement(tokens, i) else (i, end))
        elif tok.value == "class":
            if not _is_name(tokens[j]) or tokens[j].value in KEYWORDS:
                continue
            k = j
            while k >= 0 and not _is_punct(tokens[k], "{"):
                k = _next_index(tokens, close(k) + 1 if _depth_delta(tokens[k]) > 0 else k + 1)
            end = close(k) if k >= 0 else last
            bind([tokens[j].value], block_scope() if _declares_statement(tokens, i) else (i, end))
        elif tok.value == "catch" and _is_punct(tokens[j], "("):
            block = _next_index(tokens, close(j) + 1)
            bind(pattern_bindings(tokens, j), (j, close(block) if block >= 0 else close(j)))
    return dict(scopes)


def free_names(
    tokens: Sequence[Token],
    roles: Sequence[Optional[str]],
    scopes: Mapping[str, Sequence[tuple[int, int]]],
) -> set[str]:
    """names referenced somewhere outside every scope that declares them"""
    free: set[str] = set()
    for k, tok in enumerate(tokens):
        if roles[k] in ("ref", "shorthand") and tok.value not in free:
            if not any(start <= k <= end for start, end in scopes.get(tok.value, ())):
                free.add(tok.value)
    return free


def _chain_end(tokens: Sequence[Token], i: int, segments: Sequence[str]) -> int:
    """end index if a dotted name chain starts at i, else -1"""
    j = i
    for n, segment in enumerate(segments):
        if n:
            if j < 0 or not _is_punct(tokens[j], "."):
                return -1
            j = _next_index(tokens, j + 1)
        if j < 0 or not _is_name(tokens[j]) or tokens[j].value != segment:
            return -1
        j += 1
    return j


def _as_operand(expression: str) -> str:
    """parenthesize a replacement unless it is a single operand"""
    try:
        tokens = [t for t in tokenize(expression) if t.kind != "comment"]
    except SyntaxScanError:
        return f"({expression})"
    if len(tokens) <= 1 or all(
        t.kind == "name" or _is_punct(t, ".") for t in tokens
    ):
        return expression
    return f"({expression})"


def replace_references(code: str, replacements: Mapping[str, str]) -> str:
    """rewrite identifier references (and dotted chains) to other expressions

    Property names, object keys, class members and labels are left alone;
    shorthand properties are expanded so the key survives.
    """
    if not replacements:
        return code
    tokens = tokenize(code)
    roles = classify_names(tokens)
    chains: dict[str, list[tuple[list[str], str]]] = {}
    for key, expression in replacements.items():
        segments = key.split(".")
        chains.setdefault(segments[0], []).append((segments, _as_operand(expression)))
    for candidates in chains.values():
        candidates.sort(key=lambda c: len(c[0]), reverse=True)
    out: list[Token] = []
    i = 0
    n = len(tokens)
    while i < n:
        tok = tokens[i]
        role = roles[i]
        if role in ("ref", "shorthand") and tok.value in chains:
            for segments, expression in chains[tok.value]:
                end = _chain_end(tokens, i, segments)
                if end < 0:
                    continue
                if role == "shorthand" and len(segments) == 1:
                    expression = f"{tok.value}: {expression}"
                out.append(Token("name", expression, tok.pre))
                i = end
                break
            else:
                out.append(tok)
                i += 1
            continue
        out.append(tok)
        i += 1
    return render(out) + tokens.tail


def apply_defines(code: str, defines: Mapping[str, str]) -> str:
    """substitute build-time constants verbatim at every reference site"""
    return replace_references(code, defines)


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def pipe(
        self, shellcmd: Sequence[str], data: bytes, cwd: Pathlike = "."
    ) -> bytes:
        """Feed data to a command's stdin and return its stdout

        Args:
            shellcmd: Command as list of args
            data: Bytes written to the command's stdin
            cwd: Working directory for command execution

        Raises:
            CommandError: If the command cannot be run or exits non-zero
        """
        self.log.debug(" ".join(shellcmd))
        try:
            proc = subprocess.run(
                list(shellcmd),
                input=data,
                capture_output=True,
                check=True,
                cwd=str(cwd),
            )
        except FileNotFoundError as e:
            raise CommandError(f"Command not found: {shellcmd[0]}") from e
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode("utf8", "replace").strip() if e.stderr else ""
            raise CommandError(f"Command failed: {' '.join(shellcmd)}: {stderr}") from e
        return proc.stdout

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def move(self, src: Pathlike, dst: Pathlike) -> None:
        """Move from src path to dst path."""
        self.log.debug("Moving %s to %s", src, dst)
        shutil.move(str(src), str(dst))

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy file or folders -- tries to be behave like `cp -rf`"""
        self.log.debug("copy %s to %s", src, dst)
        src, dst = Path(src), Path(dst)
        if src.is_dir():
            shutil.copytree(src, dst, dirs_exist_ok=True)
        else:
            shutil.copy2(src, dst)

    def remove(self, path: Pathlike, silent: bool = False) -> None:
        """Remove file or folder."""
        path = Path(path)
        if path.is_dir():
            if not silent:
                self.log.debug("Removing folder: %s", path)
            shutil.rmtree(path)
        else:
            if not silent:
                self.log.debug("Removing file: %s", path)
            try:
                path.unlink()
            except FileNotFoundError:
                if not silent:
                    self.log.warning("File not found: %s", path)

    def write_file(self, path: Pathlike, data: bytes) -> None:
        """Write bytes to path, creating parent folders"""
        path = Path(path)
        self.makedirs(path.parent)
        path.write_bytes(data)


# ----------------------------------------------------------------------------
# external dependency registry


class ExternalRegistry:
    """Module identifiers supplied by the host page under a global name"""

    def __init__(self, externals: Iterable[External] = ()):
        self.log = logging.getLogger(self.__class__.__name__)
        self._globals: dict[str, str] = {}
        for external in externals:
            self.register(external.module_id, external.global_name)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {sorted(self._globals)}>"

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._globals

    def __len__(self) -> int:
        return len(self._globals)

    def __iter__(self) -> Iterator[External]:
        for module_id, global_name in self._globals.items():
            yield External(module_id, global_name)

    @classmethod
    def from_config(cls, config: BuildConfig) -> "ExternalRegistry":
        return cls(config.externals)

    def register(self, module_id: str, global_name: str) -> None:
        """register an external; a repeated identifier is replaced (last wins)"""
        previous = self._globals.get(module_id)
        if previous is not None:
            self.log.warning(
                "duplicate external '%s' (%s -> %s)", module_id, previous, global_name
            )
        self._globals[module_id] = global_name

    def is_external(self, module_id: str) -> bool:
        return module_id in self._globals

    def global_name_for(self, module_id: str) -> Optional[str]:
        return self._globals.get(module_id)

    @property
    def global_names(self) -> frozenset:
        return frozenset(self._globals.values())


# ----------------------------------------------------------------------------
# module syntax


@dataclass
class ImportRef:
    """An import (or re-export) site found in a script module

    `start`/`end` are token indices of the whole statement, or of the
    `import(...)` call for dynamic imports.
    """

    specifier: str
    start: int = 0
    end: int = 0
    dynamic: bool = False
    reexport: bool = False
    default: Optional[str] = None
    namespace: Optional[str] = None
    named: tuple = ()
    star: bool = False

    @property
    def bindings(self) -> list[str]:
        """local names introduced by this import"""
        names = [name for name in (self.default, self.namespace) if name]
        if not self.reexport:
            names.extend(local for _, local in self.named)
        return names


def _string_value(tok: Token) -> str:
    """value of a quoted (or substitution-free template) module specifier"""
    if tok.kind == "template" and not (
        tok.value.startswith("`") and tok.value.endswith("`") and len(tok.value) > 1
    ):
        raise MultiChunkViolation(f"computed module specifier: {tok.value}")
    return re.sub(r"\\(.)", r"\1", tok.value[1:-1])


def _specifier_list(tokens: Sequence[Token], open_idx: int) -> tuple[tuple, int]:
    """parse `{a, b as c, "d" as e}`; returns ((imported, local) pairs, close)"""
    close = _match_close(tokens, open_idx)
    items: list[tuple[str, str]] = []
    j = _next_index(tokens, open_idx + 1)
    while 0 <= j < close:
        tok = tokens[j]
        if _is_punct(tok, ","):
            j = _next_index(tokens, j + 1)
            continue
        if _is_name(tok, "type") and _is_name(_next_sig(tokens, j)):
            nxt = _next_sig(tokens, j)
            if nxt is not None and nxt.value != "as":
                # type-only specifier, erased at runtime
                j = _next_index(tokens, j + 1)
                j = _next_index(tokens, j + 1)
                if j >= 0 and _is_name(tokens[j], "as"):
                    j = _next_index(tokens, _next_index(tokens, j + 1) + 1)
                continue
        imported = _string_value(tok) if tok.kind == "str" else tok.value
        local = imported
        j = _next_index(tokens, j + 1)
        if j >= 0 and _is_name(tokens[j], "as"):
            j = _next_index(tokens, j + 1)
            local = tokens[j].value
            j = _next_index(tokens, j + 1)
        items.append((imported, local))
    return tuple(items), close


def _after_specifier(tokens: Sequence[Token], j: int) -> int:
    """skip import attributes and the terminating semicolon"""
    k = _next_index(tokens, j)
    if k >= 0 and _is_name(tokens[k], "with", "assert") and not tokens[k].newline_before:
        brace = _next_index(tokens, k + 1)
        if brace >= 0 and _is_punct(tokens[brace], "{"):
            j = _match_close(tokens, brace) + 1
    return _consume_semicolon(tokens, j)


def _parse_import(tokens: Sequence[Token], i: int) -> Optional[ImportRef]:
    """parse a static import statement whose `import` keyword is at i"""
    j = _next_index(tokens, i + 1)
    if j < 0:
        return None
    ref = ImportRef(specifier="", start=i)
    if tokens[j].kind == "str":
        ref.specifier = _string_value(tokens[j])
        ref.end = _after_specifier(tokens, j + 1)
        return ref
    if _is_name(tokens[j], "type"):
        nxt = _next_sig(tokens, j)
        if nxt is not None and not _is_name(nxt, "from") and not _is_punct(nxt, ","):
            return None
    if _is_name(tokens[j]) and tokens[j].value not in KEYWORDS:
        ref.default = tokens[j].value
        j = _next_index(tokens, j + 1)
        if _is_punct(tokens[j], ","):
            j = _next_index(tokens, j + 1)
    if _is_punct(tokens[j], "*"):
        j = _next_index(tokens, j + 1)  # as
        j = _next_index(tokens, j + 1)
        ref.namespace = tokens[j].value
        j = _next_index(tokens, j + 1)
    elif _is_punct(tokens[j], "{"):
        ref.named, close = _specifier_list(tokens, j)
        j = _next_index(tokens, close + 1)
    if not _is_name(tokens[j], "from"):
        raise SyntaxScanError(f"malformed import statement near '{tokens[j].value}'")
    j = _next_index(tokens, j + 1)
    ref.specifier = _string_value(tokens[j])
    ref.end = _after_specifier(tokens, j + 1)
    return ref


def _parse_reexport(tokens: Sequence[Token], i: int) -> Optional[ImportRef]:
    """parse `export * from`, `export * as ns from` or `export {..} from`"""
    j = _next_index(tokens, i + 1)
    if j < 0:
        return None
    ref = ImportRef(specifier="", start=i, reexport=True)
    if _is_punct(tokens[j], "*"):
        j = _next_index(tokens, j + 1)
        if _is_name(tokens[j], "as"):
            j = _next_index(tokens, j + 1)
            ref.namespace = tokens[j].value
            j = _next_index(tokens, j + 1)
        else:
            ref.star = True
    elif _is_punct(tokens[j], "{"):
        ref.named, close = _specifier_list(tokens, j)
        j = _next_index(tokens, close + 1)
    else:
        return None
    if j < 0 or not _is_name(tokens[j], "from"):
        return None
    j = _next_index(tokens, j + 1)
    ref.specifier = _string_value(tokens[j])
    ref.end = _after_specifier(tokens, j + 1)
    return ref


def _parse_dynamic(tokens: Sequence[Token], i: int) -> ImportRef:
    """parse `import("literal")` whose `import` keyword is at i"""
    open_idx = _next_index(tokens, i + 1)
    close = _match_close(tokens, open_idx)
    arg = _next_index(tokens, open_idx + 1)
    after = _next_index(tokens, arg + 1)
    if (
        arg < 0
        or tokens[arg].kind not in ("str", "template")
        or not (after == close or _is_punct(tokens[after], ","))
    ):
        raise MultiChunkViolation(
            "dynamic import() with a computed specifier cannot be inlined"
        )
    return ImportRef(
        specifier=_string_value(tokens[arg]), start=i, end=close + 1, dynamic=True
    )


def scan_imports(tokens: Sequence[Token]) -> list[ImportRef]:
    """every static import, re-export and dynamic import in source order"""
    refs: list[ImportRef] = []
    for i, tok in enumerate(tokens):
        if tok.kind != "name" or _is_member_access(tokens, i):
            continue
        if tok.value == "import":
            nxt = _next_sig(tokens, i)
            if _is_punct(nxt, "("):
                refs.append(_parse_dynamic(tokens, i))
            elif _is_punct(nxt, "."):
                continue  # import.meta
            elif _is_statement_start(tokens, i):
                ref = _parse_import(tokens, i)
                if ref is not None:
                    refs.append(ref)
        elif tok.value == "export" and _is_statement_start(tokens, i):
            ref = _parse_reexport(tokens, i)
            if ref is not None:
                refs.append(ref)
    return refs


# ----------------------------------------------------------------------------
# resolver


@dataclass
class ModuleGraph:
    """Resolved units reachable from the entry points, in discovery order"""

    units: dict = field(default_factory=dict)
    imports: dict = field(default_factory=dict)
    edges: dict = field(default_factory=dict)
    entries: list = field(default_factory=list)
    dynamic_targets: set = field(default_factory=set)
    externals_used: set = field(default_factory=set)

    def __len__(self) -> int:
        return len(self.units)

    def target(self, importer: Path, specifier: str) -> Path:
        try:
            return self.edges[(importer, specifier)]
        except KeyError as e:
            raise ResolutionError(specifier, importer) from e


class Resolver(ShellCmd):
    """Maps import specifiers to files and classifies them by role"""

    def __init__(self, config: BuildConfig, registry: Optional[ExternalRegistry] = None):
        self.config = config
        self.registry = registry or ExternalRegistry.from_config(config)
        self.root = config.root_path
        # longest alias prefix first
        self.aliases = sorted(
            config.aliases, key=lambda pair: len(pair[0]), reverse=True
        )
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.root}'>"

    def expand_alias(self, specifier: str) -> Optional[Path]:
        for prefix, target in self.aliases:
            if specifier == prefix or specifier.startswith(prefix + "/"):
                rest = specifier[len(prefix):].lstrip("/")
                base = self.root / target
                return base / rest if rest else base
        return None

    def candidates(self, base: Path) -> Iterator[Path]:
        yield base
        for ext in self.config.resolve_extensions:
            yield base.with_name(base.name + ext)
        for ext in self.config.resolve_extensions:
            yield base / f"index{ext}"

    def resolve(self, specifier: str, importer: Optional[Path] = None) -> Path:
        """absolute path of specifier, imported from importer (None for entries)

        Raises:
            ResolutionError: If no candidate file exists
        """
        base = self.expand_alias(specifier)
        if base is None:
            origin = importer.parent if importer is not None else self.root
            base = origin / specifier
        for candidate in self.candidates(base):
            if candidate.is_file():
                resolved = Path(os.path.normpath(candidate.absolute()))
                self.log.debug("resolved %s -> %s", specifier, resolved)
                return resolved
        raise ResolutionError(specifier, importer)

    def classify(self, path: Path) -> Role:
        return self.config.recognized_extensions.role_of(path)

    def load(self, specifier: str, path: Path) -> ModuleUnit:
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise ResolutionError(specifier) from e
        return ModuleUnit(specifier, path, self.classify(path), raw)

    def discover(self, entries: Optional[Sequence[str]] = None) -> ModuleGraph:
        """breadth-first walk of the module graph, externals excluded"""
        graph = ModuleGraph()
        queue: collections.deque = collections.deque()
        for entry in entries or self.config.entries:
            path = self.resolve(entry)
            if path not in graph.entries:
                graph.entries.append(path)
            queue.append((entry, path))
        while queue:
            specifier, path = queue.popleft()
            if path in graph.units:
                continue
            unit = self.load(specifier, path)
            graph.units[path] = unit
            refs: list[ImportRef] = []
            if unit.role is Role.SCRIPT and path.suffix != ".json":
                try:
                    refs = scan_imports(tokenize(unit.text))
                except SyntaxScanError as e:
                    raise SyntaxScanError(f"{path}: {e}") from e
            graph.imports[path] = refs
            for ref in refs:
                if self.registry.is_external(ref.specifier):
                    graph.externals_used.add(ref.specifier)
                    continue
                target = self.resolve(ref.specifier, path)
                graph.edges[(path, ref.specifier)] = target
                if ref.dynamic:
                    graph.dynamic_targets.add(target)
                queue.append((ref.specifier, target))
        self.log.info(
            "discovered %d modules (%d dynamic, %d externals)",
            len(graph.units),
            len(graph.dynamic_targets),
            len(graph.externals_used),
        )
        return graph


# ----------------------------------------------------------------------------
# transforms


def minify_html(
    content: str, remove_comments: bool = True, preserve_whitespace: bool = False
) -> str:
    if remove_comments:
        content = re.sub(r"<!--.*?-->", "", content, flags=re.S)
    if not preserve_whitespace:
        content = re.sub(r">\s+<", "><", content)
        content = re.sub(r"\s+", " ", content).strip()
    return content


def minify_css(content: str, remove_comments: bool = True) -> str:
    if remove_comments:
        content = re.sub(r"/\*.*?\*/", "", content, flags=re.S)
    content = re.sub(r"\s+", " ", content)
    content = re.sub(r"\s*([{};,])\s*", r"\1", content)
    content = content.replace(";}", "}")
    return content.strip()


def _js_string(text: str) -> str:
    return json.dumps(text, ensure_ascii=False)


STYLE_INJECTION = """\
var __css = {css};
if (typeof document !== "undefined") {{
  var __style = document.createElement("style");
  __style.setAttribute("data-widget", {name});
  __style.textContent = __css;
  document.head.appendChild(__style);
}}
export default __css;
"""


class ScriptTransform(ShellCmd):
    """.js/.mjs pass through, .json becomes a default export, .ts is compiled"""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def __call__(self, unit: ModuleUnit, config: BuildConfig) -> IntermediateFragment:
        suffix = unit.resolved_path.suffix.lower()
        if suffix == ".json":
            data = json.loads(unit.text)
            code = f"export default {json.dumps(data, ensure_ascii=False, separators=(',', ':'))};\n"
        elif suffix in (".ts", ".tsx", ".mts"):
            out = self.pipe(
                config.transform.ts_command, unit.raw_content, cwd=config.root_path
            )
            code = out.decode("utf8")
        else:
            code = unit.text
        return IntermediateFragment(unit, code)


class TemplateTransform(ShellCmd):
    """html templates become a default-exported string"""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def __call__(self, unit: ModuleUnit, config: BuildConfig) -> IntermediateFragment:
        options = config.transform
        html = unit.text
        if options.minify_templates:
            html = minify_html(html, options.remove_comments, options.preserve_whitespace)
        return IntermediateFragment(unit, f"export default {_js_string(html)};\n")


class StyleTransform(ShellCmd):
    """stylesheets are minified, post-processed and injected (or extracted)"""

    def __init__(self) -> None:
        self.log = logging.getLogger(self.__class__.__name__)

    def __call__(self, unit: ModuleUnit, config: BuildConfig) -> IntermediateFragment:
        options = config.transform
        if unit.resolved_path.suffix.lower() == ".css":
            css = unit.text
        elif options.style_command:
            css = self.pipe(
                options.style_command, unit.raw_content, cwd=unit.resolved_path.parent
            ).decode("utf8")
        else:
            raise CommandError(
                f"no styleCommand configured for '{unit.resolved_path.suffix}' files"
            )
        if options.minify_styles:
            css = minify_css(css, options.remove_comments)
        for fn in options.css_transforms:
            css = fn(css)
        if options.extract_styles:
            code = "export default {};\n".format(_js_string(css))
        else:
            code = STYLE_INJECTION.format(
                css=_js_string(css), name=_js_string(unit.resolved_path.stem)
            )
        return IntermediateFragment(unit, code, styles=css)


def asset_file_name(config: BuildConfig, unit: ModuleUnit) -> str:
    """public relative path of a verbatim asset, `assetsDir/[name][ext]`"""
    return f"{config.assets_dir}/{unit.resolved_path.name}"


def asset_transform(unit: ModuleUnit, config: BuildConfig) -> IntermediateFragment:
    """verbatim assets export their public path"""
    return IntermediateFragment(
        unit, f"export default {_js_string(asset_file_name(config, unit))};\n"
    )


Transform = Callable[[ModuleUnit, BuildConfig], IntermediateFragment]


class TransformStage(ShellCmd):
    """Dispatches each unit to its role's collaborator on a worker pool"""

    def __init__(
        self,
        config: BuildConfig,
        transforms: Optional[Mapping[Role, Transform]] = None,
    ):
        self.config = config
        self.transforms: dict[Role, Transform] = {
            Role.SCRIPT: ScriptTransform(),
            Role.TEMPLATE: TemplateTransform(),
            Role.STYLE: StyleTransform(),
            Role.ASSET: asset_transform,
        }
        if transforms:
            self.transforms.update(transforms)
        self.log = logging.getLogger(self.__class__.__name__)

    def transform(self, unit: ModuleUnit) -> IntermediateFragment:
        """transform one unit; any failure is a TransformError for that unit"""
        try:
            fragment = self.transforms[unit.role](unit, self.config)
            if unit.role is Role.SCRIPT and self.config.defines:
                fragment = replace(
                    fragment,
                    emitted_code=apply_defines(
                        fragment.emitted_code, self.config.define_map
                    ),
                )
        except TransformError:
            raise
        except Exception as e:
            raise TransformError(unit, e) from e
        if self.config.transform.show_processed_files:
            self.log.info("processed %s (%s)", unit.specifier, unit.role.value)
        return fragment

    def run(self, units: Sequence[ModuleUnit]) -> list[IntermediateFragment]:
        """transform all units concurrently; the first failure cancels the rest"""
        if not units:
            return []
        workers = min(self.config.jobs, len(units))
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [pool.submit(self.transform, unit) for unit in units]
            done, pending = concurrent.futures.wait(
                futures, return_when=concurrent.futures.FIRST_EXCEPTION
            )
            for future in pending:
                future.cancel()
            # report the failure of the earliest unit for a stable message
            for future in futures:
                if future in done and future.exception() is not None:
                    raise future.exception()  # type: ignore[misc]
            return [future.result() for future in futures]
        finally:
            pool.shutdown(wait=True, cancel_futures=True)


# ----------------------------------------------------------------------------
# bundler

BUNDLE_PRELUDE = """\
(function () {
"use strict";
var __modules = {};
var __cache = {};
function __require(id) {
  var cached = __cache[id];
  if (cached) return cached;
  var exports = __cache[id] = {};
  __modules[id](exports);
  return exports;
}
function __getter(source, key) {
  return function () { return source[key]; };
}
function __define(target, getters) {
  for (var key in getters) {
    Object.defineProperty(target, key, { enumerable: true, get: getters[key] });
  }
}
function __star(target, source) {
  for (var key in source) {
    if (key !== "default" && !Object.prototype.hasOwnProperty.call(target, key)) {
      Object.defineProperty(target, key, { enumerable: true, get: __getter(source, key) });
    }
  }
}"""

BUNDLE_EPILOGUE = "})();\n"


def _member(namespace: str, name: str) -> str:
    if IDENT_RE.fullmatch(name):
        return f"{namespace}.{name}"
    return f"{namespace}[{_js_string(name)}]"


def _splice(tokens: Sequence[Token], edits: Iterable[tuple[int, int, str]]) -> str:
    """render tokens, replacing each [start, end) range with new text

    A zero-length edit inserts its text before token `start`.
    """
    parts: list[str] = []
    i = 0
    for start, end, text in sorted(edits, key=lambda e: (e[0], e[1])):
        if start < i:
            continue
        parts.extend(t.pre + t.value for t in tokens[i:start])
        if end > start:
            parts.append(tokens[start].pre + text)
            i = end
        else:
            parts.append(text)
            i = start
    parts.extend(t.pre + t.value for t in tokens[i:])
    parts.append(getattr(tokens, "tail", ""))
    return "".join(parts)


class _ModuleLinker:
    """Rewrites one module's imports and exports against the module table"""

    def __init__(
        self,
        fragment: IntermediateFragment,
        graph: ModuleGraph,
        ids: Mapping[Path, int],
        registry: ExternalRegistry,
    ):
        self.path = fragment.source_unit.resolved_path
        self.graph = graph
        self.ids = ids
        self.registry = registry
        self.tokens = tokenize(fragment.emitted_code)
        self.roles = classify_names(self.tokens)
        self.local_names = declared_names(self.tokens, self.roles)
        self.edits: list[tuple[int, int, str]] = []
        self.header: list[str] = []
        self.module_vars: dict[int, str] = {}
        self.replacements: dict[str, str] = {}
        self.getters: dict[str, str] = {}

    def namespace(self, specifier: str) -> str:
        """expression holding the module namespace of specifier"""
        global_name = self.registry.global_name_for(specifier)
        if global_name is not None:
            return global_name
        target = self.ids[self.graph.target(self.path, specifier)]
        var = self.module_vars.get(target)
        if var is None:
            var = self.module_vars[target] = f"__m{target}"
            self.header.append(f"var {var} = __require({target});")
        return var

    def imported(self, specifier: str, name: str) -> str:
        namespace = self.namespace(specifier)
        if name == "default" and self.registry.is_external(specifier):
            return namespace
        return _member(namespace, name)

    def bind(self, local: str, expression: str) -> None:
        if local in self.local_names:
            # shadowed somewhere in the module: a plain copy keeps scoping intact
            self.header.append(f"var {local} = {expression};")
        else:
            self.replacements[local] = expression

    def link_import(self, ref: ImportRef) -> None:
        if ref.dynamic:
            global_name = self.registry.global_name_for(ref.specifier)
            if global_name is not None:
                text = f"Promise.resolve({global_name})"
            else:
                target = self.ids[self.graph.target(self.path, ref.specifier)]
                text = f"Promise.resolve().then(function () {{ return __require({target}); }})"
            self.edits.append((ref.start, ref.end, text))
            return
        if ref.reexport:
            if ref.star:
                self.header.append(f"__star(__exports, {self.namespace(ref.specifier)});")
            elif ref.namespace:
                self.getters[ref.namespace] = self.namespace(ref.specifier)
            for name, exported in ref.named:
                self.getters[exported] = self.imported(ref.specifier, name)
        else:
            namespace = self.namespace(ref.specifier)
            if ref.default:
                self.bind(ref.default, self.imported(ref.specifier, "default"))
            if ref.namespace:
                self.bind(ref.namespace, namespace)
            for name, local in ref.named:
                self.bind(local, self.imported(ref.specifier, name))
        self.edits.append((ref.start, ref.end, ""))

    def _declaration_name(self, j: int) -> Optional[str]:
        tokens = self.tokens
        if _is_name(tokens[j], "async"):
            j = _next_index(tokens, j + 1)
        if not _is_name(tokens[j], "function", "class"):
            return None
        j = _next_index(tokens, j + 1)
        if _is_punct(tokens[j], "*"):
            j = _next_index(tokens, j + 1)
        tok = tokens[j]
        if _is_name(tok) and tok.value not in KEYWORDS:
            return tok.value
        return None

    def link_export(self, i: int) -> None:
        tokens = self.tokens
        j = _next_index(tokens, i + 1)
        tok = tokens[j]
        if _is_name(tok, "default"):
            k = _next_index(tokens, j + 1)
            name = self._declaration_name(k)
            if name is not None:
                self.edits.append((i, k, ""))
                self.getters["default"] = name
                return
            self.edits.append((i, k, "__exports.default ="))
            end = _statement_end(tokens, k)
            if end >= len(tokens) or not _is_punct(tokens[end], ";"):
                self.edits.append((end, end, ";"))
        elif _is_name(tok, "function", "class", "async"):
            name = self._declaration_name(j)
            if name is None:
                raise SyntaxScanError(f"{self.path}: anonymous exported declaration")
            self.edits.append((i, j, ""))
            self.getters[name] = name
        elif _is_name(tok, "var", "let", "const"):
            self.edits.append((i, j, ""))
            for name in sorted(declarator_bindings(tokens, _next_index(tokens, j + 1))):
                self.getters[name] = name
        elif _is_punct(tok, "{"):
            items, close = _specifier_list(tokens, j)
            self.edits.append((i, _consume_semicolon(tokens, close + 1), ""))
            for local, exported in items:
                self.getters[exported] = local

    def link(self) -> str:
        refs = scan_imports(self.tokens)
        reexports = {ref.start for ref in refs if ref.reexport}
        for ref in refs:
            self.link_import(ref)
        for i, tok in enumerate(self.tokens):
            if (
                _is_name(tok, "export")
                and i not in reexports
                and _is_statement_start(self.tokens, i)
            ):
                self.link_export(i)
        lines = list(self.header)
        if self.getters:
            entries = ", ".join(
                f"{key if IDENT_RE.fullmatch(key) else _js_string(key)}: "
                f"function () {{ return {expr}; }}"
                for key, expr in self.getters.items()
            )
            lines.insert(0, f"__define(__exports, {{ {entries} }});")
        lines.append(_splice(self.tokens, self.edits))
        return replace_references("\n".join(lines), self.replacements)


class Bundler:
    """Merges every fragment of the module graph into exactly one script"""

    def __init__(self, config: BuildConfig, registry: ExternalRegistry):
        self.config = config
        self.registry = registry
        self.log = logging.getLogger(self.__class__.__name__)

    def module_label(self, path: Path) -> str:
        try:
            return path.relative_to(self.config.root_path).as_posix()
        except ValueError:
            return path.name

    def bundle(
        self, graph: ModuleGraph, fragments: Sequence[IntermediateFragment]
    ) -> BundleOutput:
        """link all fragments (dynamic-import targets included) into one chunk

        Raises:
            MultiChunkViolation: If more than one script artifact would result
        """
        if self.config.manual_chunks or not self.config.inline_dynamic_imports:
            raise MultiChunkViolation("chunk splitting is not supported for widgets")
        ids = {path: n for n, path in enumerate(graph.units)}
        by_path = {f.source_unit.resolved_path: f for f in fragments}
        parts = [BUNDLE_PRELUDE]
        for path, n in ids.items():
            fragment = by_path.get(path)
            if fragment is None:
                raise BuildError(f"no transformed fragment for {path}")
            try:
                code = _ModuleLinker(fragment, graph, ids, self.registry).link()
            except SyntaxScanError as e:
                raise TransformError(fragment.source_unit, e) from e
            parts.append(
                f"// {self.module_label(path)}\n"
                f"__modules[{n}] = function (__exports) {{\n{code.strip()}\n}};"
            )
        for entry in graph.entries:
            parts.append(f"__require({ids[entry]});")
        parts.append(BUNDLE_EPILOGUE)
        chunk = BundleArtifact(self.config.output_file_name, "\n".join(parts))
        assets = self.collect_assets(graph, fragments)
        self.log.info(
            "bundled %d modules into %s (%d assets)",
            len(ids),
            chunk.file_name,
            len(assets),
        )
        return BundleOutput(chunk, tuple(assets))

    def collect_assets(
        self, graph: ModuleGraph, fragments: Sequence[IntermediateFragment]
    ) -> list[AssetArtifact]:
        assets: dict[str, AssetArtifact] = {}

        def add(asset: AssetArtifact) -> None:
            existing = assets.get(asset.file_name)
            if existing is None:
                assets[asset.file_name] = asset
            elif existing.data != asset.data:
                self.log.warning(
                    "asset name collision for %s, keeping the first", asset.file_name
                )

        for unit in graph.units.values():
            if unit.role is Role.ASSET:
                add(AssetArtifact(asset_file_name(self.config, unit), unit.raw_content))
        if self.config.transform.extract_styles:
            order = {path: n for n, path in enumerate(graph.units)}
            styles = [
                f.styles
                for f in sorted(fragments, key=lambda f: order[f.source_unit.resolved_path])
                if f.styles
            ]
            if styles:
                stem = Path(self.config.output_file_name).stem
                css = "\n".join(styles).encode("utf8")
                add(AssetArtifact(f"{self.config.assets_dir}/{stem}.css", css))
        if self.config.copy_public_dir and self.config.public_path.is_dir():
            public = self.config.public_path
            for path in sorted(p for p in public.rglob("*") if p.is_file()):
                add(AssetArtifact(path.relative_to(public).as_posix(), path.read_bytes()))
        return list(assets.values())


# ----------------------------------------------------------------------------
# constant conditions


class _Undefined:
    def __repr__(self) -> str:
        return "undefined"


UNDEFINED = _Undefined()


class NotConstant(Exception):
    """The expression cannot be evaluated at build time"""

    pass


def _truthy(value: Any) -> bool:
    if value is None or value is UNDEFINED:
        return False
    return bool(value)


def _loose_equal(a: Any, b: Any) -> bool:
    nullish = (None, UNDEFINED)
    if a in nullish or b in nullish:
        return a in nullish and b in nullish
    if type(a) is not type(b):
        raise NotConstant("mixed-type comparison")
    return bool(a == b)


def _strict_equal(a: Any, b: Any) -> bool:
    return type(a) is type(b) and a == b


class _ConstParser:
    """Evaluates literals combined with ! void == != === !== && || and parens"""

    BINARY = (("||",), ("&&",), ("==", "!=", "===", "!=="))

    def __init__(self, tokens: Sequence[Token]):
        self.tokens = [t for t in tokens if t.kind != "comment"]
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def evaluate(self) -> Any:
        if not self.tokens:
            raise NotConstant("empty")
        value = self.binary(0)
        if self.pos != len(self.tokens):
            raise NotConstant(self.tokens[self.pos].value)
        return value

    def binary(self, level: int) -> Any:
        if level == len(self.BINARY):
            return self.unary()
        left = self.binary(level + 1)
        while _is_punct(self.peek(), *self.BINARY[level]):
            op = self.tokens[self.pos].value
            self.pos += 1
            right = self.binary(level + 1)
            if op == "||":
                left = left if _truthy(left) else right
            elif op == "&&":
                left = right if _truthy(left) else left
            elif op == "==":
                left = _loose_equal(left, right)
            elif op == "!=":
                left = not _loose_equal(left, right)
            elif op == "===":
                left = _strict_equal(left, right)
            else:
                left = not _strict_equal(left, right)
        return left

    def unary(self) -> Any:
        tok = self.peek()
        if _is_punct(tok, "!"):
            self.pos += 1
            return not _truthy(self.unary())
        if _is_name(tok, "void"):
            self.pos += 1
            self.unary()
            return UNDEFINED
        return self.primary()

    def primary(self) -> Any:
        tok = self.peek()
        if tok is None:
            raise NotConstant("unexpected end")
        self.pos += 1
        if _is_punct(tok, "("):
            value = self.binary(0)
            if not _is_punct(self.peek(), ")"):
                raise NotConstant("unbalanced")
            self.pos += 1
            return value
        if tok.kind == "num":
            text = tok.value.replace("_", "")
            if text.endswith("n"):
                raise NotConstant("bigint")
            if text[:2].lower() in ("0x", "0o", "0b"):
                return float(int(text, 0))
            return float(text)
        if tok.kind == "str" and "\\" not in tok.value:
            return tok.value[1:-1]
        if tok.kind == "template" and "\\" not in tok.value:
            if len(tok.value) > 1 and tok.value[0] == tok.value[-1] == "`":
                return tok.value[1:-1]
        if tok.kind == "name":
            literals = {"true": True, "false": False, "null": None, "undefined": UNDEFINED}
            if tok.value in literals:
                return literals[tok.value]
        raise NotConstant(tok.value)


def const_value(tokens: Sequence[Token]) -> Any:
    """build-time value of a condition; raises NotConstant if it has none"""
    return _ConstParser(tokens).evaluate()


# ----------------------------------------------------------------------------
# statement helpers

COMPOUND_STATEMENTS = frozenset(
    "for while do switch try function class with async".split()
)
LEXICAL_DECLARATIONS = frozenset(("let", "const", "class", "function"))


def _simple_statement_end(tokens: Sequence[Token], s: int) -> int:
    """end of a simple statement, comma sequences and semicolon included"""
    n = len(tokens)
    e = _statement_end(tokens, s)
    while e < n and _is_punct(tokens[e], ","):
        e = _statement_end(tokens, e + 1)
    return _consume_semicolon(tokens, e)


def _if_end(tokens: Sequence[Token], i: int) -> int:
    """end of the if statement (else chain included) at i, or -1"""
    p = _next_index(tokens, i + 1)
    if p < 0 or not _is_punct(tokens[p], "("):
        return -1
    end = branch_end(tokens, _next_index(tokens, _match_close(tokens, p) + 1))
    if end < 0:
        return -1
    e = _next_index(tokens, end)
    if e >= 0 and _is_name(tokens[e], "else"):
        return branch_end(tokens, _next_index(tokens, e + 1))
    return end


def branch_end(tokens: Sequence[Token], s: int) -> int:
    """end of the statement used as an if/else body at s, or -1 if unknown"""
    if s < 0:
        return -1
    tok = tokens[s]
    if _is_punct(tok, "{"):
        return _match_close(tokens, s) + 1
    if _is_name(tok, "if"):
        return _if_end(tokens, s)
    if _is_name(tok) and (
        tok.value in COMPOUND_STATEMENTS or _is_punct(_next_sig(tokens, s), ":")
    ):
        return -1
    return _simple_statement_end(tokens, s)


def _declares_lexically(tokens: Sequence[Token]) -> bool:
    return any(_is_name(t, *LEXICAL_DECLARATIONS) for t in tokens)


def _with_pre(tok: Token, pre: str) -> Token:
    return Token(tok.kind, tok.value, pre)


def _statement_position(tokens: Sequence[Token], i: int) -> str:
    """'start' at a statement list position, 'body' as a sole if/else body"""
    p = _prev_index(tokens, i - 1)
    if p < 0 or _is_punct(tokens[p], ";", "{", "}"):
        return "start"
    prev = tokens[p]
    if _is_name(prev, "else", "do"):
        return "body"
    if _is_punct(prev, ")"):
        opener = _prev_sig(tokens, _match_open(tokens, p))
        if _is_name(opener, "if", "while", "for", "with"):
            return "body"
    # automatic semicolon insertion ended the previous statement
    if tokens[i].newline_before and _ends_expression(prev):
        return "start"
    return "expr"


def _ends_statement(tokens: Sequence[Token], end: int) -> bool:
    """whether the expression ending before `end` is a whole statement"""
    k = _next_index(tokens, end)
    if k < 0:
        return True
    tok = tokens[k]
    return _is_punct(tok, ";", "}") or (
        tok.newline_before and _may_start_statement(tok)
    )


def _track_brackets(stack: list, tok: Token) -> None:
    if tok.kind == "punct":
        if tok.value in ("(", "[", "{"):
            stack.append(tok.value)
        elif tok.value in (")", "]", "}") and stack:
            stack.pop()
    elif tok.kind == "template":
        if tok.value.startswith("}") and stack:
            stack.pop()
        if tok.value.endswith("${"):
            stack.append("(")


# ----------------------------------------------------------------------------
# shrinker

NAME_START = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ_$"
NAME_PART = NAME_START + "0123456789"


def short_names() -> Iterator[str]:
    """a, b, ..., $, aa, ab, ... in a fixed order"""
    size = 1
    while True:
        for first in NAME_START:
            for rest in itertools.product(NAME_PART, repeat=size - 1):
                yield first + "".join(rest)
        size += 1


class PublicSurface:
    """Identifiers external code depends on by their exact spelling"""

    def __init__(self, names: Iterable[str]):
        self.names = frozenset(names)

    def __contains__(self, name: object) -> bool:
        return name in self.names

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {sorted(self.names)}>"

    def check(self, mapping: Mapping[str, str], existing: Iterable[str]) -> None:
        """refuse a rename that touches the surface or collides

        Raises:
            ShrinkInvariantViolation: On the first offending rename
        """
        existing = set(existing)
        targets: dict[str, str] = {}
        for old, new in mapping.items():
            if old in self.names:
                raise ShrinkInvariantViolation(f"reserved name '{old}' would be renamed")
            if new in self.names:
                raise ShrinkInvariantViolation(
                    f"'{old}' would be renamed to reserved name '{new}'"
                )
            if new in targets:
                raise ShrinkInvariantViolation(
                    f"'{old}' and '{targets[new]}' would both be renamed to '{new}'"
                )
            if new in existing and new not in mapping:
                raise ShrinkInvariantViolation(
                    f"'{old}' would be renamed to existing name '{new}'"
                )
            targets[new] = old

    def verify_closed(self, before: str, after: str) -> None:
        """every surface name referenced before shrinking is still referenced"""
        present_before = self.names & _name_values(before)
        missing = present_before - _name_values(after)
        if missing:
            raise ShrinkInvariantViolation(
                f"reserved names lost while shrinking: {', '.join(sorted(missing))}"
            )


def _name_values(code: str) -> set[str]:
    return {t.value for t in tokenize(code) if t.kind == "name"}


class Shrinker:
    """Deterministic multi-pass compression followed by renaming"""

    def __init__(
        self,
        policy: ShrinkPolicy,
        target: str = "es2020",
        protected: Iterable[str] = (),
    ):
        self.policy = policy
        self.target = target
        self.surface = PublicSurface([*policy.reserved_names, *protected])
        self.log = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(
        cls, config: BuildConfig, registry: Optional[ExternalRegistry] = None
    ) -> "Shrinker":
        registry = registry or ExternalRegistry.from_config(config)
        return cls(config.shrink_policy, config.target, registry.global_names)

    # -- public api

    def shrink(self, code: str) -> str:
        """shrink merged script code; identical input gives identical bytes"""
        policy = self.policy
        if policy.is_noop:
            return code
        tokens = tokenize(code)
        for n in range(policy.compress_passes):
            before = len(tokens)
            tokens = self.drop_statements(tokens)
            tokens = self.fold_branches(tokens)
            self.log.debug("pass %d: %d -> %d tokens", n + 1, before, len(tokens))
        # compression may drop references; renaming and lowering may not
        compressed = render(tokens)
        code = self.rename(compressed) if policy.mangle else compressed
        result = render(self.lower_syntax(tokenize(code)))
        if policy.strip_comments:
            result = jsmin(result, keep_bang_comments=False)
        self.surface.verify_closed(compressed, result)
        return result

    def shrink_artifact(self, artifact: BundleArtifact) -> BundleArtifact:
        return replace(artifact, code=self.shrink(artifact.code))

    # -- statement dropping

    def _console_drop(self, tokens: Sequence[Token], i: int) -> int:
        """end of a droppable console.<method>(...) call at i, or -1"""
        if StatementKind.CONSOLE_CALL not in self.policy.drop_statements:
            return -1
        dot = _next_index(tokens, i + 1)
        method = _next_index(tokens, dot + 1) if dot >= 0 else -1
        if method < 0 or not _is_punct(tokens[dot], ".") or not _is_name(tokens[method]):
            return -1
        name = tokens[method].value
        if (
            name in self.policy.keep_console_methods
            and f"console.{name}" not in self.policy.pure_function_names
        ):
            return -1
        open_idx = _next_index(tokens, method + 1)
        if open_idx < 0 or not _is_punct(tokens[open_idx], "("):
            return -1
        return _match_close(tokens, open_idx) + 1

    def _pure_call(self, tokens: Sequence[Token], i: int) -> int:
        """end of a call to a pure function name starting at i, or -1"""
        for pure in sorted(self.policy.pure_function_names):
            end = _chain_end(tokens, i, pure.split("."))
            if end < 0:
                continue
            open_idx = _next_index(tokens, end)
            if open_idx >= 0 and _is_punct(tokens[open_idx], "("):
                return _match_close(tokens, open_idx) + 1
        return -1

    def drop_statements(self, tokens: Sequence[Token]) -> list[Token]:
        """remove dropped statement kinds and unused pure calls"""
        roles = classify_names(tokens)
        out: list[Token] = []
        stack: list[str] = []
        carry = ""
        i = 0
        n = len(tokens)
        while i < n:
            tok = tokens[i]
            replacement: Optional[list[Token]] = None
            end = -1
            if roles[i] == "ref":
                in_parens = bool(stack) and stack[-1] in ("(", "[")
                position = "expr" if in_parens else _statement_position(tokens, i)
                is_statement = position != "expr"
                if tok.value == "console":
                    end = self._console_drop(tokens, i)
                if end >= 0:
                    if is_statement and _ends_statement(tokens, end):
                        end = _consume_semicolon(tokens, end)
                        replacement = [] if position == "start" else [Token("punct", ";")]
                    else:
                        replacement = [Token("name", "void"), Token("num", "0", " ")]
                else:
                    end = self._pure_call(tokens, i)
                    if end >= 0 and is_statement and _ends_statement(tokens, end):
                        end = _consume_semicolon(tokens, end)
                        replacement = [] if position == "start" else [Token("punct", ";")]
            elif (
                _is_name(tok, "debugger")
                and StatementKind.DEBUGGER in self.policy.drop_statements
            ):
                position = _statement_position(tokens, i)
                end = _consume_semicolon(tokens, i + 1)
                replacement = [] if position == "start" else [Token("punct", ";")]
            if replacement is None:
                if carry:
                    tok = _with_pre(tok, carry + tok.pre)
                    carry = ""
                _track_brackets(stack, tok)
                out.append(tok)
                i += 1
                continue
            if replacement:
                replacement[0] = _with_pre(replacement[0], carry + tok.pre)
                carry = ""
                out.extend(replacement)
            else:
                carry += tok.pre
            i = end
        return out

    # -- dead branches

    def _fold_if(
        self, tokens: Sequence[Token], i: int
    ) -> Optional[tuple[int, list[Token]]]:
        p = _next_index(tokens, i + 1)
        if p < 0 or not _is_punct(tokens[p], "("):
            return None
        close = _match_close(tokens, p)
        try:
            condition = _truthy(const_value(tokens[p + 1 : close]))
        except NotConstant:
            return None
        s = _next_index(tokens, close + 1)
        consequent_end = branch_end(tokens, s)
        if consequent_end < 0:
            return None
        end = consequent_end
        alternate: Optional[tuple[int, int]] = None
        e = _next_index(tokens, consequent_end)
        if e >= 0 and _is_name(tokens[e], "else"):
            a = _next_index(tokens, e + 1)
            alternate_end = branch_end(tokens, a)
            if alternate_end < 0:
                return None
            alternate = (a, alternate_end)
            end = alternate_end
        chosen = (s, consequent_end) if condition else alternate
        if chosen is None:
            return end, []
        start, stop = chosen
        kept = list(tokens[start:stop])
        if (
            _is_punct(tokens[start], "{")
            and _is_statement_start(tokens, i)
            and not _declares_lexically(kept)
        ):
            kept = kept[1:-1]
        return end, kept

    def fold_branches(self, tokens: Sequence[Token]) -> list[Token]:
        """replace if statements with constant conditions by the taken branch"""
        out: list[Token] = []
        carry = ""
        i = 0
        n = len(tokens)
        while i < n:
            tok = tokens[i]
            folded = None
            if _is_name(tok, "if") and not _is_member_access(tokens, i):
                folded = self._fold_if(tokens, i)
            if folded is None:
                if carry:
                    tok = _with_pre(tok, carry + tok.pre)
                    carry = ""
                out.append(tok)
                i += 1
                continue
            end, kept = folded
            kept = self.fold_branches(kept)
            if not any(t.kind != "comment" for t in kept):
                if _statement_position(tokens, i) == "start":
                    kept = []
                else:
                    kept = [Token("punct", ";")]
            if kept:
                kept[0] = _with_pre(kept[0], carry + tok.pre)
                carry = ""
                out.extend(kept)
            else:
                carry += tok.pre
            i = end
        return out

    # -- renaming

    def rename(self, code: str) -> str:
        """rename declared identifiers to shorter names, surface excluded"""
        tokens = tokenize(code)
        roles = classify_names(tokens)
        if any(
            (_is_name(t, "eval") and roles[k] == "ref")
            or (_is_name(t, "with") and not _is_member_access(tokens, k))
            for k, t in enumerate(tokens)
        ):
            self.log.warning("eval or with statement found, identifiers not renamed")
            return code
        existing = {t.value for t in tokens if t.kind == "name"}
        excluded = KEYWORDS | CONTEXTUAL | BUILTIN_GLOBALS | self.surface.names
        scopes = binding_scopes(tokens, roles)
        # one mapping covers the whole artifact, so a name also read as a
        # free global keeps its spelling everywhere
        candidates = set(scopes) - excluded - free_names(tokens, roles, scopes)
        counts: collections.Counter = collections.Counter()
        first_seen: dict[str, int] = {}
        for k, t in enumerate(tokens):
            if t.kind == "name" and t.value in candidates and roles[k] in ("ref", "shorthand"):
                counts[t.value] += 1
                first_seen.setdefault(t.value, k)
        ordered = sorted(counts, key=lambda name: (-counts[name], first_seen[name]))
        fresh = (
            name
            for name in short_names()
            if name not in existing and name not in excluded
        )
        mapping: dict[str, str] = {}
        proposal = next(fresh)
        for name in ordered:
            if len(proposal) < len(name):
                mapping[name] = proposal
                proposal = next(fresh)
        self.surface.check(mapping, existing)
        self.log.debug("renamed %d of %d identifiers", len(mapping), len(candidates))
        return replace_references(code, mapping)

    # -- syntax lowering

    def _lower_logical_assignment(
        self, tokens: list[Token], k: int, nullish_ok: bool
    ) -> Optional[list[Token]]:
        """`a ||= b` -> `a || (a = b)` for a plain identifier target"""
        target = _prev_index(tokens, k - 1)
        if target < 0 or not _is_name(tokens[target]) or _is_member_access(tokens, target):
            return None
        end = _statement_end(tokens, k + 1)
        name = tokens[target].value
        value = render(tokens[k + 1 : end]).strip()
        op = tokens[k].value[:-1]
        if op == "??" and not nullish_ok:
            text = f"({name} != null ? {name} : ({name} = {value}))"
        else:
            text = f"{name} {op} ({name} = {value})"
        return [*tokens[:target], Token("name", text, tokens[target].pre), *tokens[end:]]

    def lower_syntax(self, tokens: Sequence[Token]) -> list[Token]:
        """rewrite syntax newer than the target where a local rewrite exists"""
        level = TARGETS.index(self.target)

        def below(version: str) -> bool:
            return level < TARGETS.index(version)

        out = list(tokens)
        if below("es2021"):
            out = [
                t.with_value(t.value.replace("_", "")) if t.kind == "num" else t
                for t in out
            ]
            k = 0
            while k < len(out):
                if _is_punct(out[k], "||=", "&&=", "??="):
                    lowered = self._lower_logical_assignment(out, k, not below("es2020"))
                    if lowered is not None:
                        out = lowered
                        continue
                k += 1
        if below("es2019"):
            names = {t.value for t in out if t.kind == "name"}
            binding = next(n for n in short_names() if n not in names and n not in KEYWORDS)
            for k, t in enumerate(out):
                if _is_name(t, "catch") and _is_punct(_next_sig(out, k), "{"):
                    out[k] = t.with_value(f"catch({binding})")
        for feature, since, detect in UNLOWERED_SYNTAX:
            if below(since) and any(detect(t) for t in out):
                self.log.warning(
                    "%s requires %s but target is %s", feature, since, self.target
                )
        return out


UNLOWERED_SYNTAX = (
    ("exponent operator", "es2016", lambda t: _is_punct(t, "**", "**=")),
    ("async function", "es2017", lambda t: _is_name(t, "async", "await")),
    ("optional chaining", "es2020", lambda t: _is_punct(t, "?.")),
    ("nullish coalescing", "es2020", lambda t: _is_punct(t, "??")),
    ("bigint literal", "es2020", lambda t: t.kind == "num" and t.value.endswith("n")),
    ("logical assignment", "es2021", lambda t: _is_punct(t, "||=", "&&=", "??=")),
    ("private class member", "es2022", lambda t: t.kind == "private"),
)


# ----------------------------------------------------------------------------
# reporter


def format_size(size_bytes: int) -> str:
    """Format size in kilobytes with two decimals"""
    return f"{size_bytes / 1024:,.2f} KB"


def gzip_size(data: bytes) -> int:
    # fixed mtime keeps the measurement reproducible
    return len(gzip.compress(data, compresslevel=9, mtime=0))


class Reporter:
    """Measures the artifact set and classifies it against the size budgets"""

    ICONS = {"chunk": "🎯", "asset": "📄"}

    def __init__(self, config: BuildConfig):
        self.config = config
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def optimal(self) -> SizeThreshold:
        return SizeThreshold(
            0, self.config.optimal_classification, "info", self.config.optimal_message
        )

    def classify(self, total_bytes: int) -> SizeThreshold:
        """first threshold (largest limit first) exceeded, else the optimal tier"""
        for threshold in self.config.size_thresholds:
            if total_bytes > threshold.byte_limit:
                return threshold
        return self.optimal

    def measure(self, output: BundleOutput) -> SizeReport:
        entries = []
        for artifact in output.artifacts:
            gzip_bytes = None
            if self.config.report_compressed_size and artifact.kind == "chunk":
                gzip_bytes = gzip_size(artifact.data)
            entries.append(
                ReportEntry(artifact.file_name, artifact.byte_length, artifact.kind, gzip_bytes)
            )
        total = sum(e.size_bytes for e in entries)
        threshold = self.classify(total)
        return SizeReport(tuple(entries), total, threshold.classification, threshold)

    def emit(self, report: SizeReport) -> None:
        self.log.info("📦 %s %s build:", self.config.name, self.config.mode.value)
        for entry in report.entries:
            icon = self.ICONS.get(entry.kind, "📄")
            if entry.gzip_bytes is not None:
                self.log.info(
                    "   %s %s: %s (gzip: %s)",
                    icon,
                    entry.name,
                    format_size(entry.size_bytes),
                    format_size(entry.gzip_bytes),
                )
            else:
                self.log.info("   %s %s: %s", icon, entry.name, format_size(entry.size_bytes))
        self.log.info("   📊 Total Widget Size: %s", format_size(report.total_bytes))
        threshold = report.threshold
        self.log.log(threshold.levelno, threshold.message or threshold.classification)
        limit = self.config.chunk_size_warning_limit * 1024
        for entry in report.entries:
            if entry.size_bytes > limit:
                self.log.warning(
                    "%s is larger than %d KB (%s)",
                    entry.name,
                    self.config.chunk_size_warning_limit,
                    format_size(entry.size_bytes),
                )

    def report(self, output: BundleOutput) -> SizeReport:
        report = self.measure(output)
        self.emit(report)
        return report

    def build_started(self) -> None:
        self.log.info("🔨 %s %s build starting...", self.config.name, self.config.mode.value)

    def build_completed(self, result: BuildResult) -> None:
        self.log.info(
            "✅ %s %s build completed! %s (%s)",
            self.config.name,
            self.config.mode.value,
            format_size(result.report.total_bytes),
            result.report.classification,
        )


# ----------------------------------------------------------------------------
# lifecycle


@dataclass(frozen=True)
class BuildHooks:
    """Observers called once each at fixed lifecycle points"""

    on_build_start: Optional[Callable[[BuildConfig], None]] = None
    on_bundle_generated: Optional[Callable[[BundleOutput, SizeReport], None]] = None
    on_build_end: Optional[Callable[[BuildResult], None]] = None


TRANSITIONS = {
    BuildState.IDLE: BuildState.STARTING,
    BuildState.STARTING: BuildState.TRANSFORMING,
    BuildState.TRANSFORMING: BuildState.BUNDLING,
    BuildState.BUNDLING: BuildState.SHRINKING,
    BuildState.SHRINKING: BuildState.REPORTING,
    BuildState.REPORTING: BuildState.COMPLETED,
}


class Lifecycle:
    """Build state machine; built-in reporting runs before user hooks"""

    def __init__(self, reporter: Reporter, hooks: Optional[BuildHooks] = None):
        self.reporter = reporter
        self.hooks = hooks or BuildHooks()
        self.state = BuildState.IDLE
        self.history: list[BuildState] = [self.state]
        self.log = logging.getLogger(self.__class__.__name__)

    @property
    def is_terminal(self) -> bool:
        return self.state in (BuildState.COMPLETED, BuildState.FAILED)

    def enter(self, state: BuildState) -> None:
        if TRANSITIONS.get(self.state) is not state:
            raise BuildError(
                f"illegal transition {self.state.value} -> {state.value}"
            )
        self.log.debug("%s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def build_start(self, config: BuildConfig) -> None:
        self.enter(BuildState.STARTING)
        self.reporter.build_started()
        if self.hooks.on_build_start:
            self.hooks.on_build_start(config)

    def bundle_generated(self, output: BundleOutput) -> SizeReport:
        self.enter(BuildState.REPORTING)
        report = self.reporter.report(output)
        if self.hooks.on_bundle_generated:
            self.hooks.on_bundle_generated(output, report)
        return report

    def build_end(self, result: BuildResult) -> None:
        if self.state is not BuildState.REPORTING:
            raise BuildError(f"build end reached in state {self.state.value}")
        self.reporter.build_completed(result)
        if self.hooks.on_build_end:
            self.hooks.on_build_end(result)
        self.enter(BuildState.COMPLETED)

    def fail(self) -> None:
        if self.is_terminal:
            return
        self.log.debug("%s -> %s", self.state.value, BuildState.FAILED.value)
        self.state = BuildState.FAILED
        self.history.append(self.state)


# ----------------------------------------------------------------------------
# builder


class WidgetBuilder(ShellCmd):
    """Runs resolve, transform, bundle, shrink and report for one config"""

    def __init__(
        self,
        config: BuildConfig,
        hooks: Optional[BuildHooks] = None,
        transforms: Optional[Mapping[Role, Transform]] = None,
    ):
        self.config = config
        self.hooks = hooks
        self.registry = ExternalRegistry.from_config(config)
        self.resolver = Resolver(config, self.registry)
        self.stage = TransformStage(config, transforms)
        self.bundler = Bundler(config, self.registry)
        self.shrinker = Shrinker.from_config(config, self.registry)
        self.reporter = Reporter(config)
        self.lifecycle: Optional[Lifecycle] = None
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.config.name}'>"

    @property
    def staging_dir(self) -> Path:
        out = self.config.out_path
        return out.parent / f".{out.name}.partial"

    def shrink(self, output: BundleOutput) -> BundleOutput:
        chunk = self.shrinker.shrink_artifact(output.chunk)
        if self.config.banner:
            chunk = replace(chunk, code=f"{self.config.banner}\n{chunk.code}")
        return replace(output, chunk=chunk)

    def write_output(self, output: BundleOutput, empty: bool = True) -> Path:
        """write all artifacts to a staging folder, then swap it into outDir

        With `empty` false the artifacts are copied over what outDir holds.
        """
        staging = self.staging_dir
        out = self.config.out_path
        if staging.exists():
            self.remove(staging)
        for artifact in output.artifacts:
            self.write_file(staging / artifact.file_name, artifact.data)
        if empty:
            if out.exists():
                self.remove(out)
            self.move(staging, out)
        else:
            self.log.warning("outDir %s is outside the project root, not emptied", out)
            self.copy(staging, out)
            self.remove(staging)
        return out

    def build(self) -> BuildResult:
        """run every stage in order; any failure leaves no output behind

        Raises:
            BuildError: The failure of whichever stage aborted the build
        """
        lifecycle = self.lifecycle = Lifecycle(self.reporter, self.hooks)
        out_dir: Optional[Path] = None
        empty = True
        try:
            empty = self.config.check_out_dir()
            lifecycle.build_start(self.config)
            graph = self.resolver.discover()
            lifecycle.enter(BuildState.TRANSFORMING)
            fragments = self.stage.run(list(graph.units.values()))
            lifecycle.enter(BuildState.BUNDLING)
            output = self.bundler.bundle(graph, fragments)
            lifecycle.enter(BuildState.SHRINKING)
            output = self.shrink(output)
            report = lifecycle.bundle_generated(output)
            out_dir = self.write_output(output, empty)
            result = BuildResult(output, report, out_dir)
            lifecycle.build_end(result)
            return result
        except Exception as e:
            lifecycle.fail()
            if self.staging_dir.exists():
                self.remove(self.staging_dir, silent=True)
            if out_dir is not None and out_dir.exists():
                if empty:
                    self.remove(out_dir, silent=True)
                else:
                    for artifact in output.artifacts:
                        self.remove(out_dir / artifact.file_name, silent=True)
            self.log.critical("build failed: %s", e)
            raise

    def write_report_json(self, report: SizeReport, to: Pathlike) -> None:
        """Write size report to JSON file"""
        with open(to, "w", encoding="utf8") as f:
            json.dump(report.to_dict(), f, indent=4, ensure_ascii=False)

    def plan(self) -> None:
        """Display build plan without actually building."""
        config = self.config
        empty = config.check_out_dir()
        graph = self.resolver.discover()

        print("\n" + "=" * 60)
        print("BUILD PLAN (dry-run)")
        print("=" * 60)

        print("\n[Build Target]")
        print(f"  Name:              {config.name}")
        print(f"  Mode:              {config.mode.value}")
        print(f"  Target:            {config.target}")
        print(f"  Output:            {config.out_dir}/{config.output_file_name}")
        print(f"  Empty outDir:      {empty}")
        print(f"  Assets directory:  {config.assets_dir}")
        print(f"  Parallel jobs:     {config.jobs}")

        print(f"\n[Externals] ({len(self.registry)})")
        if len(self.registry):
            for external in self.registry:
                print(f"  {external.module_id} -> {external.global_name}")
        else:
            print("  (none)")

        print(f"\n[Modules] ({len(graph)})")
        for path, unit in graph.units.items():
            marker = " (dynamic)" if path in graph.dynamic_targets else ""
            print(f"  {unit.role.value:<9} {self.bundler.module_label(path)}{marker}")

        policy = config.shrink_policy
        dropped = sorted(k.value for k in policy.drop_statements)
        reserved = sorted(self.shrinker.surface.names)
        print("\n[Shrink Policy]")
        print(f"  Compress passes:   {policy.compress_passes}")
        print(f"  Drop statements:   {', '.join(dropped) or '(none)'}")
        print(f"  Pure functions:    {', '.join(sorted(policy.pure_function_names)) or '(none)'}")
        print(f"  Reserved names:    {', '.join(reserved) or '(none)'}")
        print(f"  Rename:            {policy.mangle}")

        print("\n[Size Thresholds]")
        for threshold in config.size_thresholds:
            print(f"  > {format_size(threshold.byte_limit):>12}  {threshold.classification}")
        print(f"  {'otherwise':>14}  {config.optimal_classification}")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


# ----------------------------------------------------------------------------
# command line


def load_config(args: argparse.Namespace) -> BuildConfig:
    """the mode defaults, a json file layered on top, then cli overrides"""
    data: dict[str, Any] = {}
    base_dir: Optional[Path] = None
    if args.config:
        path = Path(args.config)
        data = read_config(path)
        base_dir = path.parent
    data = layer_config(data, args.mode)
    if args.entry:
        data["entries"] = args.entry
    if args.outdir:
        data["outDir"] = args.outdir
    if args.jobs:
        data["jobs"] = args.jobs
    return BuildConfig.from_dict(data, base_dir=base_dir)


def main() -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="widgetpack",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="packages a browser widget into a single production script",
    )
    opt = parser.add_argument

    # fmt: off
    opt("-c", "--config", help="json build configuration", metavar="PATH")
    opt("-e", "--entry", help="entry module(s) (default: from config)", nargs="+", metavar="ENTRY")
    opt("-o", "--outdir", help="output directory (default: from config)", metavar="DIR")
    opt("-m", "--mode", help="build mode", choices=[m.value for m in Mode])
    opt("-j", "--jobs", help="# of transform workers (default: from config)", type=int)
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("-w", "--write-config", help="serialize config to json file", metavar="PATH")
    opt("--report-json", help="write the size report to a json file", metavar="PATH")
    opt("-v", "--verbose", help="debug logging", action="store_true")
    opt("--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args()

    try:
        config = load_config(args)
    except BuildError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logger, debug=args.verbose or DEBUG)

    if args.write_config:
        config.write_json(args.write_config)
        sys.exit(0)

    builder = WidgetBuilder(config)

    try:
        if args.dry_run:
            builder.plan()
            sys.exit(0)
        result = builder.build()
    except BuildError as e:
        if args.dry_run:
            print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.report_json:
        builder.write_report_json(result.report, args.report_json)
    sys.exit(0)


if __name__ == "__main__":
    main()
