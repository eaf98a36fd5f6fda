#!/usr/bin/env python3
"""Local development environment setup for card-app-server.

The tool provisions everything a developer needs to run card-app-server
locally: command-line dependencies, Docker, Java 8/11 and Maven through
SDKMAN!, the local-setup source patch, the Oracle XE database container and
the Payara application-server domains.

Every piece of work is a step of a :class:`devenv_sequencer.Sequencer`.  Each
step first checks whether its effect already holds, so the tool can be
re-run at any time and only performs what is still missing.

``run --all``
    Run the complete catalog.

``run --step NAME``
    Run a single step together with the steps it depends on.

Without a sub-command an interactive numbered menu is shown.
"""
from __future__ import annotations

import argparse
import dataclasses
import datetime as _dt
import filecmp
import json
import logging
import os
import pathlib
import re
import shlex
import shutil
import sys
import tempfile
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[assignment]

from devenv_sequencer import (
    ALL,
    CommandResult,
    CommandRunner,
    ExecutionContext,
    ExternalCommandFailed,
    FailurePolicy,
    PlatformProfile,
    PrerequisiteMissing,
    Prompter,
    RunReport,
    Sequencer,
    SequencerError,
    Step,
    StepOutcome,
    UnknownStepError,
    UserAbort,
    confirm_from_input,
    log_success,
    read_line,
    shell_join,
    time_left,
    wait_until,
)

LOG = logging.getLogger(__name__)

TOOL_VERSION = "1.2.0"
MODULE_DIR = pathlib.Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = MODULE_DIR / "devenv_setup.toml"

SDKMAN_INSTALL_URL = "https://get.sdkman.io"
HOMEBREW_INSTALL_URL = "https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh"
HOMEBREW_LOCATIONS = ("/opt/homebrew/bin/brew", "/usr/local/bin/brew")
JAVA_SWITCHER = ".java_switcher"
JAVA_SWITCHER_SOURCE_LINE = "source ~/.java_switcher"
LOG_RETENTION_DAYS = 7
DOMAIN_MARKER = ".devenv-configured"


class UnsupportedPlatformError(RuntimeError):
    """The host operating system is not supported."""


@dataclasses.dataclass(frozen=True)
class JavaSettings:
    java8: str = "8.0.45-zulu"
    java11: str = "11.0.26-zulu"
    platforms: Mapping[str, Mapping[str, str]] = dataclasses.field(
        default_factory=lambda: {"macos": {"java8": "8.0.442-zulu", "java11": "11.0.26-zulu"}}
    )

    def versions_for(self, platform: str) -> Dict[str, str]:
        versions = {"java8": self.java8, "java11": self.java11}
        versions.update(self.platforms.get(platform, {}))
        return versions


@dataclasses.dataclass(frozen=True)
class DockerSettings:
    startup_timeout: float = 90
    poll_interval: float = 3
    check_timeout: float = 10
    colima_args: Tuple[str, ...] = ("--cpu", "4", "--memory", "8", "--arch", "x86_64")


@dataclasses.dataclass(frozen=True)
class PathSettings:
    source_marker: str = "card-app-server"
    payara_candidates: Tuple[str, ...] = (
        "/opt/payara5",
        "~/payara5",
        "~/work/payara5",
        "/Applications/Payara5",
    )
    patch_file: str = "Setup-local-v2.patch"
    jdbc_driver: str = "card-member-core/conte/resources/ojdbc10.jar"


@dataclasses.dataclass(frozen=True)
class OracleSettings:
    image_tag: str = "21.3.0-xe-builded"
    image_archive: str = "oracle-21.3.0-xe-builded.tar"
    container_filter: str = "oracle"
    compose_command: Tuple[str, ...] = ("docker-compose",)
    compose_dirs: Tuple[str, ...] = ("card-member-core/conte", "card-ria/conte")


@dataclasses.dataclass(frozen=True)
class DomainSpec:
    """Payara domain to create, with the admin commands that configure it."""

    name: str
    portbase: int
    commands: Tuple[Tuple[str, ...], ...] = ()

    @property
    def admin_port(self) -> int:
        return self.portbase + 48


_JAVA_HOME_COMMAND = ("set", "configs.config.server-config.java-config.java-home={java_home}")
_HEAP_COMMANDS = (("create-jvm-options", "-Xmx1g"), ("delete-jvm-options", "-Xmx512m"))

DEFAULT_DOMAINS: Tuple[DomainSpec, ...] = (
    DomainSpec("ria", 8000, (_JAVA_HOME_COMMAND, *_HEAP_COMMANDS)),
    DomainSpec(
        "member-core",
        8100,
        (
            _JAVA_HOME_COMMAND,
            (
                "create-jdbc-connection-pool",
                "--datasourceclassname",
                "oracle.jdbc.pool.OracleDataSource",
                "--restype",
                "javax.sql.DataSource",
                "--property",
                r"url=jdbc\:oracle\:thin\:@//localhost\:1521/xepdb1:user=card_core:password=rakutencard_local",
                "card-core-pool",
            ),
            ("create-jdbc-resource", "--connectionpoolid", "card-core-pool", "jdbc/card_core"),
            *_HEAP_COMMANDS,
        ),
    ),
)


@dataclasses.dataclass(frozen=True)
class SetupConfig:
    """Configuration loaded from a TOML manifest."""

    java: JavaSettings = dataclasses.field(default_factory=JavaSettings)
    maven_version: str = "3.6.3"
    dependencies: Tuple[str, ...] = ("curl", "zip", "unzip", "tar")
    docker: DockerSettings = dataclasses.field(default_factory=DockerSettings)
    paths: PathSettings = dataclasses.field(default_factory=PathSettings)
    oracle: OracleSettings = dataclasses.field(default_factory=OracleSettings)
    domains: Tuple[DomainSpec, ...] = DEFAULT_DOMAINS

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "SetupConfig":
        java_section = _table(data, "java")
        platforms_section = _table(java_section, "platforms", prefix="java")
        platforms: Dict[str, Dict[str, str]] = {}
        for platform, overrides in platforms_section.items():
            if not isinstance(overrides, Mapping):
                raise TypeError(f"java.platforms.{platform} must be a table")
            platforms[platform] = {
                key: _string(overrides, key, f"java.platforms.{platform}") for key in overrides
            }
        java_defaults = JavaSettings()
        java = JavaSettings(
            java8=_string(java_section, "java8", "java", java_defaults.java8),
            java11=_string(java_section, "java11", "java", java_defaults.java11),
            platforms=platforms if "platforms" in java_section else java_defaults.platforms,
        )

        maven_section = _table(data, "maven")
        maven_version = _string(maven_section, "version", "maven", cls.maven_version)

        deps_section = _table(data, "dependencies")
        dependencies = _strings(deps_section, "tools", "dependencies", cls.dependencies)

        docker_section = _table(data, "docker")
        docker_defaults = DockerSettings()
        docker = DockerSettings(
            startup_timeout=_number(docker_section, "startup_timeout", "docker", docker_defaults.startup_timeout),
            poll_interval=_number(docker_section, "poll_interval", "docker", docker_defaults.poll_interval),
            check_timeout=_number(docker_section, "check_timeout", "docker", docker_defaults.check_timeout),
            colima_args=_strings(docker_section, "colima_args", "docker", docker_defaults.colima_args),
        )

        paths_section = _table(data, "paths")
        path_defaults = PathSettings()
        paths = PathSettings(
            source_marker=_string(paths_section, "source_marker", "paths", path_defaults.source_marker),
            payara_candidates=_strings(
                paths_section, "payara_candidates", "paths", path_defaults.payara_candidates
            ),
            patch_file=_string(paths_section, "patch_file", "paths", path_defaults.patch_file),
            jdbc_driver=_string(paths_section, "jdbc_driver", "paths", path_defaults.jdbc_driver),
        )

        oracle_section = _table(data, "oracle")
        oracle_defaults = OracleSettings()
        oracle = OracleSettings(
            image_tag=_string(oracle_section, "image_tag", "oracle", oracle_defaults.image_tag),
            image_archive=_string(oracle_section, "image_archive", "oracle", oracle_defaults.image_archive),
            container_filter=_string(
                oracle_section, "container_filter", "oracle", oracle_defaults.container_filter
            ),
            compose_command=_strings(
                oracle_section, "compose_command", "oracle", oracle_defaults.compose_command
            ),
            compose_dirs=_strings(oracle_section, "compose_dirs", "oracle", oracle_defaults.compose_dirs),
        )

        payara_section = _table(data, "payara")
        domains_section = payara_section.get("domains")
        if domains_section is None:
            domains = DEFAULT_DOMAINS
        else:
            if isinstance(domains_section, (str, bytes)) or not isinstance(domains_section, Iterable):
                raise TypeError("[[payara.domains]] section must be a list of tables")
            parsed: List[DomainSpec] = []
            for entry in domains_section:
                if not isinstance(entry, Mapping):
                    raise TypeError("Each payara domain entry must be a table")
                name = entry.get("name")
                if not isinstance(name, str):
                    raise TypeError("Payara domain name must be a string")
                portbase = entry.get("portbase")
                if not isinstance(portbase, int) or isinstance(portbase, bool):
                    raise TypeError(f"Payara domain {name!r} requires an integer portbase")
                commands = entry.get("commands", [])
                if isinstance(commands, (str, bytes)) or not isinstance(commands, Iterable):
                    raise TypeError(f"Payara domain {name!r} commands must be a list of lists")
                parsed_commands: List[Tuple[str, ...]] = []
                for command in commands:
                    if isinstance(command, (str, bytes)) or not isinstance(command, Iterable):
                        raise TypeError(f"Payara domain {name!r} commands must be a list of lists")
                    parsed_commands.append(tuple(str(arg) for arg in command))
                parsed.append(DomainSpec(name=name, portbase=portbase, commands=tuple(parsed_commands)))
            domains = tuple(parsed)

        return cls(
            java=java,
            maven_version=maven_version,
            dependencies=dependencies,
            docker=docker,
            paths=paths,
            oracle=oracle,
            domains=domains,
        )


def _table(data: Mapping[str, object], key: str, prefix: str = "") -> Mapping[str, object]:
    section = data.get(key, {})
    if not isinstance(section, Mapping):
        label = f"{prefix}.{key}" if prefix else key
        raise TypeError(f"[{label}] section must be a table in the configuration")
    return section


def _string(section: Mapping[str, object], key: str, prefix: str, default: Optional[str] = None) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise TypeError(f"{prefix}.{key} must be a string")
    return value


def _strings(
    section: Mapping[str, object], key: str, prefix: str, default: Tuple[str, ...]
) -> Tuple[str, ...]:
    value = section.get(key, default)
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise TypeError(f"{prefix}.{key} must be a list of strings")
    return tuple(str(item) for item in value)


def _number(section: Mapping[str, object], key: str, prefix: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise TypeError(f"{prefix}.{key} must be a number")
    return value


def load_setup_config(path: Optional[pathlib.Path] = None) -> SetupConfig:
    """Load a :class:`SetupConfig` from the provided TOML file.

    Without ``path`` the ``devenv_setup.toml`` next to this module is used when
    it exists, otherwise the built-in defaults apply.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    if path is None and not config_path.exists():
        LOG.debug("No configuration file at %s; using built-in defaults", config_path)
        return SetupConfig()
    with config_path.open("rb") as fh:
        data = tomllib.load(fh)
    if not isinstance(data, Mapping):
        raise TypeError("Configuration root must be a table")
    LOG.debug("Loaded configuration from %s", config_path)
    return SetupConfig.from_mapping(data)


PLATFORMS: Dict[str, PlatformProfile] = {
    "macos": PlatformProfile(
        name="macos",
        package_managers=("brew",),
        docker_strategy="colima",
        rc_candidates=(".zshrc", ".bash_profile"),
    ),
    "windows": PlatformProfile(
        name="windows",
        package_managers=("winget",),
        docker_strategy="desktop",
        docker_desktop=pathlib.Path("C:/Program Files/Docker/Docker/Docker Desktop.exe"),
        rc_candidates=(".bashrc",),
    ),
    "linux": PlatformProfile(
        name="linux",
        package_managers=("dnf", "apt"),
        docker_strategy="service",
        rc_candidates=(".zshrc", ".bashrc"),
    ),
}


def detect_platform(sys_platform: Optional[str] = None, ostype: Optional[str] = None) -> PlatformProfile:
    """Map the running interpreter and shell to a :class:`PlatformProfile`."""

    sys_platform = sys_platform if sys_platform is not None else sys.platform
    ostype = (ostype if ostype is not None else os.environ.get("OSTYPE", "")).lower()

    if sys_platform == "darwin" or ostype.startswith("darwin"):
        name = "macos"
    elif sys_platform in {"win32", "cygwin", "msys"} or ostype.startswith(("msys", "cygwin", "win")):
        name = "windows"
    elif sys_platform.startswith("linux"):
        name = "linux"
    else:
        raise UnsupportedPlatformError(f"Operating system {sys_platform!r} is not supported by this tool")
    LOG.info("Detected OS: %s", name)
    return PLATFORMS[name]


class FileWriter:
    """Writes configuration files safely and idempotently."""

    def __init__(self, dry_run: bool = False) -> None:
        self.dry_run = dry_run

    def write_file(self, path: pathlib.Path, content: str, mode: Optional[int] = None) -> None:
        if path.exists() and path.read_text(encoding="utf-8") == content:
            LOG.info("%s is already up to date", path)
            return
        if self.dry_run:
            LOG.info("[dry-run] Would write %s", path)
            LOG.debug("Content for %s:\n%s", path, content)
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            timestamp = _dt.datetime.now().strftime("%Y%m%d%H%M%S")
            backup = path.with_name(path.name + f".bak-{timestamp}")
            shutil.copy2(path, backup)
            LOG.info("Created backup %s", backup)
        path.write_text(content, encoding="utf-8")
        if mode is not None:
            os.chmod(path, mode)
        LOG.info("Wrote %s", path)

    def append_lines(self, path: pathlib.Path, lines: Sequence[str]) -> None:
        if self.dry_run:
            LOG.info("[dry-run] Would append %d line(s) to %s", len(lines), path)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        existing = path.read_text(encoding="utf-8") if path.exists() else ""
        prefix = "" if not existing or existing.endswith("\n") else "\n"
        with path.open("a", encoding="utf-8") as fh:
            fh.write(prefix + "\n".join(lines) + "\n")
        LOG.info("Updated %s", path)

    def copy_file(self, source: pathlib.Path, target: pathlib.Path) -> None:
        if self.dry_run:
            LOG.info("[dry-run] Would copy %s -> %s", source, target)
            return
        shutil.copy2(source, target)

    def copy_tree(self, source: pathlib.Path, target: pathlib.Path) -> None:
        if self.dry_run:
            LOG.info("[dry-run] Would copy %s -> %s", source, target)
            return
        shutil.copytree(source, target, symlinks=True)


def _privileged(ctx: ExecutionContext, cmd: Sequence[str]) -> List[str]:
    geteuid = getattr(os, "geteuid", None)
    if geteuid is not None and geteuid() == 0:
        return list(cmd)
    if ctx.runner.which("sudo"):
        return ["sudo", *cmd]
    return list(cmd)


def _expand_home(raw: str, home: pathlib.Path) -> pathlib.Path:
    if raw == "~":
        return home
    if raw.startswith("~/"):
        return home / raw[2:]
    return pathlib.Path(raw)


def normalize_directory(raw: str, cwd: pathlib.Path, home: Optional[pathlib.Path] = None) -> Optional[pathlib.Path]:
    """Turn user input into a directory path anchored at ``cwd``.

    Windows drive paths (``C:...``) are treated as absolute.  Trailing
    separators are dropped.
    """

    raw = raw.strip()
    if not raw:
        return None
    path = _expand_home(raw, home or pathlib.Path.home())
    if not path.is_absolute() and not re.match(r"^[A-Za-z]:", raw):
        path = cwd / path
    return path


def _require_dir(ctx: ExecutionContext, key: str, label: str) -> pathlib.Path:
    value = ctx.get(key)
    if value is None or not pathlib.Path(value).is_dir():
        raise PrerequisiteMissing(f"{label} is not available; run the {key.replace('_', '-')} step first")
    return pathlib.Path(value)


def _config(ctx: ExecutionContext) -> SetupConfig:
    return ctx.config if ctx.config is not None else SetupConfig()


def _writer(ctx: ExecutionContext) -> FileWriter:
    return FileWriter(dry_run=ctx.dry_run)


def _timestamp() -> str:
    return _dt.datetime.now().strftime("%Y%m%d_%H%M%S")


def ensure_homebrew(ctx: ExecutionContext) -> str:
    """Return the ``brew`` executable, installing Homebrew when it is absent."""

    brew = ctx.runner.which("brew") or _installed_homebrew()
    if brew:
        return brew
    LOG.info("Installing Homebrew...")
    ctx.runner.run_shell(f'NONINTERACTIVE=1 /bin/bash -c "$(curl -fsSL {HOMEBREW_INSTALL_URL})"')
    if ctx.dry_run:
        return "brew"
    brew = _installed_homebrew()
    if not brew:
        raise PrerequisiteMissing("Homebrew installation did not produce a brew executable")
    return brew


def _installed_homebrew() -> Optional[str]:
    for location in HOMEBREW_LOCATIONS:
        if pathlib.Path(location).is_file():
            return location
    return None


class PackageManager(ABC):
    """Simple wrapper around the host package manager."""

    def __init__(self, ctx: ExecutionContext, executable: str) -> None:
        self.ctx = ctx
        self.executable = executable

    @classmethod
    def for_platform(cls, ctx: ExecutionContext) -> "PackageManager":
        for name in ctx.platform.package_managers:
            manager_cls = PACKAGE_MANAGERS.get(name)
            if manager_cls is None:
                continue
            manager = manager_cls.try_create(ctx)
            if manager is not None:
                return manager
        raise PrerequisiteMissing(
            "No supported package manager (%s) is available on this system"
            % ", ".join(ctx.platform.package_managers)
        )

    @classmethod
    @abstractmethod
    def try_create(cls, ctx: ExecutionContext) -> Optional["PackageManager"]:
        """Return an initialised manager when the backend is available."""

    @abstractmethod
    def install_missing(self, tools: List[str]) -> None:
        """Install the provided tools without performing any additional checks."""

    def supports(self, tool: str) -> bool:
        return True

    def is_installed(self, tool: str) -> bool:
        return self.ctx.runner.which(tool) is not None

    def install(self, tools: Iterable[str]) -> None:
        missing: List[str] = []
        for tool in sorted(set(tools)):
            if self.is_installed(tool):
                LOG.info("'%s' is already installed; skipping.", tool)
            else:
                missing.append(tool)
        if not missing:
            return
        LOG.info("Installing missing dependencies: %s", ", ".join(missing))
        self.install_missing(missing)


class HomebrewManager(PackageManager):
    """Homebrew on macOS.  Homebrew itself is installed on demand."""

    @classmethod
    def try_create(cls, ctx: ExecutionContext) -> Optional["PackageManager"]:
        return cls(ctx, ensure_homebrew(ctx))

    def install_missing(self, tools: List[str]) -> None:
        for tool in tools:
            LOG.info("Installing %s via Homebrew...", tool)
            self.ctx.runner.run([self.executable, "install", tool])
            log_success(LOG, "%s installed successfully", tool)


class DnfManager(PackageManager):
    """Package manager implementation for dnf/yum based systems."""

    @classmethod
    def try_create(cls, ctx: ExecutionContext) -> Optional["PackageManager"]:
        executable = ctx.runner.which("dnf") or ctx.runner.which("yum")
        if not executable:
            return None
        return cls(ctx, executable)

    def install_missing(self, tools: List[str]) -> None:
        self.ctx.runner.run(_privileged(self.ctx, [self.executable, "-y", "install", *tools]))


class AptManager(PackageManager):
    """Package manager implementation for Debian/Ubuntu based systems."""

    @classmethod
    def try_create(cls, ctx: ExecutionContext) -> Optional["PackageManager"]:
        executable = ctx.runner.which("apt-get") or ctx.runner.which("apt")
        if not executable:
            return None
        return cls(ctx, executable)

    def install_missing(self, tools: List[str]) -> None:
        self.ctx.runner.run(_privileged(self.ctx, [self.executable, "install", "-y", *tools]))


class WingetManager(PackageManager):
    """winget on Windows.  Only tools with a known package id can be installed."""

    PACKAGE_IDS = {"zip": "GnuWin32.Zip", "unzip": "GnuWin32.UnZip"}

    @classmethod
    def try_create(cls, ctx: ExecutionContext) -> Optional["PackageManager"]:
        executable = ctx.runner.which("winget")
        if not executable:
            return None
        return cls(ctx, executable)

    def supports(self, tool: str) -> bool:
        return tool in self.PACKAGE_IDS

    def install_missing(self, tools: List[str]) -> None:
        for tool in tools:
            LOG.info("Installing %s using winget...", tool)
            self.ctx.runner.run([self.executable, "install", "-e", "--id", self.PACKAGE_IDS[tool]])


PACKAGE_MANAGERS = {
    "brew": HomebrewManager,
    "dnf": DnfManager,
    "apt": AptManager,
    "winget": WingetManager,
}


def _directory_is_known(key: str):
    def predicate(ctx: ExecutionContext) -> bool:
        value = ctx.get(key)
        return value is not None and pathlib.Path(value).is_dir()

    return predicate


def _ask_for_directory(key: str, label: str, example: str = ""):
    def apply(ctx: ExecutionContext) -> None:
        current = ctx.get(key)
        if current is not None:
            LOG.error("Directory not found at %s", current)
            if not ctx.confirm("Would you like to enter a different path?"):
                raise PrerequisiteMissing(f"{label} not found at {current}")
        hint = f" (e.g., {example})" if example else ""
        while True:
            raw = ctx.prompt(f"Please enter the path to the {label}{hint}:")
            path = normalize_directory(raw, ctx.cwd, ctx.home)
            if path is not None and path.is_dir():
                ctx.set(key, path, overwrite=True)
                log_success(LOG, "Using %s: %s", label, path)
                return None
            LOG.error("Directory not found at %s", path if path is not None else "(empty input)")
            if not ctx.confirm("Would you like to enter a different path?"):
                raise PrerequisiteMissing(f"{label} not provided")

    return apply


def detect_source_dir(cwd: pathlib.Path, marker: str) -> Optional[pathlib.Path]:
    for candidate in (cwd, *cwd.parents):
        if marker in candidate.name:
            return candidate
    return None


def detect_payara_dir(candidates: Iterable[str], home: pathlib.Path) -> Optional[pathlib.Path]:
    for raw in candidates:
        path = _expand_home(raw, home)
        if path.is_dir():
            return path
    return None


def auto_detect_config(ctx: ExecutionContext) -> None:
    """Seed the context with directories that can be found without asking."""

    LOG.info("Auto-detecting configuration...")
    config = _config(ctx)
    if "payara_dir" not in ctx:
        payara = detect_payara_dir(config.paths.payara_candidates, ctx.home)
        if payara is not None:
            ctx.set("payara_dir", payara)
            log_success(LOG, "Auto-detected Payara at: %s", payara)
    if "source_dir" not in ctx:
        source = detect_source_dir(ctx.cwd, config.paths.source_marker)
        if source is not None:
            ctx.set("source_dir", source)
            log_success(LOG, "Auto-detected source directory: %s", source)


def _missing_tools(ctx: ExecutionContext) -> List[str]:
    return [tool for tool in _config(ctx).dependencies if not ctx.runner.which(tool)]


def _dependencies_satisfied(ctx: ExecutionContext) -> bool:
    return not _missing_tools(ctx)


def _install_dependencies(ctx: ExecutionContext) -> None:
    missing = _missing_tools(ctx)
    for tool in missing:
        LOG.warning("%s is not installed.", tool)
    try:
        manager: Optional[PackageManager] = PackageManager.for_platform(ctx)
    except PrerequisiteMissing as exc:
        LOG.warning("%s", exc)
        manager = None

    installable = [tool for tool in missing if manager is not None and manager.supports(tool)]
    for tool in missing:
        if tool in installable:
            continue
        LOG.warning("Please install %s manually (e.g., 'pacman -S %s' in MSYS2).", tool, tool)
        if not ctx.confirm(f"Continue without {tool}?"):
            raise PrerequisiteMissing(f"{tool} is required but not installed")
    if manager is not None and installable:
        manager.install(installable)


def _docker_running(ctx: ExecutionContext, timeout: Optional[float] = None) -> bool:
    if timeout is None:
        timeout = _config(ctx).docker.check_timeout
    return ctx.runner.probe(["docker", "info"], timeout=timeout).ok


def _setup_docker(ctx: ExecutionContext) -> None:
    settings = _config(ctx).docker
    strategy = ctx.platform.docker_strategy
    installed = ctx.runner.which("docker") is not None
    if installed:
        LOG.warning("Docker is installed but not running or has configuration issues.")

    if strategy == "desktop":
        if not installed:
            LOG.info("For Windows without admin rights, Docker setup is manual:")
            LOG.info("1. Download Docker Desktop from https://www.docker.com/products/docker-desktop")
            LOG.info("2. Install it with the 'Install for me only' option (no admin rights needed).")
            raise PrerequisiteMissing("Docker Desktop is not installed; install it and re-run this step")
        desktop = ctx.platform.docker_desktop
        if desktop is None or not desktop.exists():
            raise PrerequisiteMissing(f"Cannot find Docker Desktop at {desktop}. Please start Docker manually.")
        LOG.warning("Attempting to start Docker Desktop...")
        ctx.runner.spawn([str(desktop)])
    elif strategy == "colima":
        LOG.info("Setting up Docker with Colima for macOS (non-admin)...")
        brew = ensure_homebrew(ctx)
        ctx.runner.run([brew, "install", "docker", "docker-compose", "colima"])
        colima = ctx.runner.which("colima") or str(pathlib.Path(brew).parent / "colima")
        ctx.runner.run([colima, "start", *settings.colima_args])
        ctx.runner.run(["docker", "context", "use", "colima"])
    else:
        if not installed:
            raise PrerequisiteMissing(
                "Docker is not installed. Install Docker Engine (https://docs.docker.com/engine/install/) and re-run"
            )
        ctx.runner.run(_privileged(ctx, ["systemctl", "start", "docker"]))

    if ctx.dry_run:
        return
    deadline = time.monotonic() + settings.startup_timeout
    wait_until(
        lambda: _docker_running(ctx, timeout=time_left(deadline, settings.check_timeout)),
        timeout=settings.startup_timeout,
        interval=settings.poll_interval,
        description="the Docker daemon",
    )
    version = ctx.runner.probe(["docker", "--version"])
    log_success(LOG, "Docker is now running properly. %s", version.stdout.strip())


def _sdkman_init(ctx: ExecutionContext) -> pathlib.Path:
    return ctx.home / ".sdkman" / "bin" / "sdkman-init.sh"


def _candidate_dir(ctx: ExecutionContext, candidate: str, version: str) -> pathlib.Path:
    return ctx.home / ".sdkman" / "candidates" / candidate / version


def _java_versions(ctx: ExecutionContext) -> Dict[str, str]:
    return _config(ctx).java.versions_for(ctx.platform.name)


def sdk(ctx: ExecutionContext, *args: str) -> CommandResult:
    """Invoke the SDKMAN! ``sdk`` shell function."""

    script = f"source {shlex.quote(str(_sdkman_init(ctx)))} && sdk {shell_join(args)}"
    return ctx.runner.run_shell(script, input="y\n")


def _java_satisfied(ctx: ExecutionContext) -> bool:
    if not _sdkman_init(ctx).is_file():
        return False
    return all(_candidate_dir(ctx, "java", version).is_dir() for version in _java_versions(ctx).values())


def _install_java(ctx: ExecutionContext) -> Dict[str, Any]:
    init = _sdkman_init(ctx)
    if init.is_file():
        log_success(LOG, "SDKMAN! is already installed.")
    else:
        LOG.info("Installing SDKMAN!...")
        ctx.runner.run_shell(f"curl -s {shlex.quote(SDKMAN_INSTALL_URL)} | bash")
        if not ctx.dry_run and not init.is_file():
            raise PrerequisiteMissing("SDKMAN! installation failed.")

    homes: Dict[str, pathlib.Path] = {}
    for label, version in _java_versions(ctx).items():
        home = _candidate_dir(ctx, "java", version)
        homes[label] = home
        if home.is_dir():
            log_success(LOG, "Java %s is already installed.", version)
            continue
        LOG.info("Installing %s (%s)...", label, version)
        sdk(ctx, "install", "java", version)
        log_success(LOG, "Java %s installed successfully", version)
    return {"java_homes": homes}


def render_java_switcher(versions: Mapping[str, str]) -> str:
    lines = ["#!/bin/bash", ""]
    for label, version in versions.items():
        lines.extend(
            [
                f"function {label}() {{",
                f"  sdk use java {version}",
                f'  echo "Switched to {label} ({version})"',
                "}",
                "",
            ]
        )
    lines.extend(f"export -f {label}" for label in versions)
    return "\n".join(lines) + "\n"


def _shell_rc(ctx: ExecutionContext) -> pathlib.Path:
    return ctx.platform.shell_rc(ctx.home, ctx.get("shell", ""))


def _rc_sources_switcher(path: pathlib.Path) -> bool:
    return path.is_file() and JAVA_SWITCHER_SOURCE_LINE in path.read_text(encoding="utf-8")


def _java_switcher_satisfied(ctx: ExecutionContext) -> bool:
    switcher = ctx.home / JAVA_SWITCHER
    if not switcher.is_file():
        return False
    if switcher.read_text(encoding="utf-8") != render_java_switcher(_java_versions(ctx)):
        return False
    return _rc_sources_switcher(_shell_rc(ctx))


def _setup_java_switcher(ctx: ExecutionContext) -> None:
    versions = _java_versions(ctx)
    writer = _writer(ctx)
    writer.write_file(ctx.home / JAVA_SWITCHER, render_java_switcher(versions), mode=0o755)
    rc_file = _shell_rc(ctx)
    if not _rc_sources_switcher(rc_file):
        lines = [JAVA_SWITCHER_SOURCE_LINE] + [f"alias {label}='{label}'" for label in versions]
        writer.append_lines(rc_file, lines)
    log_success(
        LOG,
        "Java environment setup completed. Use %s to switch.",
        " or ".join(f"'{label}'" for label in versions),
    )


_WINDOWS_REPO_URL = re.compile(r"<url>file:///C:\\Users\\[^\\<]*\\\.m2\\repository</url>")
_LOCAL_REPOSITORY = re.compile(r"<localRepository>.*?</localRepository>", re.DOTALL)


def rewrite_maven_settings(text: str, repo_url: str, local_repo: pathlib.Path) -> str:
    """Point a shared ``settings.xml`` at this machine's local repository."""

    text = _WINDOWS_REPO_URL.sub(lambda _: f"<url>{repo_url}</url>", text)
    return _LOCAL_REPOSITORY.sub(lambda _: f"<localRepository>{local_repo}</localRepository>", text)


def render_default_maven_settings(repo_url: str, local_repo: pathlib.Path) -> str:
    return f"""<settings xmlns="http://maven.apache.org/SETTINGS/1.0.0"
  xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance"
  xsi:schemaLocation="http://maven.apache.org/SETTINGS/1.0.0
                      http://maven.apache.org/xsd/settings-1.0.0.xsd">
  <localRepository>{local_repo}</localRepository>
  <profiles>
    <profile>
      <id>default</id>
      <repositories>
        <repository>
          <id>local</id>
          <url>{repo_url}</url>
        </repository>
      </repositories>
    </profile>
  </profiles>
  <activeProfiles>
    <activeProfile>default</activeProfile>
  </activeProfiles>
</settings>
"""


def _maven_paths(ctx: ExecutionContext) -> Tuple[pathlib.Path, pathlib.Path]:
    m2 = ctx.home / ".m2"
    return m2 / "settings.xml", m2 / "repository"


def _maven_satisfied(ctx: ExecutionContext) -> bool:
    if not _candidate_dir(ctx, "maven", _config(ctx).maven_version).is_dir():
        return False
    settings, local_repo = _maven_paths(ctx)
    if not settings.is_file():
        return False
    return f"<localRepository>{local_repo}</localRepository>" in settings.read_text(encoding="utf-8")


def _setup_maven(ctx: ExecutionContext) -> None:
    version = _config(ctx).maven_version
    if not _sdkman_init(ctx).is_file() and not ctx.dry_run:
        raise PrerequisiteMissing("SDKMAN! is not installed. Please run the java step first.")

    if _candidate_dir(ctx, "maven", version).is_dir():
        log_success(LOG, "Maven %s is already installed.", version)
    else:
        LOG.info("Installing Maven %s through SDKMAN!...", version)
        sdk(ctx, "install", "maven", version)
    sdk(ctx, "default", "maven", version)

    settings, local_repo = _maven_paths(ctx)
    repo_url = local_repo.as_uri()
    template = ctx.cwd / "settings.xml"
    if template.is_file():
        LOG.info("Configuring Maven settings.xml from %s...", template)
        content = rewrite_maven_settings(template.read_text(encoding="utf-8"), repo_url, local_repo)
    else:
        LOG.warning("settings.xml not found. Creating default settings.xml...")
        content = render_default_maven_settings(repo_url, local_repo)
    if not ctx.dry_run:
        local_repo.mkdir(parents=True, exist_ok=True)
    _writer(ctx).write_file(settings, content)
    log_success(LOG, "Maven (%s) installation and configuration completed.", version)


def locate_patch_file(ctx: ExecutionContext) -> pathlib.Path:
    name = pathlib.Path(_config(ctx).paths.patch_file)
    if name.is_absolute():
        return name
    for base in (ctx.cwd, MODULE_DIR):
        candidate = base / name
        if candidate.is_file():
            return candidate
    return ctx.cwd / name


def _patch_check_command(source: pathlib.Path, patch: pathlib.Path, reverse: bool) -> List[str]:
    if (source / ".git").exists():
        cmd = ["git", "apply", "--check"]
        if reverse:
            cmd.append("--reverse")
        return cmd + [str(patch)]
    cmd = ["patch", "--dry-run", "--force", "-p1", "-i", str(patch)]
    if reverse:
        cmd.append("-R")
    return cmd


def _patch_applied(ctx: ExecutionContext) -> bool:
    """A patch counts as applied when reversing it would succeed cleanly."""

    source = ctx.get("source_dir")
    if source is None or not pathlib.Path(source).is_dir():
        return False
    patch = locate_patch_file(ctx)
    if not patch.is_file():
        return False
    source = pathlib.Path(source)
    return ctx.runner.probe(_patch_check_command(source, patch, reverse=True), cwd=source).ok


def backup_directory(ctx: ExecutionContext, directory: pathlib.Path) -> pathlib.Path:
    backup = directory.with_name(f"{directory.name}_backup_{_timestamp()}")
    LOG.info("Creating backup of %s to %s", directory, backup)
    _writer(ctx).copy_tree(directory, backup)
    log_success(LOG, "Backup created successfully at %s", backup)
    return backup


def _apply_patch(ctx: ExecutionContext) -> None:
    source = _require_dir(ctx, "source_dir", "Source directory")
    patch = locate_patch_file(ctx)
    if not patch.is_file():
        raise PrerequisiteMissing(
            f"Patch file not found at {patch}. Place '{patch.name}' in the working directory."
        )

    check_cmd = _patch_check_command(source, patch, reverse=False)
    check = ctx.runner.probe(check_cmd, cwd=source)
    if not check.ok:
        raise ExternalCommandFailed(
            check_cmd,
            check.returncode,
            check.output,
            message=f"{patch.name} does not apply cleanly and is not already applied: {check.output}",
        )

    if ctx.confirm("Do you want to create a backup before applying the patch?"):
        backup = backup_directory(ctx, source)
        LOG.info("If the patch fails, you can restore from: %s", backup)

    if (source / ".git").exists():
        ctx.runner.run(["git", "apply", str(patch)], cwd=source)
        log_success(LOG, "Patch applied successfully using git apply!")
    else:
        ctx.runner.run(["patch", "--forward", "-p1", "-i", str(patch)], cwd=source)
        log_success(LOG, "Patch applied successfully using patch command!")


def _oracle_containers(ctx: ExecutionContext) -> List[str]:
    result = ctx.runner.probe(
        ["docker", "ps", "-q", "--filter", f"name={_config(ctx).oracle.container_filter}"]
    )
    return result.stdout.split() if result.ok else []


def _compose_dirs(ctx: ExecutionContext) -> Optional[List[pathlib.Path]]:
    source = ctx.get("source_dir")
    if source is None:
        return None
    return [pathlib.Path(source) / rel for rel in _config(ctx).oracle.compose_dirs]


def _compose_running(ctx: ExecutionContext, directory: pathlib.Path) -> bool:
    """True when the compose project in ``directory`` has services and all of them are running."""

    if not directory.is_dir():
        return False
    services = ctx.runner.probe([*_config(ctx).oracle.compose_command, "ps", "-q"], cwd=directory)
    ids = services.stdout.split() if services.ok else []
    if not ids:
        return False
    state = ctx.runner.probe(["docker", "inspect", "--format", "{{.State.Running}}", *ids])
    lines = [line.strip() for line in state.stdout.splitlines() if line.strip()]
    return state.ok and len(lines) == len(ids) and all(line == "true" for line in lines)


def _oracle_satisfied(ctx: ExecutionContext) -> bool:
    if ctx.get("recreate"):
        return False
    compose_dirs = _compose_dirs(ctx)
    if not compose_dirs:
        return False
    return all(_compose_running(ctx, directory) for directory in compose_dirs)


def _oracle_image_present(ctx: ExecutionContext) -> bool:
    result = ctx.runner.probe(["docker", "images", "--format", "{{.Repository}}:{{.Tag}}"])
    tag = _config(ctx).oracle.image_tag.lower()
    return result.ok and any(tag in line.lower() for line in result.stdout.splitlines())


def _prompt_for_file(ctx: ExecutionContext, question: str) -> Optional[pathlib.Path]:
    raw = ctx.prompt(question).strip()
    if not raw:
        return None
    path = _expand_home(raw, ctx.home)
    if not path.is_absolute():
        path = ctx.cwd / path
    return path


def locate_oracle_archive(ctx: ExecutionContext, source: pathlib.Path) -> pathlib.Path:
    archive = _config(ctx).oracle.image_archive
    for location in (ctx.cwd / archive, ctx.home / "Downloads" / archive, source / archive):
        if location.is_file():
            LOG.info("Found Oracle image at: %s", location)
            return location

    LOG.warning("Oracle image file not found in common locations.")
    path = _prompt_for_file(ctx, f"Please enter the full path to {archive}:")
    if path is not None and path.is_file():
        return path

    LOG.error("File not found at: %s", path)
    LOG.info("Would you like to:")
    LOG.info("1) Enter a different path")
    LOG.info("2) Download the image (if you have a download URL)")
    LOG.info("3) Skip Oracle setup")
    choice = ctx.prompt("Enter your choice [1-3]:").strip()
    if choice == "1":
        path = _prompt_for_file(ctx, f"Please enter the correct path to {archive}:")
        if path is None or not path.is_file():
            raise PrerequisiteMissing("Oracle image file still not found.")
        return path
    if choice == "2":
        url = ctx.prompt("Please enter the download URL for the Oracle image:").strip()
        if not url:
            raise PrerequisiteMissing("No download URL provided for the Oracle image.")
        target = pathlib.Path(tempfile.gettempdir()) / archive
        LOG.info("Downloading Oracle image...")
        ctx.runner.run(["curl", "-L", "-o", str(target), url])
        log_success(LOG, "Download completed successfully.")
        return target
    if choice == "3":
        raise UserAbort("Oracle setup skipped by user")
    raise PrerequisiteMissing(f"Invalid choice {choice!r}; Oracle image not loaded.")


def _load_oracle_image(ctx: ExecutionContext, archive: pathlib.Path) -> None:
    LOG.info("Loading Oracle image from %s...", archive)
    cmd = ["docker", "load", "-i", str(archive)]
    result = ctx.runner.run(cmd, check=False)
    if not result.ok:
        LOG.error("Failed to load Oracle image.")
        if not ctx.confirm("Would you like to try loading the image with sudo?"):
            raise ExternalCommandFailed(cmd, result.returncode, result.output)
        LOG.info("Trying with sudo...")
        ctx.runner.run(["sudo", *cmd])
    log_success(LOG, "Loaded image %s successfully", _config(ctx).oracle.image_tag)


def _setup_oracle(ctx: ExecutionContext) -> None:
    settings = _config(ctx).oracle
    if ctx.runner.which("docker") is None:
        raise PrerequisiteMissing("Docker not found. Please ensure Docker is set up correctly.")
    source = _require_dir(ctx, "source_dir", "Source directory")
    compose_dirs = [source / rel for rel in settings.compose_dirs]

    running = _oracle_containers(ctx)
    if running and all(_compose_running(ctx, directory) for directory in compose_dirs):
        LOG.info("Oracle container is already running.")
        if not ctx.confirm("Do you want to recreate the Oracle containers?"):
            raise UserAbort("kept the running Oracle containers")
        LOG.info("Stopping existing Oracle containers...")
        ctx.runner.run(["docker", "stop", *running])
    elif running:
        LOG.warning("Only some Oracle services are running; starting the rest.")

    if _oracle_image_present(ctx):
        log_success(LOG, "Oracle image already exists. Skipping image load.")
    else:
        LOG.info("Oracle image not found. Need to load from tar file...")
        _load_oracle_image(ctx, locate_oracle_archive(ctx, source))

    for directory in compose_dirs:
        if not directory.is_dir():
            raise PrerequisiteMissing(f"Directory not found at {directory}")
    for directory in compose_dirs:
        LOG.info("Starting docker-compose in %s...", directory)
        ctx.runner.run([*settings.compose_command, "up", "-d"], cwd=directory)
        log_success(LOG, "Started Oracle containers in %s", directory)
    log_success(LOG, "Oracle database setup completed successfully.")


def _jdbc_driver_paths(ctx: ExecutionContext) -> Optional[Tuple[pathlib.Path, pathlib.Path]]:
    source = ctx.get("source_dir")
    payara = ctx.get("payara_dir")
    if source is None or payara is None:
        return None
    driver = pathlib.Path(source) / _config(ctx).paths.jdbc_driver
    return driver, pathlib.Path(payara) / "glassfish" / "lib" / driver.name


def _jdbc_driver_copied(ctx: ExecutionContext) -> bool:
    paths = _jdbc_driver_paths(ctx)
    if paths is None:
        return False
    driver, target = paths
    return driver.is_file() and target.is_file() and filecmp.cmp(driver, target, shallow=False)


def _copy_jdbc_driver(ctx: ExecutionContext) -> None:
    _require_dir(ctx, "source_dir", "Source directory")
    payara = _require_dir(ctx, "payara_dir", "Payara directory")
    driver, target = _jdbc_driver_paths(ctx)  # type: ignore[misc]
    if not driver.is_file():
        raise PrerequisiteMissing(f"{driver.name} not found in {driver}")

    LOG.info("Copying %s into Payara glassfish/lib...", driver.name)
    if not ctx.dry_run:
        (payara / "glassfish" / "lib").mkdir(parents=True, exist_ok=True)
    try:
        _writer(ctx).copy_file(driver, target)
    except PermissionError:
        LOG.warning("Permission denied writing %s; retrying with sudo", target)
        ctx.runner.run(["sudo", "cp", str(driver), str(target)])
    log_success(LOG, "Copied: %s -> %s", driver, target)


def _domain_dir(payara: pathlib.Path, name: str) -> pathlib.Path:
    return payara / "glassfish" / "domains" / name


def _domain_marker(payara: pathlib.Path, name: str) -> pathlib.Path:
    return _domain_dir(payara, name) / "config" / DOMAIN_MARKER


def _domain_configured(payara: pathlib.Path, name: str) -> bool:
    return _domain_marker(payara, name).is_file()


def _payara_satisfied(ctx: ExecutionContext) -> bool:
    if ctx.get("recreate"):
        return False
    payara = ctx.get("payara_dir")
    if payara is None:
        return False
    return all(_domain_configured(pathlib.Path(payara), domain.name) for domain in _config(ctx).domains)


def _java11_home(ctx: ExecutionContext) -> pathlib.Path:
    homes = ctx.get("java_homes") or {}
    if "java11" in homes:
        return pathlib.Path(homes["java11"])
    return _candidate_dir(ctx, "java", _java_versions(ctx)["java11"])


def _create_domain(
    ctx: ExecutionContext, payara: pathlib.Path, asadmin: str, domain: DomainSpec, java_home: pathlib.Path
) -> None:
    """Create ``domain`` and run its admin commands against a temporarily started server.

    A domain whose configuration fails is deleted again, and the marker file
    is only written once every command has succeeded.
    """

    LOG.info("Creating and configuring %s domain...", domain.name)
    ctx.runner.run([asadmin, "create-domain", "--nopassword", "--portbase", str(domain.portbase), domain.name])
    log_success(LOG, "%s domain created successfully", domain.name)
    try:
        ctx.runner.run([asadmin, "start-domain", domain.name])
        try:
            for command in domain.commands:
                args = [arg.replace("{java_home}", str(java_home)) for arg in command]
                ctx.runner.run([asadmin, "--port", str(domain.admin_port), *args])
        finally:
            ctx.runner.run([asadmin, "stop-domain", domain.name], check=False)
    except ExternalCommandFailed:
        LOG.warning("Configuring '%s' failed; deleting the partially configured domain", domain.name)
        ctx.runner.run([asadmin, "delete-domain", domain.name], check=False)
        raise
    _writer(ctx).write_file(_domain_marker(payara, domain.name), f"java_home={java_home}\n")
    log_success(LOG, "%s domain configured successfully", domain.name)


def _setup_payara(ctx: ExecutionContext) -> None:
    payara = _require_dir(ctx, "payara_dir", "Payara directory")
    asadmin_path = payara / "bin" / "asadmin"
    if not asadmin_path.is_file():
        raise PrerequisiteMissing(f"asadmin not found at {asadmin_path}")
    if not ctx.dry_run:
        asadmin_path.chmod(asadmin_path.stat().st_mode | 0o111)
    asadmin = str(asadmin_path)
    java_home = _java11_home(ctx)

    to_create: List[DomainSpec] = []
    for domain in _config(ctx).domains:
        if not _domain_dir(payara, domain.name).is_dir():
            to_create.append(domain)
            continue
        if _domain_configured(payara, domain.name):
            if not ctx.get("recreate"):
                LOG.info("Domain '%s' is already configured.", domain.name)
                continue
            LOG.warning("Domain '%s' already exists.", domain.name)
        else:
            LOG.warning("Domain '%s' exists but its configuration never completed.", domain.name)
        if ctx.confirm(f"Do you want to recreate the '{domain.name}' domain?"):
            LOG.info("Deleting existing '%s' domain...", domain.name)
            ctx.runner.run([asadmin, "delete-domain", domain.name])
            to_create.append(domain)
        else:
            LOG.info("Skipping '%s' domain creation.", domain.name)

    for domain in to_create:
        _create_domain(ctx, payara, asadmin, domain, java_home)
    log_success(LOG, "Payara domains setup completed successfully!")


def cleanup_targets(ctx: ExecutionContext, now: Optional[float] = None) -> List[pathlib.Path]:
    cutoff = (now if now is not None else time.time()) - LOG_RETENTION_DAYS * 86400
    targets = [
        path for pattern in ("*.tmp", "*.bak") for path in ctx.cwd.rglob(pattern) if path.is_file()
    ]
    targets.extend(
        path for path in ctx.cwd.rglob("setup_*.log") if path.is_file() and path.stat().st_mtime < cutoff
    )
    return sorted(targets)


def _cleanup(ctx: ExecutionContext) -> None:
    LOG.info("Cleaning up temporary files...")
    for path in cleanup_targets(ctx):
        if ctx.dry_run:
            LOG.info("[dry-run] Would delete %s", path)
            continue
        path.unlink()
        LOG.debug("Deleted %s", path)
    log_success(LOG, "Cleanup completed.")


CONTINUE = FailurePolicy.CONTINUE_WITH_WARNING


def build_catalog() -> Sequencer:
    """Register the card-app-server provisioning steps in execution order."""

    return Sequencer(
        [
            Step(
                name="source-dir",
                description="Locate the card-app-server source directory",
                is_satisfied=_directory_is_known("source_dir"),
                apply=_ask_for_directory("source_dir", "source directory of card-app-server"),
            ),
            Step(
                name="payara-dir",
                description="Locate the Payara5 installation",
                is_satisfied=_directory_is_known("payara_dir"),
                apply=_ask_for_directory(
                    "payara_dir", "Payara5 directory", "/opt/payara5 or ~/work/payara5"
                ),
            ),
            Step(
                name="dependencies",
                description="Install command-line dependencies (curl, zip, unzip, tar)",
                is_satisfied=_dependencies_satisfied,
                apply=_install_dependencies,
            ),
            Step(
                name="docker",
                description="Setup Docker",
                is_satisfied=_docker_running,
                apply=_setup_docker,
                depends_on=("dependencies",),
                on_failure=CONTINUE,
            ),
            Step(
                name="java",
                description="Install SDKMAN! with Java 8 and Java 11",
                is_satisfied=_java_satisfied,
                apply=_install_java,
                depends_on=("dependencies",),
            ),
            Step(
                name="java-switcher",
                description="Install the java8/java11 shell switcher",
                is_satisfied=_java_switcher_satisfied,
                apply=_setup_java_switcher,
                depends_on=("java",),
                on_failure=CONTINUE,
            ),
            Step(
                name="maven",
                description="Install and configure Maven",
                is_satisfied=_maven_satisfied,
                apply=_setup_maven,
                depends_on=("java",),
                on_failure=CONTINUE,
            ),
            Step(
                name="patch",
                description="Apply the local setup patch",
                is_satisfied=_patch_applied,
                apply=_apply_patch,
                depends_on=("source-dir",),
                on_failure=CONTINUE,
            ),
            Step(
                name="oracle",
                description="Setup Oracle database containers",
                is_satisfied=_oracle_satisfied,
                apply=_setup_oracle,
                depends_on=("docker", "source-dir"),
                on_failure=CONTINUE,
            ),
            Step(
                name="copy-files",
                description="Copy the JDBC driver into Payara",
                is_satisfied=_jdbc_driver_copied,
                apply=_copy_jdbc_driver,
                depends_on=("source-dir", "payara-dir"),
                on_failure=CONTINUE,
            ),
            Step(
                name="payara",
                description="Setup Payara domains",
                is_satisfied=_payara_satisfied,
                apply=_setup_payara,
                depends_on=("java", "copy-files"),
                on_failure=CONTINUE,
            ),
            Step(
                name="cleanup",
                description="Remove temporary files and old logs",
                is_satisfied=lambda ctx: not cleanup_targets(ctx),
                apply=_cleanup,
                on_failure=CONTINUE,
            ),
        ]
    )


def show_banner() -> None:
    print("======================================================")
    print(f"  Card App Server Environment Setup Tool v{TOOL_VERSION}")
    print("  Supports: macOS, Linux and Windows (Git Bash/MSYS2)")
    print("======================================================")
    print()


def _java_version(ctx: ExecutionContext) -> Optional[str]:
    if not ctx.runner.which("java"):
        return None
    result = ctx.runner.probe(["java", "-version"])
    match = re.search(r'version "([^"]+)"', result.output)
    if match:
        return match.group(1)
    lines = result.output.splitlines()
    return lines[0] if lines else "unknown"


def report_prerequisites(ctx: ExecutionContext) -> None:
    LOG.info("Checking basic prerequisites...")
    try:
        free = shutil.disk_usage(ctx.cwd).free
    except OSError as exc:
        LOG.warning("Could not determine free disk space: %s", exc)
    else:
        LOG.info("Available disk space: %.1f GiB", free / 1024 ** 3)

    if ctx.runner.which("docker"):
        log_success(LOG, "Docker is installed: %s", ctx.runner.probe(["docker", "--version"]).stdout.strip())
    else:
        LOG.warning("Docker is not installed. Will be set up during the process.")

    java = _java_version(ctx)
    if java:
        log_success(LOG, "Java is installed: %s", java)
    else:
        LOG.warning("Java is not installed. Will be set up during the process.")


def show_completion_message(ctx: ExecutionContext, report: RunReport, log_file: Optional[pathlib.Path]) -> None:
    print()
    print("======================================================")
    print(f"  Setup finished: {report.status.value}")
    print("======================================================")
    for line in report.summary_lines():
        print(line)
    print()
    print("Summary of installed components:")
    if ctx.runner.which("docker"):
        print(f"  Docker: {ctx.runner.probe(['docker', '--version']).stdout.strip()}")
    java = _java_version(ctx)
    if java:
        print(f"  Java: {java}")
    if ctx.runner.which("mvn"):
        mvn = ctx.runner.probe(["mvn", "--version"]).stdout.splitlines()
        print(f"  Maven: {mvn[0] if mvn else 'installed'}")
    payara = ctx.get("payara_dir")
    if payara is not None and pathlib.Path(payara).is_dir():
        existing = [
            domain.name
            for domain in _config(ctx).domains
            if _domain_configured(pathlib.Path(payara), domain.name)
        ]
        if existing:
            print(f"  Payara domains: {', '.join(existing)}")
    if ctx.runner.which("docker") and _oracle_containers(ctx):
        print("  Oracle database: Running")

    failed = report.by_outcome(StepOutcome.FAILED)
    print()
    print("Next steps:")
    print(f"1. Restart your terminal or run: source {_shell_rc(ctx)}")
    print("2. Use 'java8' or 'java11' to switch Java versions.")
    if failed:
        print(f"3. Fix the failed steps and re-run them: {' '.join('--step ' + name for name in failed)}")
    else:
        print("3. Start developing with your configured environment!")
    if log_file is not None:
        print()
        print(f"For any issues, please check the log file: {log_file}")
    print("======================================================")


def show_menu(sequencer: Sequencer, reader: Prompter = read_line) -> Optional[object]:
    """Interactive numbered menu.  Returns a selection or ``None`` to exit."""

    entries: List[Tuple[str, object]] = [("Setup complete environment (all steps)", ALL)]
    entries.extend((step.description or step.name, [step.name]) for step in sequencer.steps)
    exit_choice = len(entries) + 1
    while True:
        print("Please select an option:")
        for number, (label, _) in enumerate(entries, start=1):
            print(f"{number}) {label}")
        print(f"{exit_choice}) Exit")
        raw = reader(f"Enter your choice [1-{exit_choice}]:").strip()
        if not raw:
            return None
        if raw.isdigit():
            choice = int(raw)
            if choice == exit_choice:
                return None
            if 1 <= choice <= len(entries):
                return entries[choice - 1][1]
        print("Invalid option. Please try again.")


def print_catalog(sequencer: Sequencer) -> None:
    for step in sequencer.steps:
        deps = f" (after: {', '.join(step.depends_on)})" if step.depends_on else ""
        print(f"{step.name:<14} {step.description}{deps}")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devenv-setup",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to a TOML configuration file (default: devenv_setup.toml beside this tool).",
    )
    parser.add_argument(
        "--source-dir",
        type=pathlib.Path,
        help="card-app-server source directory (auto-detected or prompted for when omitted).",
    )
    parser.add_argument(
        "--payara-dir",
        type=pathlib.Path,
        help="Payara5 installation directory (auto-detected or prompted for when omitted).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only log the commands and file changes that would be made.",
    )
    parser.add_argument(
        "--recreate",
        action="store_true",
        help="Offer to recreate existing Oracle containers and Payara domains.",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity (debug output).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Only show warnings and errors on the console.",
    )
    parser.add_argument(
        "--log-dir",
        type=pathlib.Path,
        default=pathlib.Path("."),
        help="Directory for the timestamped setup_*.log file (default: current directory).",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Log to the console only.",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Logging output format (default: text).",
    )
    parser.add_argument(
        "--report",
        type=pathlib.Path,
        help="Write the run report as JSON to this path.",
    )

    subparsers = parser.add_subparsers(dest="command")
    run_parser = subparsers.add_parser("run", help="Run provisioning steps.")
    selection = run_parser.add_mutually_exclusive_group()
    selection.add_argument("--all", action="store_true", help="Run all setup steps.")
    selection.add_argument(
        "--step",
        action="append",
        metavar="NAME",
        help="Run the named step and the steps it depends on (repeatable).",
    )
    subparsers.add_parser("list", help="List the available steps.")
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


class _JSONLogFormatter(logging.Formatter):
    """Format log records as JSON objects."""

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - brief output
        payload = {
            "timestamp": _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload)


class _ConsoleFormatter(logging.Formatter):
    """``[LEVEL] message`` with the level tag coloured on terminals."""

    COLORS = {
        "DEBUG": "\033[0;36m",
        "INFO": "\033[0;34m",
        "SUCCESS": "\033[0;32m",
        "WARNING": "\033[0;33m",
        "ERROR": "\033[0;31m",
        "CRITICAL": "\033[0;31m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = False) -> None:
        super().__init__("[%(levelname)s] %(message)s")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelname)
        if not self.use_color or color is None:
            return message
        tag = f"[{record.levelname}]"
        return f"{color}{tag}{self.RESET}{message[len(tag):]}"


def default_log_file(log_dir: pathlib.Path) -> pathlib.Path:
    return log_dir / f"setup_{_timestamp()}.log"


def configure_logging(verbosity: int, log_file: Optional[pathlib.Path], log_format: str, quiet: bool = False) -> None:
    level = logging.INFO
    if quiet:
        level = logging.WARNING
    elif verbosity >= 1:
        level = logging.DEBUG
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if log_file is not None else level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    if log_format == "json":
        console_handler.setFormatter(_JSONLogFormatter())
    else:
        stream = console_handler.stream
        console_handler.setFormatter(_ConsoleFormatter(use_color=hasattr(stream, "isatty") and stream.isatty()))
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(min(level, logging.INFO))
        if log_format == "json":
            file_handler.setFormatter(_JSONLogFormatter())
        else:
            file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))
        root.addHandler(file_handler)


def build_context(args: argparse.Namespace, config: SetupConfig, platform: PlatformProfile) -> ExecutionContext:
    cwd = pathlib.Path.cwd()
    home = pathlib.Path.home()
    values: Dict[str, Any] = {"shell": os.environ.get("SHELL", ""), "recreate": args.recreate}
    if args.source_dir is not None:
        values["source_dir"] = normalize_directory(str(args.source_dir), cwd, home)
    if args.payara_dir is not None:
        values["payara_dir"] = normalize_directory(str(args.payara_dir), cwd, home)
    return ExecutionContext(
        platform,
        runner=CommandRunner(dry_run=args.dry_run),
        confirm=confirm_from_input,
        prompt=read_line,
        config=config,
        cwd=cwd,
        home=home,
        values=values,
    )


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    log_file = None if args.no_log_file else default_log_file(args.log_dir)
    configure_logging(args.verbose, log_file, args.log_format, quiet=args.quiet)
    if log_file is not None:
        LOG.info("Logging to both console and %s.", log_file)

    sequencer = build_catalog()
    if args.command == "list":
        print_catalog(sequencer)
        return 0

    show_banner()
    try:
        platform = detect_platform()
    except UnsupportedPlatformError as exc:
        LOG.error("%s", exc)
        return 1

    config = load_setup_config(args.config)
    ctx = build_context(args, config, platform)
    report_prerequisites(ctx)
    auto_detect_config(ctx)

    if args.command == "run" and args.all:
        selection: Any = ALL
    elif args.command == "run" and args.step:
        selection = args.step
    else:
        selection = show_menu(sequencer)
        if selection is None:
            LOG.info("Exiting without changes.")
            return 0

    try:
        report = sequencer.run(ctx, selection)
    except UnknownStepError as exc:
        LOG.error("%s. Available steps: %s", exc, ", ".join(sequencer.names))
        return 2
    except SequencerError as exc:
        LOG.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        LOG.warning("Interrupted. Re-run the tool to resume; completed steps will be skipped.")
        return 130

    show_completion_message(ctx, report, log_file)
    if args.report:
        args.report.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
        LOG.info("Wrote run report to %s", args.report)

    if report.exit_code == 0:
        log_success(LOG, "Setup finished with status %s", report.status.value)
    else:
        LOG.error("Setup aborted. Fix the failure above and re-run; completed steps will be skipped.")
    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
