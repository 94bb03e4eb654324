#!/usr/bin/env python3
"""Provision a Sway (Wayland) session on FreeBSD hosts.

The tool converges a machine from "no Wayland session" to "Sway is offered by
the display manager".  It installs the compositor packages, enables the seat
and message-bus daemons, puts the desktop user into the seat group, wires the
session into LightDM and drops the shell environment and compositor
configuration into place.

Every step is idempotent: a second run against an already provisioned host
changes nothing.  Packages installed by a run are removed again when a later
step fails fatally; configuration files are backed up before they are touched.

A dry run is the default and only reports what would change.  Use ``--apply``
(as root) to modify the host.
"""
from __future__ import annotations

import argparse
import contextlib
import dataclasses
import datetime as _dt
import enum
import fcntl
import grp
import json
import logging
import os
import pathlib
import pwd
import re
import shutil
import signal
import socket
import subprocess
import sys
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[no-redef]

import sway_templates as templates
from sway_system import (
    AccountManager,
    BackupManager,
    BackupRecord,
    ConcurrentRunDetected,
    ConfigurationError,
    GroupMembership,
    InvalidUserInput,
    MutationResult,
    NetworkUnavailable,
    Outcome,
    PackageManager,
    PackageRole,
    PackageSpec,
    PermissionDenied,
    PkgManager,
    PrerequisiteMissing,
    ProvisioningError,
    PwAccountManager,
    RcServiceManager,
    Reconciler,
    RunInterrupted,
    ServiceManager,
    ServiceOperationFailed,
    ServiceSpec,
    StateProbe,
    TimedOut,
    TransactionLedger,
    run_command,
)

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("sway_setup.toml")

RESOLUTIONS = ("1366x768", "1920x1080", "2560x1440", "3840x2160")
DEFAULT_RESOLUTION = RESOLUTIONS[0]

FINALIZE_ACTIONS = ("restart-service", "reboot", "none")

REQUIRED_TOOLS = ("pkg", "sysrc", "service", "pw")

DEFAULT_ESSENTIAL_PACKAGES = (
    "wayland",
    "seatd",
    "sway",
    "xwayland",
    "dbus",
    "lightdm",
    "lightdm-gtk-greeter",
    "foot",
)
DEFAULT_OPTIONAL_PACKAGES = (
    "swaylock",
    "swayidle",
    "waybar",
    "wofi",
    "mako",
    "grim",
    "slurp",
    "wl-clipboard",
)
DEFAULT_SERVICES = (
    ServiceSpec("dbus"),
    ServiceSpec("seatd"),
    ServiceSpec("lightdm", enable=True, start=False),
)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _table(data: Mapping[str, object], key: str) -> Mapping[str, object]:
    section = data.get(key, {})
    if not isinstance(section, Mapping):
        raise ConfigurationError(f"[{key}] section must be a table in the configuration")
    return section


def _string_tuple(value: object, key: str) -> Tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ConfigurationError(f"{key} must be a list of strings")
    items = tuple(value)
    if not all(isinstance(item, str) for item in items):
        raise ConfigurationError(f"{key} must be a list of strings")
    return items


def _string(value: object, key: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"{key} must be a string")
    return value


def _boolean(value: object, key: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigurationError(f"{key} must be true or false")
    return value


def _number(value: object, key: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError(f"{key} must be a positive number")
    return float(value)


def _mode(value: object, key: str) -> int:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and re.fullmatch(r"0?o?[0-7]{3,4}", value):
        return int(value.replace("o", ""), 8)
    raise ConfigurationError(f"{key} must be an octal mode such as \"0660\"")


@dataclasses.dataclass(frozen=True)
class PathSettings:
    """Locations of every file the provisioner reads or writes."""

    sessions_dir: pathlib.Path = pathlib.Path("/usr/local/share/xsessions")
    lightdm_conf: pathlib.Path = pathlib.Path("/usr/local/etc/lightdm/lightdm.conf")
    xsession_script: pathlib.Path = pathlib.Path("/usr/local/etc/lightdm/Xsession")
    system_profile: pathlib.Path = pathlib.Path("/etc/profile")
    devd_rules: pathlib.Path = pathlib.Path("/usr/local/etc/devd/sway-input.conf")
    toggle_script: pathlib.Path = pathlib.Path("/usr/local/bin/sway-toggle-layout")
    sway_binary: pathlib.Path = pathlib.Path("/usr/local/bin/sway")
    sway_sample_config: pathlib.Path = pathlib.Path("/usr/local/etc/sway/config")
    seatd_socket: pathlib.Path = pathlib.Path("/var/run/seatd.sock")
    xdg_runtime_base: pathlib.Path = pathlib.Path("/var/run/user")
    lock_file: pathlib.Path = pathlib.Path("/var/run/sway-setup.lock")
    log_file: pathlib.Path = pathlib.Path("/var/log/sway-setup.log")

    @classmethod
    def from_mapping(cls, section: Mapping[str, object]) -> "PathSettings":
        known = {field.name for field in dataclasses.fields(cls)}
        unknown = sorted(set(section) - known)
        if unknown:
            raise ConfigurationError(f"Unknown path setting(s): {', '.join(unknown)}")
        return cls(**{key: pathlib.Path(_string(value, f"paths.{key}")) for key, value in section.items()})


@dataclasses.dataclass(frozen=True)
class SessionSettings:
    name: str = "sway"
    display_manager: str = "lightdm"
    resolution: str = DEFAULT_RESOLUTION
    keyboard_layouts: Tuple[str, ...] = ("us",)


@dataclasses.dataclass(frozen=True)
class SocketSettings:
    """Desired ownership of the seat daemon socket."""

    owner: str = "root"
    group: str = "video"
    mode: int = 0o660


@dataclasses.dataclass(frozen=True)
class TimeoutSettings:
    command: float = 120
    package_update: float = 600
    package_install: float = 1800
    network_check: float = 10


@dataclasses.dataclass(frozen=True)
class Settings:
    """Provisioning manifest loaded from TOML, with built-in defaults."""

    essential_packages: Tuple[str, ...] = DEFAULT_ESSENTIAL_PACKAGES
    optional_packages: Tuple[str, ...] = DEFAULT_OPTIONAL_PACKAGES
    include_optional: bool = True
    services: Tuple[ServiceSpec, ...] = DEFAULT_SERVICES
    groups: Tuple[str, ...] = ("video",)
    member_groups: Tuple[str, ...] = ("video",)
    paths: PathSettings = dataclasses.field(default_factory=PathSettings)
    session: SessionSettings = dataclasses.field(default_factory=SessionSettings)
    socket: SocketSettings = dataclasses.field(default_factory=SocketSettings)
    timeouts: TimeoutSettings = dataclasses.field(default_factory=TimeoutSettings)
    finalize: str = "restart-service"
    start_services: bool = True
    network_check: bool = True
    network_host: str = "pkg.FreeBSD.org"
    network_port: int = 443

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "Settings":
        defaults = cls()

        packages = _table(data, "packages")
        essential = _string_tuple(packages.get("essential", defaults.essential_packages), "packages.essential")
        optional = _string_tuple(packages.get("optional", defaults.optional_packages), "packages.optional")
        include_optional = _boolean(
            packages.get("include_optional", defaults.include_optional), "packages.include_optional"
        )

        services_section = data.get("services")
        if services_section is None:
            services = defaults.services
        else:
            if isinstance(services_section, (str, bytes, Mapping)) or not isinstance(services_section, Iterable):
                raise ConfigurationError("[[services]] section must be a list of tables")
            parsed: List[ServiceSpec] = []
            for entry in services_section:
                if not isinstance(entry, Mapping):
                    raise ConfigurationError("Each service entry must be a table")
                name = _string(entry.get("name"), "services.name")
                parsed.append(
                    ServiceSpec(
                        name=name,
                        enable=_boolean(entry.get("enable", True), f"services.{name}.enable"),
                        start=_boolean(entry.get("start", True), f"services.{name}.start"),
                    )
                )
            services = tuple(parsed)

        groups = _table(data, "groups")
        create = _string_tuple(groups.get("create", defaults.groups), "groups.create")
        join = _string_tuple(groups.get("join", defaults.member_groups), "groups.join")

        session_section = _table(data, "session")
        resolution = _string(session_section.get("resolution", defaults.session.resolution), "session.resolution")
        if resolution not in RESOLUTIONS:
            raise ConfigurationError(f"session.resolution must be one of {', '.join(RESOLUTIONS)}")
        session = SessionSettings(
            name=_string(session_section.get("name", defaults.session.name), "session.name"),
            display_manager=_string(
                session_section.get("display_manager", defaults.session.display_manager), "session.display_manager"
            ),
            resolution=resolution,
            keyboard_layouts=_string_tuple(
                session_section.get("keyboard_layouts", defaults.session.keyboard_layouts), "session.keyboard_layouts"
            ),
        )

        socket_section = _table(data, "socket")
        socket_settings = SocketSettings(
            owner=_string(socket_section.get("owner", defaults.socket.owner), "socket.owner"),
            group=_string(socket_section.get("group", defaults.socket.group), "socket.group"),
            mode=_mode(socket_section.get("mode", defaults.socket.mode), "socket.mode"),
        )

        timeout_section = _table(data, "timeouts")
        timeouts = TimeoutSettings(
            **{
                field.name: _number(timeout_section.get(field.name, getattr(defaults.timeouts, field.name)), f"timeouts.{field.name}")
                for field in dataclasses.fields(TimeoutSettings)
            }
        )

        run = _table(data, "run")
        finalize = _string(run.get("finalize", defaults.finalize), "run.finalize")
        if finalize not in FINALIZE_ACTIONS:
            raise ConfigurationError(f"run.finalize must be one of {', '.join(FINALIZE_ACTIONS)}")
        port = run.get("network_port", defaults.network_port)
        if not isinstance(port, int) or isinstance(port, bool):
            raise ConfigurationError("run.network_port must be an integer")

        return cls(
            essential_packages=essential,
            optional_packages=optional,
            include_optional=include_optional,
            services=services,
            groups=create,
            member_groups=join,
            paths=PathSettings.from_mapping(_table(data, "paths")),
            session=session,
            socket=socket_settings,
            timeouts=timeouts,
            finalize=finalize,
            start_services=_boolean(run.get("start_services", defaults.start_services), "run.start_services"),
            network_check=_boolean(run.get("network_check", defaults.network_check), "run.network_check"),
            network_host=_string(run.get("network_host", defaults.network_host), "run.network_host"),
            network_port=port,
        )


def apply_variant(data: Mapping[str, object], variant: str) -> Dict[str, object]:
    """Overlay ``[variants.<variant>]`` onto the manifest, one section at a time."""

    variants = _table(data, "variants")
    overlay = variants.get(variant)
    if not isinstance(overlay, Mapping):
        available = ", ".join(sorted(variants)) or "none"
        raise ConfigurationError(f"Unknown variant {variant!r} (available: {available})")
    merged: Dict[str, object] = {key: value for key, value in data.items() if key != "variants"}
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def load_settings(path: Optional[pathlib.Path] = None, variant: Optional[str] = None) -> Settings:
    """Load :class:`Settings` from TOML; without a manifest use the defaults."""

    config_path = path or DEFAULT_CONFIG_PATH
    if path is None and not config_path.exists():
        LOG.debug("No manifest at %s; using built-in defaults", config_path)
        data: Mapping[str, object] = {}
    else:
        try:
            with config_path.open("rb") as fh:
                data = tomllib.load(fh)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Configuration file not found: {config_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {exc}") from exc
    if variant:
        data = apply_variant(data, variant)
        LOG.info("Using variant %s", variant)
    return Settings.from_mapping(data)


# ---------------------------------------------------------------------------
# Run configuration
# ---------------------------------------------------------------------------


class ShellKind(enum.Enum):
    BASH = "bash"
    ZSH = "zsh"
    FISH = "fish"
    POSIX = "posix"

    @classmethod
    def from_shell(cls, shell: str) -> "ShellKind":
        name = pathlib.PurePosixPath(shell).name
        for kind in (cls.BASH, cls.ZSH, cls.FISH):
            if name == kind.value:
                return kind
        return cls.POSIX


_PROFILE_FILES = {
    ShellKind.BASH: ".bash_profile",
    ShellKind.ZSH: ".zprofile",
    ShellKind.FISH: ".config/fish/config.fish",
    ShellKind.POSIX: ".profile",
}


@dataclasses.dataclass(frozen=True)
class ProfileTarget:
    """The login-shell dotfile that receives the Wayland environment."""

    user: str
    home: pathlib.Path
    shell_kind: ShellKind
    profile_path: pathlib.Path

    @classmethod
    def resolve(cls, user: str, home: pathlib.Path, shell: str) -> "ProfileTarget":
        kind = ShellKind.from_shell(shell)
        home = pathlib.Path(home)
        return cls(user=user, home=home, shell_kind=kind, profile_path=home / _PROFILE_FILES[kind])

    @classmethod
    def for_user(cls, user: str) -> "ProfileTarget":
        try:
            entry = pwd.getpwnam(user)
        except KeyError as exc:
            raise ConfigurationError(f"User {user!r} does not exist") from exc
        return cls.resolve(user, pathlib.Path(entry.pw_dir), entry.pw_shell)


@dataclasses.dataclass(frozen=True)
class ConfigurationInput:
    """Answers collected from the CLI or the interactive prompts."""

    user: str
    resolution: str = DEFAULT_RESOLUTION
    include_optional: bool = True


@dataclasses.dataclass(frozen=True)
class RunConfig:
    """Everything one run needs, fixed before the first probe."""

    settings: Settings
    answers: ConfigurationInput
    profile: ProfileTarget
    primary_group: str
    dry_run: bool = True

    @classmethod
    def build(cls, settings: Settings, answers: ConfigurationInput, dry_run: bool = True) -> "RunConfig":
        profile = ProfileTarget.for_user(answers.user)
        gid = pwd.getpwnam(answers.user).pw_gid
        try:
            primary_group = grp.getgrgid(gid).gr_name
        except KeyError:
            primary_group = str(gid)
        return cls(settings=settings, answers=answers, profile=profile, primary_group=primary_group, dry_run=dry_run)

    @property
    def user(self) -> str:
        return self.answers.user

    @property
    def packages(self) -> Tuple[PackageSpec, ...]:
        specs = [PackageSpec(name, PackageRole.ESSENTIAL) for name in self.settings.essential_packages]
        if self.answers.include_optional:
            specs.extend(PackageSpec(name, PackageRole.OPTIONAL) for name in self.settings.optional_packages)
        return tuple(specs)

    @property
    def memberships(self) -> Tuple[GroupMembership, ...]:
        return tuple(GroupMembership(group=group, user=self.user) for group in self.settings.member_groups)

    @property
    def sway_config_path(self) -> pathlib.Path:
        return self.profile.home / ".config" / "sway" / "config"

    def to_dict(self) -> Dict[str, object]:
        return {
            "user": self.user,
            "profile": str(self.profile.profile_path),
            "shell": self.profile.shell_kind.value,
            "resolution": self.answers.resolution,
            "packages": [{"name": spec.name, "role": spec.role.value} for spec in self.packages],
            "services": [dataclasses.asdict(spec) for spec in self.settings.services],
            "groups": list(self.settings.groups),
            "member_groups": list(self.settings.member_groups),
            "finalize": self.settings.finalize,
            "start_services": self.settings.start_services,
            "dry_run": self.dry_run,
        }


# ---------------------------------------------------------------------------
# Prompts and resolution detection
# ---------------------------------------------------------------------------

InputFunc = Callable[[str], str]


def parse_resolution_choice(raw: str) -> str:
    value = raw.strip()
    if value.isdigit() and 1 <= int(value) <= len(RESOLUTIONS):
        return RESOLUTIONS[int(value) - 1]
    if value in RESOLUTIONS:
        return value
    raise InvalidUserInput(f"{raw!r} is not a valid resolution choice")


def parse_yes_no(raw: str, default: bool) -> bool:
    value = raw.strip().lower()
    if not value:
        return default
    if value in {"y", "yes"}:
        return True
    if value in {"n", "no"}:
        return False
    raise InvalidUserInput(f"{raw!r} is not a yes/no answer")


def prompt_resolution(input_func: InputFunc = input) -> str:
    """Offer the resolution menu; anything invalid selects the default."""

    menu = "".join(f"  {index}) {value}\n" for index, value in enumerate(RESOLUTIONS, start=1))
    try:
        raw = input_func(f"Select a screen resolution:\n{menu}Choice [1]: ")
    except EOFError:
        raw = ""
    if not raw.strip():
        return DEFAULT_RESOLUTION
    try:
        return parse_resolution_choice(raw)
    except InvalidUserInput:
        LOG.warning("Invalid resolution choice %r; falling back to %s", raw, DEFAULT_RESOLUTION)
        return DEFAULT_RESOLUTION


def prompt_yes_no(question: str, default: bool, input_func: InputFunc = input) -> bool:
    suffix = "[Y/n]" if default else "[y/N]"
    while True:
        try:
            raw = input_func(f"{question} {suffix}: ")
        except EOFError:
            return default
        try:
            return parse_yes_no(raw, default)
        except InvalidUserInput as exc:
            LOG.warning("%s; please answer y or n", exc)


def _user_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def prompt_username(
    input_func: InputFunc = input,
    default: Optional[str] = None,
    user_exists: Callable[[str], bool] = _user_exists,
) -> str:
    hint = f" [{default}]" if default else ""
    while True:
        try:
            raw = input_func(f"User to configure for Sway{hint}: ").strip()
        except EOFError as exc:
            if default:
                return default
            raise ConfigurationError("No user given") from exc
        name = raw or default or ""
        if name and user_exists(name):
            return name
        LOG.warning("User %r does not exist; try again", name)


def extract_resolution(outputs_json: str) -> Optional[str]:
    """Return ``WIDTHxHEIGHT`` of the first active output in ``swaymsg`` JSON."""

    try:
        outputs = json.loads(outputs_json)
    except ValueError:
        return None
    if not isinstance(outputs, list):
        return None
    for output in outputs:
        if not isinstance(output, Mapping) or not output.get("active"):
            continue
        mode = output.get("current_mode")
        if isinstance(mode, Mapping) and mode.get("width") and mode.get("height"):
            return f"{mode['width']}x{mode['height']}"
    return None


def detect_resolution(runner: Callable[..., object] = run_command) -> Optional[str]:
    try:
        result = runner(["swaymsg", "-t", "get_outputs", "-r"], check=False, timeout=10)
    except (PrerequisiteMissing, TimedOut) as exc:
        LOG.debug("Resolution detection unavailable: %s", exc)
        return None
    if getattr(result, "returncode", 1) != 0:
        return None
    return extract_resolution(getattr(result, "stdout", "") or "")


def resolve_configuration_input(
    args: argparse.Namespace,
    settings: Settings,
    interactive: bool,
    input_func: InputFunc = input,
) -> ConfigurationInput:
    fallback_user = os.environ.get("SUDO_USER") or os.environ.get("DOAS_USER")
    if args.user:
        user = args.user
    elif interactive:
        user = prompt_username(input_func, default=fallback_user)
    elif fallback_user:
        user = fallback_user
    else:
        raise ConfigurationError("No target user; pass --user or run through sudo/doas")
    if not _user_exists(user):
        raise ConfigurationError(f"User {user!r} does not exist")

    if args.include_optional is not None:
        include_optional = args.include_optional
    elif interactive:
        include_optional = prompt_yes_no("Install optional packages?", settings.include_optional, input_func)
    else:
        include_optional = settings.include_optional

    if args.resolution == "auto":
        resolution = detect_resolution() or settings.session.resolution
        LOG.info("Using resolution %s", resolution)
    elif args.resolution:
        resolution = args.resolution
    elif interactive:
        resolution = prompt_resolution(input_func)
    else:
        resolution = settings.session.resolution

    return ConfigurationInput(user=user, resolution=resolution, include_optional=include_optional)


# ---------------------------------------------------------------------------
# Preflight checks, locking and signals
# ---------------------------------------------------------------------------


def check_root(config: Optional[RunConfig] = None) -> None:
    if os.geteuid() != 0:
        raise PermissionDenied("sway-setup requires root privileges to apply changes")


def check_prerequisites(config: RunConfig, which: Callable[[str], Optional[str]] = shutil.which) -> None:
    missing = [tool for tool in REQUIRED_TOOLS if not which(tool)]
    if missing:
        raise PrerequisiteMissing(f"Required tools are not available: {', '.join(missing)}")


def check_network(config: RunConfig, connect: Callable[..., socket.socket] = socket.create_connection) -> None:
    settings = config.settings
    if not settings.network_check:
        LOG.info("Network check disabled")
        return
    address = (settings.network_host, settings.network_port)
    try:
        connection = connect(address, timeout=settings.timeouts.network_check)
    except OSError as exc:
        raise NetworkUnavailable(f"Cannot reach {settings.network_host}:{settings.network_port}: {exc}") from exc
    connection.close()
    LOG.debug("Reached %s:%s", *address)


PreflightCheck = Callable[[RunConfig], None]


def default_preflight_checks(dry_run: bool) -> Tuple[PreflightCheck, ...]:
    if dry_run:
        return (check_prerequisites,)
    return (check_root, check_prerequisites, check_network)


@contextlib.contextmanager
def run_lock(path: pathlib.Path) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``path`` for the duration of a run."""

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as fh:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            raise ConcurrentRunDetected(f"Another sway-setup run is in progress (lock: {path})") from exc
        fh.seek(0)
        fh.truncate()
        fh.write(f"{os.getpid()}\n")
        fh.flush()
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


@contextlib.contextmanager
def interrupts_as_errors(signals: Sequence[int] = (signal.SIGTERM, signal.SIGHUP)) -> Iterator[None]:
    """Turn termination signals and Ctrl-C into :class:`RunInterrupted`."""

    def _handler(signum: int, _frame: object) -> None:
        raise RunInterrupted(signum)

    previous = {}
    for sig in signals:
        try:
            previous[sig] = signal.signal(sig, _handler)
        except (ValueError, AttributeError):  # pragma: no cover - not the main thread
            continue
    try:
        yield
    except KeyboardInterrupt as exc:
        raise RunInterrupted(signal.SIGINT) from exc
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


_FINALIZE_ERRORS = (subprocess.CalledProcessError, OSError, TimedOut, PrerequisiteMissing)


class RunState(enum.Enum):
    START = "start"
    VALIDATING = "validating"
    RECONCILING = "reconciling"
    FINALIZING = "finalizing"
    DONE = "done"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


@dataclasses.dataclass
class RunReport:
    state: RunState = RunState.START
    exit_code: int = 0
    results: List[MutationResult] = dataclasses.field(default_factory=list)
    backups: List[BackupRecord] = dataclasses.field(default_factory=list)
    rolled_back: Tuple[str, ...] = ()
    rollback_failures: Tuple[str, ...] = ()
    error: Optional[str] = None

    def count(self, outcome: Outcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "exit_code": self.exit_code,
            "error": self.error,
            "summary": {outcome.value: self.count(outcome) for outcome in Outcome},
            "results": [result.to_dict() for result in self.results],
            "backups": [
                {"original": str(record.original_path), "backup": str(record.backup_path)}
                for record in self.backups
            ],
            "rolled_back": list(self.rolled_back),
            "rollback_failures": list(self.rollback_failures),
        }

    def describe(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


class Orchestrator:
    """Drive the reconciliation phases in their fixed dependency order."""

    PHASES = ("groups", "packages", "services", "memberships", "config-files", "permissions")

    def __init__(
        self,
        config: RunConfig,
        packages: PackageManager,
        services: ServiceManager,
        accounts: AccountManager,
        *,
        checks: Optional[Sequence[PreflightCheck]] = None,
        clock: Optional[Callable[[], _dt.datetime]] = None,
    ) -> None:
        self.config = config
        self.ledger = TransactionLedger()
        self.backups = BackupManager(clock)
        self.probe = StateProbe(packages, services, accounts)
        self.reconciler = Reconciler(self.probe, self.ledger, self.backups, dry_run=config.dry_run)
        self.checks = default_preflight_checks(config.dry_run) if checks is None else tuple(checks)
        self.state = RunState.START

    @classmethod
    def for_system(cls, config: RunConfig) -> "Orchestrator":
        timeouts = config.settings.timeouts
        packages = PkgManager.for_system(
            command_timeout=timeouts.command,
            update_timeout=timeouts.package_update,
            install_timeout=timeouts.package_install,
        )
        return cls(
            config,
            packages,
            RcServiceManager(command_timeout=timeouts.command),
            PwAccountManager(command_timeout=timeouts.command),
        )

    def _transition(self, state: RunState) -> None:
        LOG.debug("State %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self) -> RunReport:
        report = RunReport()
        self._transition(RunState.VALIDATING)
        try:
            for check in self.checks:
                check(self.config)
        except ProvisioningError as exc:
            return self._finish(report, RunState.FAILED, exc)

        self._transition(RunState.RECONCILING)
        phase = self.PHASES[0]
        try:
            with interrupts_as_errors():
                for phase in self.PHASES:
                    LOG.info("== %s ==", phase)
                    getattr(self, "_phase_" + phase.replace("-", "_"))()
        except ProvisioningError as exc:
            return self._abort(report, exc)
        except Exception as exc:
            LOG.exception("Unexpected error in phase %s", phase)
            error = ProvisioningError(f"Unexpected error in phase {phase}: {exc}")
            return self._abort(report, error)

        self._transition(RunState.FINALIZING)
        try:
            with interrupts_as_errors():
                self.finalize()
        except ProvisioningError as exc:
            return self._finish(report, RunState.FAILED, exc)
        return self._finish(report, RunState.DONE)

    def _abort(self, report: RunReport, exc: ProvisioningError) -> RunReport:
        LOG.error("Reconciliation aborted: %s", exc)
        if not len(self.ledger):
            return self._finish(report, RunState.FAILED, exc)
        LOG.warning(
            "Rolling back %d package(s) installed by this run: %s",
            len(self.ledger),
            ", ".join(self.ledger.entries),
        )
        LOG.warning("Files, groups and service settings changed by this run are NOT reverted")
        rollback = self.ledger.rollback(self.reconciler.packages)
        report.rolled_back = rollback.removed
        report.rollback_failures = rollback.failed
        return self._finish(report, RunState.ROLLED_BACK, exc)

    def _finish(self, report: RunReport, state: RunState, exc: Optional[ProvisioningError] = None) -> RunReport:
        self._transition(state)
        report.state = state
        report.results = list(self.reconciler.results)
        report.backups = list(self.backups.records)
        if exc is not None:
            report.exit_code = exc.exit_code
            report.error = str(exc)
        return report

    # -- phases -----------------------------------------------------------

    def _phase_groups(self) -> None:
        for group in self.config.settings.groups:
            self.reconciler.ensure_group(group)

    def _phase_packages(self) -> None:
        specs = self.config.packages
        missing = [spec.name for spec in specs if not self.probe.package_installed(spec.name)]
        if missing and not self.config.dry_run:
            LOG.info("Refreshing package catalogue before installing %s", ", ".join(missing))
            try:
                self.reconciler.packages.update_catalog()
            except (subprocess.CalledProcessError, OSError) as exc:
                raise NetworkUnavailable(f"Package catalogue update failed: {exc}") from exc
        for spec in specs:
            self.reconciler.ensure_package(spec)

    def _phase_services(self) -> None:
        for spec in self.config.settings.services:
            if spec.enable:
                self.reconciler.ensure_service_enabled(spec.name)
            if not spec.start:
                continue
            if self.config.settings.start_services:
                self.reconciler.ensure_service_running(spec.name)
            else:
                LOG.info("Deferring start of %s until the next boot", spec.name)

    def _phase_memberships(self) -> None:
        for membership in self.config.memberships:
            self.reconciler.ensure_group_membership(membership.user, membership.group)

    def _phase_config_files(self) -> None:
        config = self.config
        paths = config.settings.paths
        session = config.settings.session
        user, group = config.user, config.primary_group
        r = self.reconciler

        r.ensure_desktop_entry(
            paths.sessions_dir / f"{session.name}.desktop",
            templates.render_desktop_entry(paths.sway_binary),
        )
        r.rewrite_config_field(paths.lightdm_conf, "session-wrapper", str(paths.xsession_script))
        r.rewrite_config_field(paths.lightdm_conf, "user-session", session.name)
        r.ensure_config_block(paths.xsession_script, templates.xsession_block(paths.xdg_runtime_base, session.name))
        r.ensure_config_block(paths.system_profile, templates.system_profile_block(paths.xdg_runtime_base))
        r.ensure_config_block(
            config.profile.profile_path,
            templates.environment_block(config.profile.shell_kind.value, paths.xdg_runtime_base),
            owner=user,
            group=group,
        )

        try:
            base_config = paths.sway_sample_config.read_text(encoding="utf-8")
        except (OSError, ValueError):
            base_config = templates.render_sway_base_config()
        r.ensure_file_created(config.sway_config_path, base_config, owner=user, group=group)
        r.ensure_config_block(
            config.sway_config_path,
            templates.sway_input_output_block(config.answers.resolution, session.keyboard_layouts, paths.toggle_script),
            owner=user,
            group=group,
        )
        r.ensure_file_content(paths.toggle_script, templates.render_toggle_script(), mode=0o755)

    def _phase_permissions(self) -> None:
        settings = self.config.settings
        self.reconciler.ensure_config_block(settings.paths.devd_rules, templates.devd_block(settings.socket.group))
        self.reconciler.ensure_file_owner_permissions(
            settings.paths.seatd_socket,
            owner=settings.socket.owner,
            group=settings.socket.group,
            mode=settings.socket.mode,
        )

    # -- finalize ---------------------------------------------------------

    def _needs_new_session(self) -> bool:
        kinds = {"group-membership", "file-permissions", "config-block"}
        return any(
            result.kind in kinds and result.outcome in (Outcome.CHANGED, Outcome.PLANNED)
            for result in self.reconciler.results
        )

    def finalize(self) -> None:
        action = self.config.settings.finalize
        manager = self.config.settings.session.display_manager
        services = self.reconciler.services
        if action == "reboot":
            if self.config.dry_run:
                LOG.info("[dry-run] Would reboot the system")
                return
            LOG.info("Rebooting to apply changes")
            try:
                services.reboot()
            except _FINALIZE_ERRORS as exc:
                raise ServiceOperationFailed("reboot", exc) from exc
            return

        if self._needs_new_session():
            LOG.warning("Group and environment changes take effect for %s at the next login", self.config.user)
        if action == "none":
            LOG.info("Finalize action 'none': log out and back in (or reboot) to start Sway")
            return
        if self.config.dry_run:
            LOG.info("[dry-run] Would restart service %s", manager)
            return
        LOG.info("Restarting %s to apply changes", manager)
        try:
            services.restart(manager)
        except _FINALIZE_ERRORS as exc:
            raise ServiceOperationFailed(manager, exc) from exc


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument(
        "--apply",
        action="store_true",
        help="Modify the host (requires root). Without it only a dry run is performed.",
    )
    parser.add_argument("--user", help="Desktop user to configure (default: prompt, or $SUDO_USER).")
    parser.add_argument(
        "--resolution",
        choices=RESOLUTIONS + ("auto",),
        help="Output resolution for the compositor; 'auto' asks the running compositor.",
    )
    optional = parser.add_mutually_exclusive_group()
    optional.add_argument(
        "--with-optional",
        dest="include_optional",
        action="store_true",
        default=None,
        help="Install the optional package set without asking.",
    )
    optional.add_argument(
        "--without-optional",
        dest="include_optional",
        action="store_false",
        help="Skip the optional package set without asking.",
    )
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt; fall back to command-line values and the manifest.",
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help="Path to a TOML manifest (default: sway_setup.toml next to this script).",
    )
    parser.add_argument("--variant", help="Apply a [variants.NAME] overlay from the manifest.")
    parser.add_argument(
        "--finalize",
        choices=FINALIZE_ACTIONS,
        help="What to do after reconciling: restart the display manager, reboot, or nothing.",
    )
    parser.add_argument(
        "--defer-start",
        action="store_true",
        help="Enable services at boot but do not start them now.",
    )
    parser.add_argument(
        "--skip-network-check",
        action="store_true",
        help="Do not probe the package mirror before reconciling.",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="count",
        default=0,
        help="Increase logging verbosity (use -vv for debug).",
    )
    parser.add_argument(
        "--log-file",
        type=pathlib.Path,
        help="Write logs to this file as well (default with --apply: /var/log/sway-setup.log).",
    )
    parser.add_argument(
        "--log-format",
        choices=("text", "json"),
        default="text",
        help="Logging output format (default: text).",
    )
    parser.add_argument(
        "--output",
        type=pathlib.Path,
        help="Optional path to write the run report as JSON.",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    changes: Dict[str, object] = {}
    if args.finalize:
        changes["finalize"] = args.finalize
    if args.defer_start:
        changes["start_services"] = False
    if args.skip_network_check:
        changes["network_check"] = False
    return dataclasses.replace(settings, **changes) if changes else settings


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


def configure_logging(verbosity: int, log_file: Optional[pathlib.Path], log_format: str) -> None:
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    # The run log keeps at least INFO regardless of console verbosity.
    file_level = min(level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(file_level if log_file is not None else level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if log_format == "json":
        formatter: logging.Formatter = _JSONLogFormatter()
    else:
        formatter = logging.Formatter("%(levelname)s: %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(file_level)
        file_handler.setFormatter(
            formatter if log_format == "json" else logging.Formatter("%(asctime)s %(levelname)s: %(message)s")
        )
        root.addHandler(file_handler)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, None, args.log_format)

    try:
        if args.apply:
            check_root()
        settings = apply_cli_overrides(load_settings(args.config, args.variant), args)
        log_file = args.log_file or (settings.paths.log_file if args.apply else None)
        if log_file is not None:
            configure_logging(args.verbose, log_file, args.log_format)

        interactive = not args.non_interactive and sys.stdin.isatty()
        answers = resolve_configuration_input(args, settings, interactive)
        config = RunConfig.build(settings, answers, dry_run=not args.apply)
        LOG.info("Run configuration:\n%s", json.dumps(config.to_dict(), indent=2))

        lock = run_lock(settings.paths.lock_file) if args.apply else contextlib.nullcontext()
        with lock:
            report = Orchestrator.for_system(config).run()
    except ProvisioningError as exc:
        LOG.error("%s", exc)
        return exc.exit_code

    exit_code = report.exit_code
    if args.output:
        try:
            args.output.write_text(report.describe(), encoding="utf-8")
        except OSError as exc:
            LOG.error("Could not write run report to %s: %s", args.output, exc)
            exit_code = exit_code or 1
        else:
            LOG.info("Wrote run report to %s", args.output)

    summary = ", ".join(f"{report.count(outcome)} {outcome.value}" for outcome in Outcome)
    if report.exit_code:
        LOG.error("Provisioning ended in state %s: %s (%s)", report.state.value, report.error, summary)
        if report.rolled_back:
            LOG.error("Removed packages installed by this run: %s", ", ".join(report.rolled_back))
    elif config.dry_run:
        LOG.warning("Dry run complete (%s). No changes were made; rerun with --apply.", summary)
    else:
        LOG.warning("Provisioning complete (%s)", summary)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
