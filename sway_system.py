"""System-state reconciliation primitives for :mod:`sway_setup`.

The provisioner never mutates the host blindly.  Every desired fact (a package
is installed, a group exists, a file carries a configuration block, ...) is
expressed as a *mutator* that first consults :class:`StateProbe` and only
issues the underlying change when the host has not converged yet.  Running the
same reconciliation twice is therefore a no-op the second time.

Package installations performed during a run are recorded in a
:class:`TransactionLedger` so that a fatal failure later in the run can remove
exactly those packages again.  Rollback is deliberately narrow: file edits,
groups and service flags are *not* reverted.  Text files are protected by
:class:`BackupManager` instead, which snapshots a file before its first
mutation in a run.

The package manager, service supervisor and account database are modelled as
small abstract interfaces with FreeBSD implementations (``pkg``, ``sysrc`` /
``service`` and ``pw``).  Tests substitute in-memory fakes.
"""
from __future__ import annotations

import dataclasses
import datetime as _dt
import enum
import grp
import logging
import os
import pathlib
import pwd
import re
import shutil
import stat
import subprocess
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple, Union

LOG = logging.getLogger(__name__)

PathLike = Union[str, pathlib.Path]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ProvisioningError(Exception):
    """Base class for every failure reported by the provisioner."""

    exit_code = 1


class PermissionDenied(ProvisioningError):
    exit_code = 77


class PrerequisiteMissing(ProvisioningError):
    exit_code = 69


class NetworkUnavailable(ProvisioningError):
    exit_code = 68


class ConcurrentRunDetected(ProvisioningError):
    exit_code = 75


class ConfigurationError(ProvisioningError):
    exit_code = 78


class InvalidUserInput(ProvisioningError):
    """Raised by input parsers; prompt loops catch it and ask again."""

    exit_code = 64


class TimedOut(ProvisioningError):
    exit_code = 124

    def __init__(self, cmd: Sequence[str], timeout: Optional[float]) -> None:
        self.cmd = list(cmd)
        self.timeout = timeout
        super().__init__(f"Command timed out after {timeout}s: {' '.join(self.cmd)}")


class RunInterrupted(ProvisioningError):
    exit_code = 130

    def __init__(self, signum: Optional[int] = None) -> None:
        self.signum = signum
        detail = f"signal {signum}" if signum is not None else "keyboard interrupt"
        super().__init__(f"Run interrupted by {detail}")


class MutationFailed(ProvisioningError):
    """A mutator could not converge ``subject``; ``cause`` explains why."""

    def __init__(self, subject: str, cause: object) -> None:
        self.subject = subject
        self.cause = cause
        super().__init__(f"{subject}: {_describe_cause(cause)}")


class PackageInstallFailed(MutationFailed):
    def __init__(self, subject: str, cause: object, essential: bool = True) -> None:
        self.essential = essential
        super().__init__(subject, cause)


class ServiceOperationFailed(MutationFailed):
    pass


class GroupOperationFailed(MutationFailed):
    pass


class FileOperationFailed(MutationFailed):
    pass


def _describe_cause(cause: object) -> str:
    if isinstance(cause, subprocess.CalledProcessError):
        stderr = (cause.stderr or "").strip()
        message = f"command {' '.join(str(part) for part in cause.cmd)} exited with {cause.returncode}"
        return f"{message}: {stderr}" if stderr else message
    return str(cause)


# Failures a mutator converts into a MutationFailed.  RunInterrupted and other
# ProvisioningErrors are left to propagate untouched.
_MUTATION_ERRORS = (
    subprocess.CalledProcessError,
    OSError,
    UnicodeError,
    KeyError,
    TimedOut,
    PrerequisiteMissing,
)


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------


def run_command(
    cmd: Sequence[str],
    check: bool = True,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    LOG.debug("Executing command: %s", " ".join(cmd))
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, check=False, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        raise TimedOut(cmd, timeout) from exc
    except FileNotFoundError as exc:
        raise PrerequisiteMissing(f"Required tool is not installed: {cmd[0]}") from exc
    if check and result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, list(cmd), result.stdout, result.stderr)
    if result.stdout:
        LOG.debug("stdout: %s", result.stdout.strip())
    if result.stderr:
        LOG.debug("stderr: %s", result.stderr.strip())
    return result


Runner = Callable[..., "subprocess.CompletedProcess[str]"]


# ---------------------------------------------------------------------------
# Collaborator interfaces and FreeBSD backends
# ---------------------------------------------------------------------------


class PackageManager(ABC):
    """Install, query and remove named packages."""

    @abstractmethod
    def is_installed(self, name: str) -> bool:
        """Return ``True`` when ``name`` is already present on the host."""

    @abstractmethod
    def install(self, name: str) -> None:
        """Install ``name``; raise on failure."""

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove ``name``; raise on failure."""

    def update_catalog(self) -> None:
        """Refresh the repository catalogue before installing."""


class PkgManager(PackageManager):
    """FreeBSD ``pkg(8)`` backend."""

    def __init__(
        self,
        executable: str = "pkg",
        runner: Runner = run_command,
        *,
        command_timeout: Optional[float] = 120,
        update_timeout: Optional[float] = 600,
        install_timeout: Optional[float] = 1800,
    ) -> None:
        self.executable = executable
        self.runner = runner
        self.command_timeout = command_timeout
        self.update_timeout = update_timeout
        self.install_timeout = install_timeout

    @classmethod
    def for_system(cls, runner: Runner = run_command, **timeouts: Optional[float]) -> "PkgManager":
        executable = shutil.which("pkg")
        if not executable:
            raise PrerequisiteMissing("pkg(8) is not available on this system")
        return cls(executable, runner, **timeouts)

    def is_installed(self, name: str) -> bool:
        result = self.runner([self.executable, "info", "-e", name], check=False, timeout=self.command_timeout)
        return result.returncode == 0

    def install(self, name: str) -> None:
        self.runner([self.executable, "install", "-y", name], timeout=self.install_timeout)

    def remove(self, name: str) -> None:
        self.runner([self.executable, "delete", "-y", name], timeout=self.install_timeout)

    def update_catalog(self) -> None:
        self.runner([self.executable, "update", "-f"], timeout=self.update_timeout)


class ServiceManager(ABC):
    """Boot enablement and runtime control of system services."""

    @abstractmethod
    def is_enabled_at_boot(self, name: str) -> bool:
        """Return ``True`` when ``name`` starts at boot."""

    @abstractmethod
    def enable_at_boot(self, name: str) -> None:
        """Mark ``name`` to start at boot."""

    @abstractmethod
    def is_running(self, name: str) -> bool:
        """Return ``True`` when ``name`` is currently running."""

    @abstractmethod
    def start(self, name: str) -> None:
        """Start ``name`` now."""

    @abstractmethod
    def restart(self, name: str) -> None:
        """Restart ``name`` now."""

    @abstractmethod
    def reboot(self) -> None:
        """Restart the whole system."""


_RC_TRUE_VALUES = {"YES", "TRUE", "ON", "1"}


class RcServiceManager(ServiceManager):
    """rc.d backend driven through ``sysrc(8)`` and ``service(8)``."""

    def __init__(self, runner: Runner = run_command, command_timeout: Optional[float] = 120) -> None:
        self.runner = runner
        self.command_timeout = command_timeout

    @staticmethod
    def rc_variable(name: str) -> str:
        return re.sub(r"[^A-Za-z0-9_]", "_", name) + "_enable"

    def is_enabled_at_boot(self, name: str) -> bool:
        result = self.runner(["sysrc", "-n", self.rc_variable(name)], check=False, timeout=self.command_timeout)
        if result.returncode != 0:
            return False
        return (result.stdout or "").strip().upper() in _RC_TRUE_VALUES

    def enable_at_boot(self, name: str) -> None:
        self.runner(["sysrc", f"{self.rc_variable(name)}=YES"], timeout=self.command_timeout)

    def is_running(self, name: str) -> bool:
        # onestatus works whether or not the service is enabled in rc.conf.
        result = self.runner(["service", name, "onestatus"], check=False, timeout=self.command_timeout)
        return result.returncode == 0

    def start(self, name: str) -> None:
        self.runner(["service", name, "onestart"], timeout=self.command_timeout)

    def restart(self, name: str) -> None:
        self.runner(["service", name, "restart"], timeout=self.command_timeout)

    def reboot(self) -> None:
        self.runner(["shutdown", "-r", "now"], timeout=self.command_timeout)


class AccountManager(ABC):
    """Group database queries and updates."""

    @abstractmethod
    def group_exists(self, name: str) -> bool:
        """Return ``True`` when group ``name`` is defined."""

    @abstractmethod
    def user_in_group(self, user: str, group: str) -> bool:
        """Return ``True`` when ``user`` belongs to ``group``."""

    @abstractmethod
    def create_group(self, name: str) -> None:
        """Create group ``name``."""

    @abstractmethod
    def add_member(self, user: str, group: str) -> None:
        """Add ``user`` to the supplementary members of ``group``."""


class PwAccountManager(AccountManager):
    """Reads through :mod:`grp`/:mod:`pwd`, writes through ``pw(8)``."""

    def __init__(self, runner: Runner = run_command, command_timeout: Optional[float] = 120) -> None:
        self.runner = runner
        self.command_timeout = command_timeout

    def group_exists(self, name: str) -> bool:
        try:
            grp.getgrnam(name)
        except KeyError:
            return False
        return True

    def user_in_group(self, user: str, group: str) -> bool:
        try:
            entry = grp.getgrnam(group)
        except KeyError:
            return False
        if user in entry.gr_mem:
            return True
        try:
            return pwd.getpwnam(user).pw_gid == entry.gr_gid
        except KeyError:
            return False

    def create_group(self, name: str) -> None:
        self.runner(["pw", "groupadd", name], timeout=self.command_timeout)

    def add_member(self, user: str, group: str) -> None:
        self.runner(["pw", "groupmod", group, "-m", user], timeout=self.command_timeout)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


class PackageRole(enum.Enum):
    ESSENTIAL = "essential"
    OPTIONAL = "optional"


@dataclasses.dataclass(frozen=True)
class PackageSpec:
    name: str
    role: PackageRole = PackageRole.ESSENTIAL

    @property
    def essential(self) -> bool:
        return self.role is PackageRole.ESSENTIAL


@dataclasses.dataclass(frozen=True)
class ServiceSpec:
    """Desired boot enablement and runtime state of an rc.d service."""

    name: str
    enable: bool = True
    start: bool = True


@dataclasses.dataclass(frozen=True)
class GroupMembership:
    group: str
    user: str


@dataclasses.dataclass(frozen=True)
class ConfigBlock:
    """A text fragment appended at most once to a file.

    Presence is detected through a versioned sentinel comment that must occupy
    a whole line.  ``legacy_markers`` lets the probe recognise fragments that
    were inserted by older tooling which did not write sentinels.
    """

    name: str
    payload: str
    version: int = 1
    legacy_markers: Tuple[str, ...] = ()

    @property
    def begin_marker(self) -> str:
        return f"# >>> sway-setup:{self.name} v{self.version} >>>"

    @property
    def end_marker(self) -> str:
        return f"# <<< sway-setup:{self.name} v{self.version} <<<"

    def render(self) -> str:
        return f"{self.begin_marker}\n{self.payload.rstrip()}\n{self.end_marker}\n"


@dataclasses.dataclass(frozen=True)
class BackupRecord:
    original_path: pathlib.Path
    backup_path: pathlib.Path
    timestamp: str


class Severity(enum.Enum):
    FATAL = "fatal"
    RECOVERABLE = "recoverable"


class Outcome(enum.Enum):
    SATISFIED = "satisfied"
    CHANGED = "changed"
    PLANNED = "planned"
    FAILED = "failed"


# Which mutator failures abort the run.  Fixed at import time and never
# inferred from the failure itself.
MUTATOR_POLICY: Mapping[str, Severity] = {
    "package:essential": Severity.FATAL,
    "package:optional": Severity.RECOVERABLE,
    "group": Severity.FATAL,
    "group-membership": Severity.FATAL,
    "service-enable": Severity.FATAL,
    "service-start": Severity.RECOVERABLE,
    "config-block": Severity.FATAL,
    "config-field": Severity.FATAL,
    "file-create": Severity.FATAL,
    "file-content": Severity.RECOVERABLE,
    "file-permissions": Severity.RECOVERABLE,
}


@dataclasses.dataclass(frozen=True)
class MutationResult:
    kind: str
    subject: str
    outcome: Outcome
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "kind": self.kind,
            "subject": self.subject,
            "outcome": self.outcome.value,
            "detail": self.detail,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


def _resolve_ids(owner: Optional[str], group: Optional[str]) -> Tuple[int, int]:
    """Map names to ids; ``-1`` leaves the attribute untouched in ``os.chown``."""

    uid = pwd.getpwnam(owner).pw_uid if owner else -1
    gid = grp.getgrnam(group).gr_gid if group else -1
    return uid, gid


_SECTION_RE = re.compile(r"^[ \t]*\[[^\]]*\][ \t]*$")


def _set_ini_field(text: str, key: str, value: str) -> Optional[str]:
    """Return ``text`` with ``key=value`` applied per section, or ``None`` if ``key`` never appears."""

    live = re.compile(rf"^[ \t]*{re.escape(key)}[ \t]*=")
    commented = re.compile(rf"^[#;][ \t]*{re.escape(key)}[ \t]*=")
    lines = text.splitlines(keepends=True)

    sections: List[List[int]] = [[]]
    for index, line in enumerate(lines):
        if _SECTION_RE.match(line):
            sections.append([])
        sections[-1].append(index)

    targets: List[int] = []
    for indexes in sections:
        active = [i for i in indexes if live.match(lines[i])]
        if active:
            targets.extend(active)
            continue
        inactive = [i for i in indexes if commented.match(lines[i])]
        if inactive:
            targets.append(inactive[0])
    if not targets:
        return None

    for index in targets:
        ending = lines[index][len(lines[index].rstrip("\r\n")):]
        lines[index] = f"{key}={value}{ending}"
    return "".join(lines)


def _ensure_parent_dirs(directory: pathlib.Path, uid: int = -1, gid: int = -1) -> None:
    missing: List[pathlib.Path] = []
    current = directory
    while not current.exists():
        missing.append(current)
        current = current.parent
    for path in reversed(missing):
        path.mkdir()
        if uid != -1 or gid != -1:
            os.chown(path, uid, gid)
        LOG.debug("Created directory %s", path)


# ---------------------------------------------------------------------------
# State probe
# ---------------------------------------------------------------------------


class StateProbe:
    """Read-only queries against the live system.

    Every query tolerates a subject that does not exist yet and answers with
    ``False``/``None`` instead of raising.
    """

    def __init__(self, packages: PackageManager, services: ServiceManager, accounts: AccountManager) -> None:
        self.packages = packages
        self.services = services
        self.accounts = accounts

    def _ask(self, query: Callable[..., bool], *args: str) -> bool:
        try:
            return bool(query(*args))
        except OSError as exc:
            LOG.warning("Query %s%s failed: %s", getattr(query, "__name__", query), args, exc)
            return False

    def package_installed(self, name: str) -> bool:
        return self._ask(self.packages.is_installed, name)

    def group_exists(self, name: str) -> bool:
        return self._ask(self.accounts.group_exists, name)

    def user_in_group(self, user: str, group: str) -> bool:
        return self._ask(self.accounts.user_in_group, user, group)

    def service_enabled_at_boot(self, name: str) -> bool:
        return self._ask(self.services.is_enabled_at_boot, name)

    def service_running(self, name: str) -> bool:
        return self._ask(self.services.is_running, name)

    @staticmethod
    def _read_text(path: PathLike) -> Optional[str]:
        try:
            return pathlib.Path(path).read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def file_contains(self, path: PathLike, marker: str) -> bool:
        text = self._read_text(path)
        return text is not None and marker in text

    def block_present(self, path: PathLike, block: ConfigBlock) -> bool:
        text = self._read_text(path)
        if text is None:
            return False
        if any(line.strip() == block.begin_marker for line in text.splitlines()):
            return True
        return any(marker in text for marker in block.legacy_markers)

    def file_owner_group(self, path: PathLike) -> Optional[Tuple[str, str]]:
        try:
            st = os.stat(path)
        except OSError:
            return None
        return _user_name(st.st_uid), _group_name(st.st_gid)

    def file_permission_bits(self, path: PathLike) -> Optional[int]:
        try:
            return stat.S_IMODE(os.stat(path).st_mode)
        except OSError:
            return None


# ---------------------------------------------------------------------------
# Transaction ledger
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class RollbackReport:
    removed: Tuple[str, ...] = ()
    failed: Tuple[str, ...] = ()


class TransactionLedger:
    """Packages installed by *this* run, in installation order."""

    def __init__(self) -> None:
        self._entries: List[str] = []

    def record(self, package: str) -> None:
        LOG.debug("Ledger: recorded fresh install of %s", package)
        self._entries.append(package)

    @property
    def entries(self) -> Tuple[str, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def rollback(self, packages: PackageManager) -> RollbackReport:
        """Remove the recorded packages, newest first.

        A removal failure is logged and the remaining packages are still
        attempted; nothing here triggers a further rollback.
        """

        removed: List[str] = []
        failed: List[str] = []
        for name in reversed(self._entries):
            try:
                packages.remove(name)
            except _MUTATION_ERRORS as exc:
                LOG.error("Rollback could not remove %s: %s", name, _describe_cause(exc))
                failed.append(name)
                continue
            LOG.info("Rolled back package %s", name)
            removed.append(name)
        self._entries.clear()
        return RollbackReport(removed=tuple(removed), failed=tuple(failed))


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


class BackupManager:
    """Snapshots text files before their first mutation in a run."""

    TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

    def __init__(self, clock: Optional[Callable[[], _dt.datetime]] = None) -> None:
        self._clock = clock or _dt.datetime.now
        self._by_path: Dict[pathlib.Path, BackupRecord] = {}
        self.records: List[BackupRecord] = []

    def snapshot(
        self,
        path: PathLike,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> BackupRecord:
        path = pathlib.Path(path)
        existing = self._by_path.get(path)
        if existing is not None:
            return existing

        if not path.exists():
            uid, gid = _resolve_ids(owner, group)
            _ensure_parent_dirs(path.parent, uid, gid)
            path.touch()
            if uid != -1 or gid != -1:
                os.chown(path, uid, gid)
            LOG.info("Created empty %s before first modification", path)

        timestamp = self._clock().strftime(self.TIMESTAMP_FORMAT)
        backup = path.with_name(f"{path.name}.bak.{timestamp}")
        counter = 1
        while backup.exists():
            backup = path.with_name(f"{path.name}.bak.{timestamp}.{counter}")
            counter += 1

        shutil.copy2(path, backup)
        st = path.stat()
        os.chown(backup, st.st_uid, st.st_gid)
        LOG.info("Created backup %s", backup)

        record = BackupRecord(original_path=path, backup_path=backup, timestamp=timestamp)
        self._by_path[path] = record
        self.records.append(record)
        return record


# ---------------------------------------------------------------------------
# Mutators
# ---------------------------------------------------------------------------


class Reconciler:
    """Idempotent mutators; one method per kind of desired-state fact.

    Each method probes first, applies a single change only when needed and
    records a :class:`MutationResult`.  Failures are classified through
    :data:`MUTATOR_POLICY`: fatal ones are raised, recoverable ones are logged
    and recorded as :attr:`Outcome.FAILED`.
    """

    def __init__(
        self,
        probe: StateProbe,
        ledger: TransactionLedger,
        backups: BackupManager,
        *,
        dry_run: bool = False,
        policy: Mapping[str, Severity] = MUTATOR_POLICY,
    ) -> None:
        self.probe = probe
        self.ledger = ledger
        self.backups = backups
        self.dry_run = dry_run
        self.policy = policy
        self.results: List[MutationResult] = []
        self._planned_groups: Set[str] = set()

    @property
    def packages(self) -> PackageManager:
        return self.probe.packages

    @property
    def services(self) -> ServiceManager:
        return self.probe.services

    @property
    def accounts(self) -> AccountManager:
        return self.probe.accounts

    def _record(self, kind: str, subject: str, outcome: Outcome, detail: str = "") -> MutationResult:
        result = MutationResult(kind=kind, subject=subject, outcome=outcome, detail=detail)
        self.results.append(result)
        return result

    def _satisfied(self, kind: str, subject: str, detail: str = "already satisfied") -> MutationResult:
        LOG.info("%s %s: %s", kind, subject, detail)
        return self._record(kind, subject, Outcome.SATISFIED, detail)

    def _planned(self, kind: str, subject: str, action: str) -> MutationResult:
        LOG.info("[dry-run] Would %s", action)
        return self._record(kind, subject, Outcome.PLANNED, action)

    def _changed(self, kind: str, subject: str, detail: str) -> MutationResult:
        LOG.info("%s", detail)
        return self._record(kind, subject, Outcome.CHANGED, detail)

    def _fail(self, kind: str, error: MutationFailed) -> MutationResult:
        result = self._record(kind, error.subject, Outcome.FAILED, str(error))
        if self.policy[kind] is Severity.FATAL:
            LOG.error("Fatal %s failure: %s", kind, error)
            raise error
        LOG.warning("Non-fatal %s failure, continuing: %s", kind, error)
        return result

    # -- packages ---------------------------------------------------------

    def ensure_package(self, spec: PackageSpec) -> MutationResult:
        kind = f"package:{spec.role.value}"
        if self.probe.package_installed(spec.name):
            return self._satisfied(kind, spec.name, "already installed")
        if self.dry_run:
            return self._planned(kind, spec.name, f"install package {spec.name}")
        try:
            self.packages.install(spec.name)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, PackageInstallFailed(spec.name, exc, essential=spec.essential))
        if not self.probe.package_installed(spec.name):
            cause = "package manager reported success but the package is not installed"
            return self._fail(kind, PackageInstallFailed(spec.name, cause, essential=spec.essential))
        self.ledger.record(spec.name)
        return self._changed(kind, spec.name, f"Installed package {spec.name}")

    # -- groups -----------------------------------------------------------

    def ensure_group(self, name: str) -> MutationResult:
        kind = "group"
        if self.probe.group_exists(name):
            return self._satisfied(kind, name, "group exists")
        if self.dry_run:
            self._planned_groups.add(name)
            return self._planned(kind, name, f"create group {name}")
        try:
            self.accounts.create_group(name)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, GroupOperationFailed(name, exc))
        if not self.probe.group_exists(name):
            return self._fail(kind, GroupOperationFailed(name, "group is still missing after creation"))
        return self._changed(kind, name, f"Created group {name}")

    def ensure_group_membership(self, user: str, group: str) -> MutationResult:
        kind = "group-membership"
        subject = f"{user}@{group}"
        if not self.probe.group_exists(group):
            if self.dry_run and group in self._planned_groups:
                return self._planned(kind, subject, f"add {user} to group {group}")
            return self._fail(kind, GroupOperationFailed(subject, f"group {group} does not exist"))
        if self.probe.user_in_group(user, group):
            return self._satisfied(kind, subject, "already a member")
        if self.dry_run:
            return self._planned(kind, subject, f"add {user} to group {group}")
        try:
            self.accounts.add_member(user, group)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, GroupOperationFailed(subject, exc))
        if not self.probe.user_in_group(user, group):
            return self._fail(kind, GroupOperationFailed(subject, "membership not visible after update"))
        return self._changed(kind, subject, f"Added {user} to group {group}")

    # -- services ---------------------------------------------------------

    def ensure_service_enabled(self, name: str) -> MutationResult:
        kind = "service-enable"
        if self.probe.service_enabled_at_boot(name):
            return self._satisfied(kind, name, "already enabled at boot")
        if self.dry_run:
            return self._planned(kind, name, f"enable service {name} at boot")
        try:
            self.services.enable_at_boot(name)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, ServiceOperationFailed(name, exc))
        if not self.probe.service_enabled_at_boot(name):
            return self._fail(kind, ServiceOperationFailed(name, "service is still disabled after update"))
        return self._changed(kind, name, f"Enabled service {name} at boot")

    def ensure_service_running(self, name: str) -> MutationResult:
        kind = "service-start"
        if self.probe.service_running(name):
            return self._satisfied(kind, name, "already running")
        if self.dry_run:
            return self._planned(kind, name, f"start service {name}")
        try:
            self.services.start(name)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, ServiceOperationFailed(name, exc))
        return self._changed(kind, name, f"Started service {name}")

    # -- files ------------------------------------------------------------

    def ensure_config_block(
        self,
        path: PathLike,
        block: ConfigBlock,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> MutationResult:
        """Append ``block`` unless it is already present.

        This never repairs a stale or hand-edited block; a file that carries
        the marker is left alone.
        """

        kind = "config-block"
        path = pathlib.Path(path)
        subject = f"{path}#{block.name}"
        if self.probe.block_present(path, block):
            return self._satisfied(kind, subject, "block already present")
        if self.dry_run:
            return self._planned(kind, subject, f"append {block.name} block to {path}")
        try:
            self.backups.snapshot(path, owner, group)
            existing = path.read_text(encoding="utf-8", errors="replace")
            separator = ""
            if existing:
                separator = "\n" if existing.endswith("\n") else "\n\n"
            with path.open("a", encoding="utf-8") as fh:
                fh.write(separator + block.render())
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        return self._changed(kind, subject, f"Appended {block.name} block to {path}")

    def rewrite_config_field(self, path: PathLike, key: str, value: str) -> MutationResult:
        """Set ``key=value`` in every ``[section]`` that mentions ``key``.

        Live ``key=`` lines are rewritten in place.  A section without a live
        line gets its first ``#key=`` line uncommented instead, so a section
        never ends up with two active assignments.
        """

        kind = "config-field"
        path = pathlib.Path(path)
        subject = f"{path}:{key}"
        if self.dry_run and not path.exists():
            # The file usually arrives with a package this run would install.
            return self._planned(kind, subject, f"set {key}={value} in {path} once it exists")
        try:
            text = path.read_text(encoding="utf-8")
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        updated = _set_ini_field(text, key, value)
        if updated is None:
            LOG.warning("Key %s not found in %s; leaving the file unchanged", key, path)
            return self._record(kind, subject, Outcome.SATISFIED, "key not present")
        if updated == text:
            return self._satisfied(kind, subject, f"already set to {value}")
        if self.dry_run:
            return self._planned(kind, subject, f"set {key}={value} in {path}")
        try:
            self.backups.snapshot(path)
            path.write_text(updated, encoding="utf-8")
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        return self._changed(kind, subject, f"Set {key}={value} in {path}")

    def ensure_file_created(
        self,
        path: PathLike,
        payload: str,
        *,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        mode: int = 0o644,
    ) -> MutationResult:
        kind = "file-create"
        path = pathlib.Path(path)
        subject = str(path)
        if path.exists():
            return self._satisfied(kind, subject, "exists; keeping local content")
        if self.dry_run:
            return self._planned(kind, subject, f"create {path}")
        try:
            uid, gid = _resolve_ids(owner, group)
            _ensure_parent_dirs(path.parent, uid, gid)
            path.write_text(payload, encoding="utf-8")
            os.chmod(path, mode)
            if uid != -1 or gid != -1:
                os.chown(path, uid, gid)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        return self._changed(kind, subject, f"Created {path}")

    def ensure_desktop_entry(self, path: PathLike, payload: str) -> MutationResult:
        return self.ensure_file_created(path, payload, mode=0o644)

    def ensure_file_content(self, path: PathLike, payload: str, mode: int = 0o644) -> MutationResult:
        kind = "file-content"
        path = pathlib.Path(path)
        subject = str(path)
        data = payload.encode("utf-8")
        try:
            current = path.read_bytes() if path.exists() else None
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        if current == data:
            if self.probe.file_permission_bits(path) == mode:
                return self._satisfied(kind, subject, "content and mode match")
            if self.dry_run:
                return self._planned(kind, subject, f"set mode {oct(mode)} on {path}")
            try:
                os.chmod(path, mode)
            except _MUTATION_ERRORS as exc:
                return self._fail(kind, FileOperationFailed(subject, exc))
            return self._changed(kind, subject, f"Set mode {oct(mode)} on {path}")
        if self.dry_run:
            return self._planned(kind, subject, f"write {path}")
        try:
            self.backups.snapshot(path)
            path.write_bytes(data)
            os.chmod(path, mode)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        return self._changed(kind, subject, f"Wrote {path}")

    def ensure_file_owner_permissions(
        self,
        path: PathLike,
        owner: Optional[str] = None,
        group: Optional[str] = None,
        mode: Optional[int] = None,
    ) -> MutationResult:
        kind = "file-permissions"
        subject = str(path)
        current = self.probe.file_owner_group(path)
        bits = self.probe.file_permission_bits(path)
        if current is None or bits is None:
            return self._fail(kind, FileOperationFailed(subject, "path does not exist"))

        updates: List[str] = []
        uid = gid = -1
        try:
            if owner and current[0] != owner:
                uid = pwd.getpwnam(owner).pw_uid
                updates.append(f"owner -> {owner}")
            if group and current[1] != group:
                gid = grp.getgrnam(group).gr_gid
                updates.append(f"group -> {group}")
        except KeyError as exc:
            return self._fail(kind, FileOperationFailed(subject, f"unknown account {exc.args[0]!r}"))
        if mode is not None and bits != mode:
            updates.append(f"mode -> {oct(mode)}")

        if not updates:
            return self._satisfied(kind, subject, "ownership and mode match")
        if self.dry_run:
            return self._planned(kind, subject, f"update {path}: {'; '.join(updates)}")
        try:
            if uid != -1 or gid != -1:
                os.chown(path, uid, gid)
            if mode is not None and bits != mode:
                os.chmod(path, mode)
        except _MUTATION_ERRORS as exc:
            return self._fail(kind, FileOperationFailed(subject, exc))
        return self._changed(kind, subject, f"Updated {path} ({'; '.join(updates)})")
