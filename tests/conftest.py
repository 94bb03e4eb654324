import dataclasses
import datetime as dt
import grp
import os
import pathlib
import pwd
import subprocess
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import sway_setup
import sway_system

CURRENT_USER = pwd.getpwuid(os.getuid()).pw_name
CURRENT_GROUP = grp.getgrgid(os.getgid()).gr_name


class FakePackages(sway_system.PackageManager):
    def __init__(self, installed=(), failing=(), interrupt_on=None, unremovable=()):
        self.installed = set(installed)
        self.failing = set(failing)
        self.interrupt_on = interrupt_on
        self.unremovable = set(unremovable)
        self.calls = []

    def is_installed(self, name):
        return name in self.installed

    def install(self, name):
        self.calls.append(("install", name))
        if name == self.interrupt_on:
            raise KeyboardInterrupt
        if name in self.failing:
            raise subprocess.CalledProcessError(1, ["pkg", "install", "-y", name], "", "no such package")
        self.installed.add(name)

    def remove(self, name):
        self.calls.append(("remove", name))
        if name in self.unremovable:
            raise subprocess.CalledProcessError(1, ["pkg", "delete", "-y", name], "", "locked")
        self.installed.discard(name)

    def update_catalog(self):
        self.calls.append(("update",))


class FakeServices(sway_system.ServiceManager):
    def __init__(self, enabled=(), running=(), fail_restart=False):
        self.enabled = set(enabled)
        self.running = set(running)
        self.fail_restart = fail_restart
        self.calls = []

    def is_enabled_at_boot(self, name):
        return name in self.enabled

    def enable_at_boot(self, name):
        self.calls.append(("enable", name))
        self.enabled.add(name)

    def is_running(self, name):
        return name in self.running

    def start(self, name):
        self.calls.append(("start", name))
        self.running.add(name)

    def restart(self, name):
        self.calls.append(("restart", name))
        if self.fail_restart:
            raise subprocess.CalledProcessError(1, ["service", name, "restart"], "", "boom")
        self.running.add(name)

    def reboot(self):
        self.calls.append(("reboot",))


class FakeAccounts(sway_system.AccountManager):
    def __init__(self, groups=None):
        self.groups = {name: set(members) for name, members in (groups or {}).items()}
        self.calls = []

    def group_exists(self, name):
        return name in self.groups

    def user_in_group(self, user, group):
        return user in self.groups.get(group, set())

    def create_group(self, name):
        self.calls.append(("groupadd", name))
        self.groups.setdefault(name, set())

    def add_member(self, user, group):
        self.calls.append(("groupmod", group, user))
        self.groups[group].add(user)


def fixed_clock():
    return dt.datetime(2024, 1, 2, 3, 4, 5)


@pytest.fixture
def packages():
    return FakePackages()


@pytest.fixture
def services():
    return FakeServices()


@pytest.fixture
def accounts():
    return FakeAccounts({"video": ()})


@pytest.fixture
def host(tmp_path):
    """A miniature filesystem standing in for the provisioned host."""

    root = tmp_path / "host"
    paths = sway_setup.PathSettings(
        **{field.name: root / field.name for field in dataclasses.fields(sway_setup.PathSettings)}
    )
    paths.lightdm_conf.parent.mkdir(parents=True, exist_ok=True)
    paths.lightdm_conf.write_text(
        "[Seat:*]\n#greeter-session=example-gtk-gnome\n#user-session=default\n#session-wrapper=lightdm-session\n",
        encoding="utf-8",
    )
    paths.seatd_socket.write_text("", encoding="utf-8")
    os.chmod(paths.seatd_socket, 0o600)
    return paths


def make_config(host, tmp_path, dry_run=False, **overrides):
    settings = sway_setup.Settings(
        essential_packages=("wayland", "seatd", "sway"),
        optional_packages=("waybar",),
        paths=host,
        socket=sway_setup.SocketSettings(owner=CURRENT_USER, group=CURRENT_GROUP, mode=0o660),
        **overrides,
    )
    profile = sway_setup.ProfileTarget.resolve(CURRENT_USER, tmp_path / "home", "/bin/sh")
    answers = sway_setup.ConfigurationInput(user=CURRENT_USER, resolution="1920x1080", include_optional=True)
    return sway_setup.RunConfig(
        settings=settings,
        answers=answers,
        profile=profile,
        primary_group=CURRENT_GROUP,
        dry_run=dry_run,
    )
