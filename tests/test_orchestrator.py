import logging
import os
import signal
import stat

import sway_setup
import sway_system
from conftest import FakeAccounts, FakePackages, FakeServices, fixed_clock, make_config


def build(config, packages, services, accounts, checks=()):
    return sway_setup.Orchestrator(config, packages, services, accounts, checks=checks, clock=fixed_clock)


def test_fresh_host_converges(host, tmp_path, packages, services, accounts):
    config = make_config(host, tmp_path)
    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.DONE
    assert report.exit_code == 0
    assert packages.installed == {"wayland", "seatd", "sway", "waybar"}
    assert packages.calls[0] == ("update",)
    assert {"dbus", "seatd", "lightdm"} <= services.enabled
    assert ("start", "lightdm") not in services.calls
    assert ("restart", "lightdm") in services.calls
    assert config.user in accounts.groups["video"]

    lightdm = host.lightdm_conf.read_text(encoding="utf-8")
    assert f"session-wrapper={host.xsession_script}" in lightdm
    assert "user-session=sway" in lightdm
    assert "#greeter-session=example-gtk-gnome" in lightdm

    desktop = (host.sessions_dir / "sway.desktop").read_text(encoding="utf-8")
    assert f"Exec={host.sway_binary}" in desktop

    sway_config = config.sway_config_path.read_text(encoding="utf-8")
    assert "output * resolution 1920x1080" in sway_config
    assert "set $mod Mod4" in sway_config

    profile = config.profile.profile_path.read_text(encoding="utf-8")
    assert "export XDG_SESSION_TYPE=wayland" in profile

    assert stat.S_IMODE(os.stat(host.toggle_script).st_mode) == 0o755
    assert stat.S_IMODE(os.stat(host.seatd_socket).st_mode) == 0o660


def test_second_run_changes_nothing(host, tmp_path, packages, services, accounts):
    config = make_config(host, tmp_path)
    build(config, packages, services, accounts).run()
    snapshot = {path: path.read_bytes() for path in tmp_path.rglob("*") if path.is_file()}
    packages.calls.clear()
    services.calls.clear()
    accounts.calls.clear()

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.DONE
    assert all(result.outcome is sway_system.Outcome.SATISFIED for result in report.results)
    assert report.backups == []
    assert packages.calls == []
    assert accounts.calls == []
    assert services.calls == [("restart", "lightdm")]
    assert {path: path.read_bytes() for path in tmp_path.rglob("*") if path.is_file()} == snapshot


def test_third_essential_failure_rolls_back_first_two(host, tmp_path, services, accounts):
    packages = FakePackages(failing={"sway"})
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code != 0
    assert report.rolled_back == ("seatd", "wayland")
    assert [call for call in packages.calls if call[0] == "remove"] == [("remove", "seatd"), ("remove", "wayland")]
    assert packages.installed == set()
    # Reconciliation stopped before any configuration file was touched.
    assert not (host.sessions_dir / "sway.desktop").exists()
    assert ("restart", "lightdm") not in services.calls


def test_preinstalled_packages_are_not_rolled_back(host, tmp_path, services, accounts):
    packages = FakePackages(installed={"wayland"}, failing={"sway"})
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.rolled_back == ("seatd",)
    assert "wayland" in packages.installed


def test_rollback_failure_is_reported_and_does_not_stop_rollback(host, tmp_path, services, accounts):
    packages = FakePackages(failing={"sway"}, unremovable={"seatd"})
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.rollback_failures == ("seatd",)
    assert report.rolled_back == ("wayland",)


def test_optional_package_failure_is_not_fatal(host, tmp_path, services, accounts):
    packages = FakePackages(failing={"waybar"})
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.DONE
    assert report.exit_code == 0
    failed = [r for r in report.results if r.outcome is sway_system.Outcome.FAILED]
    assert [(r.kind, r.subject) for r in failed] == [("package:optional", "waybar")]
    assert "remove" not in {call[0] for call in packages.calls}


def test_membership_in_missing_group_fails_the_run(host, tmp_path, packages, services):
    accounts = FakeAccounts({})
    config = make_config(host, tmp_path, groups=(), member_groups=("seatd",))

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code == 1
    assert "seatd" in report.error
    assert accounts.calls == []


def test_dry_run_mutates_nothing(host, tmp_path, packages, services):
    accounts = FakeAccounts({})
    config = make_config(host, tmp_path, dry_run=True)
    lightdm_before = host.lightdm_conf.read_text(encoding="utf-8")

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.DONE
    assert packages.calls == []
    assert services.calls == []
    assert accounts.calls == []
    assert host.lightdm_conf.read_text(encoding="utf-8") == lightdm_before
    assert not host.sessions_dir.exists()
    assert not config.profile.home.exists()
    assert stat.S_IMODE(os.stat(host.seatd_socket).st_mode) == 0o600
    planned = {(r.kind, r.subject) for r in report.results if r.outcome is sway_system.Outcome.PLANNED}
    assert ("group", "video") in planned
    assert ("group-membership", f"{config.user}@video") in planned
    assert ("package:essential", "sway") in planned


def test_interrupt_rolls_back_installed_packages(host, tmp_path, services, accounts):
    packages = FakePackages(interrupt_on="sway")
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code == 130
    assert report.rolled_back == ("seatd", "wayland")


class TerminatedPackages(FakePackages):
    def install(self, name):
        if name == "sway":
            os.kill(os.getpid(), signal.SIGTERM)
        super().install(name)


def test_sigterm_rolls_back_installed_packages(host, tmp_path, services, accounts):
    packages = TerminatedPackages()
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code == 130
    assert report.rolled_back == ("seatd", "wayland")
    assert packages.installed == set()


def test_undecodable_lightdm_conf_rolls_back(host, tmp_path, packages, services, accounts):
    original = b"[Seat:*]\n# caf\xe9 comment\n#user-session=default\n#session-wrapper=lightdm-session\n"
    host.lightdm_conf.write_bytes(original)
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code == 1
    assert "lightdm.conf" in report.error
    assert report.rolled_back == ("waybar", "sway", "seatd", "wayland")
    assert packages.installed == set()
    assert host.lightdm_conf.read_bytes() == original


class BrokenPackages(FakePackages):
    def install(self, name):
        if name == "sway":
            raise RuntimeError("package database corrupted")
        super().install(name)


def test_unexpected_error_still_rolls_back(host, tmp_path, services, accounts, caplog):
    packages = BrokenPackages()
    config = make_config(host, tmp_path)

    with caplog.at_level(logging.ERROR):
        report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.ROLLED_BACK
    assert report.exit_code == 1
    assert "package database corrupted" in report.error
    assert report.rolled_back == ("seatd", "wayland")
    assert packages.installed == set()
    assert "Unexpected error in phase packages" in caplog.text


def test_failed_preflight_stops_before_reconciling(host, tmp_path, packages, services, accounts):
    def deny(config):
        raise sway_system.PermissionDenied("not root")

    config = make_config(host, tmp_path)
    report = build(config, packages, services, accounts, checks=[deny]).run()

    assert report.state is sway_setup.RunState.FAILED
    assert report.exit_code == 77
    assert report.results == []
    assert packages.calls == []


def test_finalize_failure_does_not_roll_back(host, tmp_path, packages, accounts):
    services = FakeServices(fail_restart=True)
    config = make_config(host, tmp_path)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.FAILED
    assert report.exit_code == 1
    assert "remove" not in {call[0] for call in packages.calls}
    assert packages.installed == {"wayland", "seatd", "sway", "waybar"}


def test_reboot_finalize_and_deferred_start(host, tmp_path, packages, services, accounts):
    config = make_config(host, tmp_path, finalize="reboot", start_services=False)

    report = build(config, packages, services, accounts).run()

    assert report.state is sway_setup.RunState.DONE
    assert services.calls[-1] == ("reboot",)
    assert not any(call[0] == "start" for call in services.calls)
    assert {"dbus", "seatd", "lightdm"} <= services.enabled


def test_relogin_notice_when_membership_changes(host, tmp_path, packages, services, accounts, caplog):
    config = make_config(host, tmp_path, finalize="none")

    with caplog.at_level(logging.WARNING):
        build(config, packages, services, accounts).run()

    assert "next login" in caplog.text
    assert services.calls.count(("restart", "lightdm")) == 0


def test_catalog_update_skipped_when_everything_installed(host, tmp_path, services, accounts):
    packages = FakePackages(installed={"wayland", "seatd", "sway", "waybar"})
    config = make_config(host, tmp_path)

    build(config, packages, services, accounts).run()

    assert packages.calls == []


def test_report_serialization(host, tmp_path, packages, services, accounts):
    config = make_config(host, tmp_path)
    report = build(config, packages, services, accounts).run()

    data = report.to_dict()
    assert data["state"] == "done"
    assert data["summary"]["changed"] > 0
    assert any(entry["kind"] == "package:essential" for entry in data["results"])
    assert all(entry["backup"].endswith(".bak.20240102030405") for entry in data["backups"])

    out_file = tmp_path / "report.json"
    out_file.write_text(report.describe(), encoding="utf-8")
    assert out_file.exists()
