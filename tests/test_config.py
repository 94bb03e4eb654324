import logging
import pathlib
from unittest import mock

import pytest

import sway_setup
import sway_system
import sway_templates
from conftest import CURRENT_USER, PROJECT_ROOT


def test_defaults_without_manifest(tmp_path, monkeypatch):
    monkeypatch.setattr(sway_setup, "DEFAULT_CONFIG_PATH", tmp_path / "missing.toml")

    settings = sway_setup.load_settings()

    assert settings == sway_setup.Settings()
    assert "sway" in settings.essential_packages
    assert settings.paths.lightdm_conf == pathlib.Path("/usr/local/etc/lightdm/lightdm.conf")


def test_shipped_manifest_matches_defaults():
    assert sway_setup.load_settings(PROJECT_ROOT / "sway_setup.toml") == sway_setup.Settings()


def test_custom_manifest_overrides(tmp_path):
    config_path = tmp_path / "custom.toml"
    config_path.write_text(
        """
[packages]
essential = ["sway", "seatd"]
optional = []

[[services]]
name = "seatd"

[groups]
create = ["seat"]
join = ["seat", "video"]

[socket]
group = "seat"
mode = "0640"

[paths]
system_profile = "/tmp/profile"
""",
        encoding="utf-8",
    )

    settings = sway_setup.load_settings(config_path)

    assert settings.essential_packages == ("sway", "seatd")
    assert settings.optional_packages == ()
    assert settings.services == (sway_system.ServiceSpec("seatd"),)
    assert settings.member_groups == ("seat", "video")
    assert settings.socket.mode == 0o640
    assert settings.paths.system_profile == pathlib.Path("/tmp/profile")
    assert settings.paths.lightdm_conf == sway_setup.PathSettings().lightdm_conf


def test_variants_overlay_sections():
    manifest = PROJECT_ROOT / "sway_setup.toml"

    reboot = sway_setup.load_settings(manifest, "reboot")
    minimal = sway_setup.load_settings(manifest, "minimal")

    assert reboot.finalize == "reboot"
    assert reboot.start_services is False
    assert reboot.essential_packages == sway_setup.DEFAULT_ESSENTIAL_PACKAGES
    assert minimal.optional_packages == ()
    assert minimal.include_optional is False
    assert sway_setup.load_settings(manifest, "lightdm").finalize == "restart-service"


def test_unknown_variant(tmp_path):
    with pytest.raises(sway_system.ConfigurationError, match="available: lightdm, minimal, reboot"):
        sway_setup.load_settings(PROJECT_ROOT / "sway_setup.toml", "kde")


@pytest.mark.parametrize(
    "body, message",
    [
        ('[run]\nfinalize = "halt"\n', "run.finalize"),
        ('[packages]\nessential = "sway"\n', "packages.essential"),
        ('[session]\nresolution = "800x600"\n', "session.resolution"),
        ('[paths]\nbogus = "/tmp"\n', "bogus"),
        ("[packages\n", "Invalid TOML"),
    ],
)
def test_invalid_manifest(tmp_path, body, message):
    config_path = tmp_path / "bad.toml"
    config_path.write_text(body, encoding="utf-8")

    with pytest.raises(sway_system.ConfigurationError, match=message) as excinfo:
        sway_setup.load_settings(config_path)
    assert excinfo.value.exit_code == 78


def test_explicit_missing_manifest(tmp_path):
    with pytest.raises(sway_system.ConfigurationError, match="not found"):
        sway_setup.load_settings(tmp_path / "absent.toml")


@pytest.mark.parametrize(
    "shell, expected",
    [
        ("/usr/local/bin/bash", ".bash_profile"),
        ("/usr/local/bin/zsh", ".zprofile"),
        ("/usr/local/bin/fish", ".config/fish/config.fish"),
        ("/bin/tcsh", ".profile"),
        ("/bin/sh", ".profile"),
    ],
)
def test_profile_target_by_shell(shell, expected):
    target = sway_setup.ProfileTarget.resolve("bob", pathlib.Path("/home/bob"), shell)
    assert target.profile_path == pathlib.Path("/home/bob") / expected


def test_profile_target_unknown_user():
    with pytest.raises(sway_system.ConfigurationError):
        sway_setup.ProfileTarget.for_user("no-such-user-xyz")


def test_environment_block_uses_shell_dialect():
    fish = sway_templates.environment_block("fish", pathlib.Path("/var/run/user"))
    posix = sway_templates.environment_block("bash", pathlib.Path("/var/run/user"))

    assert "set -gx XDG_SESSION_TYPE wayland" in fish.payload
    assert "export" not in fish.payload
    assert "export XDG_SESSION_TYPE=wayland" in posix.payload
    assert fish.name != posix.name


def test_invalid_resolution_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING):
        choice = sway_setup.prompt_resolution(lambda prompt: "9")

    assert choice == "1366x768"
    assert "falling back to 1366x768" in caplog.text


def test_resolution_menu_choices():
    assert sway_setup.prompt_resolution(lambda prompt: "2") == "1920x1080"
    assert sway_setup.prompt_resolution(lambda prompt: "") == sway_setup.DEFAULT_RESOLUTION
    with pytest.raises(sway_system.InvalidUserInput):
        sway_setup.parse_resolution_choice("0")


def test_yes_no_prompt_asks_again():
    answers = iter(["maybe", "n"])
    assert sway_setup.prompt_yes_no("Optional?", True, lambda prompt: next(answers)) is False
    assert sway_setup.prompt_yes_no("Optional?", True, lambda prompt: "") is True


def test_username_prompt_asks_again():
    answers = iter(["ghost", "bob"])
    name = sway_setup.prompt_username(lambda prompt: next(answers), user_exists=lambda user: user == "bob")
    assert name == "bob"


def test_extract_resolution_from_swaymsg_output():
    outputs = '[{"name": "HDMI-A-1", "active": false}, {"name": "eDP-1", "active": true, "current_mode": {"width": 1920, "height": 1080}}]'
    assert sway_setup.extract_resolution(outputs) == "1920x1080"
    assert sway_setup.extract_resolution("not json") is None
    assert sway_setup.extract_resolution("[]") is None


def test_detect_resolution_without_compositor():
    def runner(cmd, check=True, timeout=None):
        raise sway_system.PrerequisiteMissing("swaymsg")

    assert sway_setup.detect_resolution(runner) is None


def test_parse_args_defaults():
    args = sway_setup.parse_args([])

    assert args.apply is False
    assert args.include_optional is None
    assert args.log_format == "text"
    assert sway_setup.parse_args(["--without-optional"]).include_optional is False
    assert sway_setup.parse_args(["--with-optional"]).include_optional is True


def test_cli_overrides(tmp_path):
    args = sway_setup.parse_args(["--finalize", "none", "--defer-start", "--skip-network-check"])
    settings = sway_setup.apply_cli_overrides(sway_setup.Settings(), args)

    assert settings.finalize == "none"
    assert settings.start_services is False
    assert settings.network_check is False


def test_non_interactive_requires_user(monkeypatch):
    monkeypatch.delenv("SUDO_USER", raising=False)
    monkeypatch.delenv("DOAS_USER", raising=False)
    args = sway_setup.parse_args(["--non-interactive"])

    with pytest.raises(sway_system.ConfigurationError, match="--user"):
        sway_setup.resolve_configuration_input(args, sway_setup.Settings(), interactive=False)


def test_non_interactive_uses_flags_and_manifest(monkeypatch):
    args = sway_setup.parse_args(["--user", CURRENT_USER, "--without-optional"])

    answers = sway_setup.resolve_configuration_input(args, sway_setup.Settings(), interactive=False)

    assert answers == sway_setup.ConfigurationInput(CURRENT_USER, "1366x768", include_optional=False)


def test_main_apply_requires_root(monkeypatch):
    monkeypatch.setattr(sway_setup.os, "geteuid", lambda: 1000)
    assert sway_setup.main(["--apply", "--non-interactive", "--user", CURRENT_USER]) == 77


def test_main_reports_configuration_errors(tmp_path):
    assert sway_setup.main(["--config", str(tmp_path / "absent.toml")]) == 78


def test_main_reports_unwritable_output(tmp_path, monkeypatch, caplog):
    orchestrator = mock.Mock()
    orchestrator.run.return_value = sway_setup.RunReport()
    config = mock.Mock(dry_run=True)
    config.to_dict.return_value = {}
    monkeypatch.setattr(sway_setup, "configure_logging", lambda *args: None)
    monkeypatch.setattr(sway_setup.RunConfig, "build", classmethod(lambda cls, *args, **kwargs: config))
    monkeypatch.setattr(sway_setup.Orchestrator, "for_system", classmethod(lambda cls, *args, **kwargs: orchestrator))

    with caplog.at_level(logging.ERROR):
        code = sway_setup.main(["--non-interactive", "--user", CURRENT_USER, "--output", str(tmp_path)])

    assert code == 1
    assert "Could not write run report" in caplog.text


def test_json_log_formatter():
    record = logging.LogRecord("sway_setup", logging.INFO, __file__, 1, "hello %s", ("world",), None)
    payload = sway_setup._JSONLogFormatter().format(record)
    assert '"message": "hello world"' in payload
    assert '"level": "INFO"' in payload
