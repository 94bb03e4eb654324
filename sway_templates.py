"""Payload templates written by :mod:`sway_setup`.

Everything in this module is inert data: desktop entries, shell snippets,
compositor configuration and rule files.  The reconciliation logic only cares
about *where* these payloads go and whether they are already present, never
about their syntax.
"""
from __future__ import annotations

import pathlib
from typing import Sequence

from sway_system import ConfigBlock

# Session-script blocks written by the old shell installer carried no
# sentinel; this is what they looked for.
LEGACY_XDG_MARKER = "XDG_RUNTIME_DIR"

ENVIRONMENT_VARIABLES = (
    ("XDG_SESSION_TYPE", "wayland"),
    ("XDG_CURRENT_DESKTOP", "sway"),
    ("MOZ_ENABLE_WAYLAND", "1"),
    ("QT_QPA_PLATFORM", "wayland"),
    ("SDL_VIDEODRIVER", "wayland"),
    ("_JAVA_AWT_WM_NONREPARENTING", "1"),
)


def render_desktop_entry(sway_binary: pathlib.Path) -> str:
    return (
        "[Desktop Entry]\n"
        "Name=Sway\n"
        "Comment=An i3-compatible Wayland compositor\n"
        f"Exec={sway_binary}\n"
        f"TryExec={sway_binary}\n"
        "Type=Application\n"
        "DesktopNames=sway\n"
    )


def _posix_xdg_stanza(xdg_runtime_base: pathlib.Path, indent: str = "") -> str:
    lines = [
        'if [ -z "$XDG_RUNTIME_DIR" ]; then',
        f'    export XDG_RUNTIME_DIR="{xdg_runtime_base}/$(id -u)"',
        "fi",
        'if [ ! -d "$XDG_RUNTIME_DIR" ]; then',
        '    mkdir -p "$XDG_RUNTIME_DIR"',
        '    chmod 0700 "$XDG_RUNTIME_DIR"',
        "fi",
    ]
    return "\n".join(indent + line for line in lines) + "\n"


def xsession_block(xdg_runtime_base: pathlib.Path, session_name: str) -> ConfigBlock:
    """Session-wrapper stanza: runtime directory plus the compositor hand-off."""

    payload = (
        _posix_xdg_stanza(xdg_runtime_base)
        + "\n"
        + 'case "$1" in\n'
        + f"    {session_name}|*/{session_name})\n"
        + '        exec "$1"\n'
        + "        ;;\n"
        + "esac\n"
    )
    return ConfigBlock(name="xsession", payload=payload, legacy_markers=(LEGACY_XDG_MARKER,))


def system_profile_block(xdg_runtime_base: pathlib.Path) -> ConfigBlock:
    return ConfigBlock(
        name="xdg-runtime",
        payload=_posix_xdg_stanza(xdg_runtime_base),
        legacy_markers=(LEGACY_XDG_MARKER,),
    )


def environment_block(shell_kind: str, xdg_runtime_base: pathlib.Path) -> ConfigBlock:
    """Wayland environment exports in the dialect of the user's login shell."""

    if shell_kind == "fish":
        lines = [
            "if not set -q XDG_RUNTIME_DIR",
            f"    set -gx XDG_RUNTIME_DIR {xdg_runtime_base}/(id -u)",
            "end",
        ]
        lines.extend(f"set -gx {key} {value}" for key, value in ENVIRONMENT_VARIABLES)
        payload = "\n".join(lines) + "\n"
    else:
        payload = _posix_xdg_stanza(xdg_runtime_base) + "".join(
            f"export {key}={value}\n" for key, value in ENVIRONMENT_VARIABLES
        )
    return ConfigBlock(name=f"environment-{shell_kind}", payload=payload)


def render_sway_base_config(terminal: str = "foot", launcher: str = "wofi --show drun") -> str:
    return (
        "# Sway configuration generated by sway-setup.\n"
        "# See sway(5) for the full reference.\n"
        "set $mod Mod4\n"
        f"set $term {terminal}\n"
        f"set $menu {launcher}\n"
        "\n"
        "bindsym $mod+Return exec $term\n"
        "bindsym $mod+d exec $menu\n"
        "bindsym $mod+Shift+q kill\n"
        "bindsym $mod+Shift+c reload\n"
        "bindsym $mod+Shift+e exec swaynag -t warning -m 'Exit sway?' -B 'Yes' 'swaymsg exit'\n"
        "floating_modifier $mod normal\n"
        "\n"
        "bar {\n"
        "    position top\n"
        "    status_command while date +'%Y-%m-%d %H:%M'; do sleep 30; done\n"
        "}\n"
    )


def sway_input_output_block(resolution: str, keyboard_layouts: Sequence[str], toggle_script: pathlib.Path) -> ConfigBlock:
    layouts = ",".join(keyboard_layouts) or "us"
    payload = (
        "input type:keyboard {\n"
        f"    xkb_layout {layouts}\n"
        "    xkb_options grp:alt_shift_toggle\n"
        "}\n"
        f"output * resolution {resolution}\n"
        f"bindsym $mod+space exec {toggle_script}\n"
    )
    return ConfigBlock(name="input-output", payload=payload)


def render_devd_rules(group: str) -> str:
    return (
        "# Grant the seat group access to input devices as they appear.\n"
        "notify 100 {\n"
        '\tmatch "system"\t\t"DEVFS";\n'
        '\tmatch "subsystem"\t"CDEV";\n'
        '\tmatch "type"\t\t"CREATE";\n'
        '\tmatch "cdev"\t\t"input/event[0-9]+";\n'
        f'\taction "chgrp {group} /dev/$cdev; chmod 0660 /dev/$cdev";\n'
        "};\n"
    )


def devd_block(group: str) -> ConfigBlock:
    return ConfigBlock(name="input-devices", payload=render_devd_rules(group))


def render_toggle_script() -> str:
    return (
        "#!/bin/sh\n"
        "# Cycle the keyboard layout of every keyboard attached to sway.\n"
        'if [ -z "$SWAYSOCK" ]; then\n'
        '    echo "sway is not running" >&2\n'
        "    exit 1\n"
        "fi\n"
        "exec swaymsg input type:keyboard xkb_switch_layout next\n"
    )
