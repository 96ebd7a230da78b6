from __future__ import annotations

from dataclasses import dataclass
import os
import sqlite3

from runner.supervisor import DEV_SCRIPT_DIR, INSTALLED_SCRIPT_DIR


def _data_home() -> str:
    return os.environ.get("XDG_DATA_HOME") or os.path.join(os.path.expanduser("~"), ".local", "share")


def _config_home() -> str:
    return os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")


def default_playlists_dir() -> str:
    return os.path.join(_data_home(), "musiclib", "playlists")


def default_audacious_playlists_dir() -> str:
    return os.path.join(_config_home(), "audacious", "playlists")


@dataclass
class MobileConfig:
    playlists_dir: str
    audacious_playlists_dir: str
    mobile_dir: str
    device_id: str
    dev_script_dir: str
    installed_script_dir: str
    halt_if_newer: bool

    @property
    def script_dirs(self) -> list[str]:
        return [d for d in (self.dev_script_dir, self.installed_script_dir) if d]

    @staticmethod
    def defaults() -> "MobileConfig":
        playlists_dir = default_playlists_dir()
        return MobileConfig(
            playlists_dir=playlists_dir,
            audacious_playlists_dir=default_audacious_playlists_dir(),
            mobile_dir=os.path.join(playlists_dir, "mobile"),
            device_id="",
            dev_script_dir=DEV_SCRIPT_DIR,
            installed_script_dir=INSTALLED_SCRIPT_DIR,
            halt_if_newer=True,
        )

    @staticmethod
    def from_row(row: sqlite3.Row) -> "MobileConfig":
        # empty columns fall back to the XDG defaults
        fallback = MobileConfig.defaults()

        def opt(k: str) -> str:
            value = row[k]
            return value if value else getattr(fallback, k)

        return MobileConfig(
            playlists_dir=opt("playlists_dir"),
            audacious_playlists_dir=opt("audacious_playlists_dir"),
            mobile_dir=opt("mobile_dir"),
            device_id=row["device_id"] or "",
            dev_script_dir=opt("dev_script_dir"),
            installed_script_dir=opt("installed_script_dir"),
            halt_if_newer=bool(row["halt_if_newer"]),
        )
