import logging
import os
import re
import sqlite3
from typing import Dict, Optional

from db.models import MobileConfig

logger = logging.getLogger(__name__)

CURRENT_DB_VERSION = 2

DB_FILE_NAME = "db.sqlite3"

def initialize_database(app_data_dir: str) -> sqlite3.Connection:
    os.makedirs(app_data_dir, exist_ok=True)
    sqlite_path = os.path.join(app_data_dir, DB_FILE_NAME)
    logger.debug("Database file path: %s", sqlite_path)

    db = sqlite3.connect(sqlite_path)
    db.row_factory = sqlite3.Row

    existing_version = db.execute("PRAGMA user_version").fetchone()[0]
    upgrade_database_if_needed(db, existing_version)

    return db

def upgrade_database_if_needed(db: sqlite3.Connection, existing_version: int):
    logger.debug("Existing database version: %s", existing_version)

    if existing_version < CURRENT_DB_VERSION:
        if existing_version <= 0:
            logger.info("Migrate database version 1...")
            db.execute("PRAGMA journal_mode=WAL")
            db.execute("PRAGMA user_version=1")
            db.executescript("""
                CREATE TABLE config_data (
                    id INTEGER PRIMARY KEY,
                    playlists_dir TEXT,
                    audacious_playlists_dir TEXT,
                    mobile_dir TEXT,
                    device_id TEXT,
                    halt_if_newer BOOLEAN
                );
                INSERT INTO config_data (playlists_dir, audacious_playlists_dir, mobile_dir, device_id, halt_if_newer)
                VALUES ('', '', '', '', 1);
            """)
            db.commit()

        if existing_version <= 1:
            logger.info("Migrate database version 2...")
            db.execute("PRAGMA user_version=2")
            db.executescript("""
                ALTER TABLE config_data ADD COLUMN dev_script_dir TEXT DEFAULT '';
                ALTER TABLE config_data ADD COLUMN installed_script_dir TEXT DEFAULT '';
            """)
            db.commit()

# -------------------------------
# CONFIG
# -------------------------------
def get_config(db: sqlite3.Connection) -> MobileConfig:
    row = db.execute("""
        SELECT playlists_dir,
               audacious_playlists_dir,
               mobile_dir,
               device_id,
               dev_script_dir,
               installed_script_dir,
               halt_if_newer
        FROM config_data
        LIMIT 1
    """).fetchone()
    return MobileConfig.from_row(row)


def set_config(db: sqlite3.Connection, config: MobileConfig):
    db.execute("""
        UPDATE config_data
        SET playlists_dir = ?,
            audacious_playlists_dir = ?,
            mobile_dir = ?,
            device_id = ?,
            dev_script_dir = ?,
            installed_script_dir = ?,
            halt_if_newer = ?
        WHERE 1
    """, (
        config.playlists_dir,
        config.audacious_playlists_dir,
        config.mobile_dir,
        config.device_id,
        config.dev_script_dir,
        config.installed_script_dir,
        config.halt_if_newer
    ))
    db.commit()

# -------------------------------
# musiclib.conf
# -------------------------------
_CONF_LINE_RE = re.compile(r'^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)=(.*)$')
_VAR_RE = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)')

_ENV_DEFAULTS = {
    "HOME": os.path.expanduser("~"),
    "XDG_CONFIG_HOME": os.path.join(os.path.expanduser("~"), ".config"),
    "XDG_DATA_HOME": os.path.join(os.path.expanduser("~"), ".local", "share"),
}

_CONF_KEYS = {
    "PLAYLISTS_DIR": "playlists_dir",
    "AUDACIOUS_PLAYLISTS_DIR": "audacious_playlists_dir",
    "MOBILE_DIR": "mobile_dir",
    "DEVICE_ID": "device_id",
}


def default_conf_path() -> Optional[str]:
    """XDG location first, then the legacy ~/musiclib/config one."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    candidates = [
        os.path.join(config_home, "musiclib", "musiclib.conf"),
        os.path.join(os.path.expanduser("~"), "musiclib", "config", "musiclib.conf"),
    ]
    override = os.environ.get("MUSICLIB_CONFIG_DIR")
    if override:
        candidates.insert(0, os.path.join(override, "musiclib.conf"))
    for path in candidates:
        if os.path.isfile(path):
            return path
    return None


_QUOTED_RE = re.compile(r'^(["\'])(.*?)\1')


def _unquote(value: str) -> str:
    value = value.strip()
    m = _QUOTED_RE.match(value)
    if m:
        return m.group(2)
    # drop a trailing comment on unquoted values
    return value.split(" #", 1)[0].strip()


def parse_musiclib_conf(text: str) -> Dict[str, str]:
    """
    Read KEY="value" assignments from a shell-style config. ${VAR} / $VAR
    expand against keys read earlier in the file, then the environment;
    a leading ~ expands to the home directory.
    """
    values: Dict[str, str] = {}

    def expand(m: re.Match) -> str:
        name = m.group(1) or m.group(2)
        if name in values:
            return values[name]
        return os.environ.get(name) or _ENV_DEFAULTS.get(name, "")

    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        m = _CONF_LINE_RE.match(line)
        if not m:
            continue
        key, raw_value = m.group(1), m.group(2)
        quoted_single = raw_value.strip().startswith("'")
        value = _unquote(raw_value)
        if not quoted_single:
            value = _VAR_RE.sub(expand, value)
        values[key] = os.path.expanduser(value)
    return values


def import_musiclib_conf(db: sqlite3.Connection, path: str) -> MobileConfig:
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        values = parse_musiclib_conf(f.read())

    config = get_config(db)
    for conf_key, attr in _CONF_KEYS.items():
        if values.get(conf_key):
            setattr(config, attr, values[conf_key])
    set_config(db, config)
    logger.info("Imported settings from %s", path)
    return config


def is_config_seeded(db: sqlite3.Connection) -> bool:
    row = db.execute("SELECT playlists_dir FROM config_data LIMIT 1").fetchone()
    return bool(row and row["playlists_dir"])
