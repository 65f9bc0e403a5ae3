"""Utility module for resolving application paths in both script and frozen modes."""
import sys
from pathlib import Path

# Flag to enable diagnostic output (set to True for debugging path issues)
_DEBUG_PATHS = False

CONFIG_FILE_NAME = "config.yaml"
# Default folders next to config.yaml: overlay images named <category>.<style>.png,
# and per-game images that win over downloads
OVERLAYS_DIR_NAME = "overlays by category"
OVERRIDES_DIR_NAME = "games"


def get_app_dir() -> Path:
    """Get the application's base directory.

    For frozen apps (PyInstaller), this is the directory containing the executable.
    For scripts, this is the script's directory.
    """
    if getattr(sys, 'frozen', False):
        app_dir = Path(sys.executable).parent
        if _DEBUG_PATHS:
            print(f"[app_paths] Frozen mode - app directory: {app_dir}")
        return app_dir

    app_dir = Path(__file__).parent
    if _DEBUG_PATHS:
        print(f"[app_paths] Script mode - app directory: {app_dir}")
    return app_dir


def get_config_path() -> Path:
    return get_app_dir() / CONFIG_FILE_NAME

