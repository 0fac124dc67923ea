import os
import sys
import json
import copy
import logging
from pathlib import Path

# --- Global Constants and Paths ---

if getattr(sys, 'frozen', False):
    # Running as a bundled executable
    RUNTIME_PATH = Path(sys.executable).parent
    BUNDLE_PATH = Path(sys._MEIPASS)
    CONFIG_FILE = BUNDLE_PATH / "deploy_config.json"
else:
    # Running as a standard Python script
    RUNTIME_PATH = Path(__file__).parent.parent # Go up one level from /scripts
    CONFIG_FILE = RUNTIME_PATH / "deploy_config.json"

# Vendor payload (installer + response file) is staged here
FILES_DIR = RUNTIME_PATH / "Files"

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "app_vendor": "Ansys",
    "app_name": "Electromagnetics",
    "app_version": "2023",
    "app_arch": "x64",
    "app_lang": "EN",
    "app_revision": "01",
    "log_dir": "%WINDIR%\\Logs\\Software",

    "close_apps": ["ansysedt"],
    "allow_defer": True,
    "defer_times": 3,
    "close_apps_countdown": 90,

    "min_free_space_gb": 30,

    "files_dir": "{FILES_DIR}",
    "installer_name": "setup.exe",
    "installer_args": "-silent -options \"{FILES_DIR}\\AnsysEM_ResponseFile.txt\"",
    "post_install_delay_seconds": 30,
    "post_uninstall_delay_seconds": 10,
    "use_default_msi": False,
    "completion_message": "Ansys Electromagnetics 2023 R1 has been installed. Please restart any open command prompts to pick up the new environment variables.",

    "install_dir": "%ProgramFiles%\\AnsysEM\\v231",
    "start_menu_dir": "%ALLUSERSPROFILE%\\Microsoft\\Windows\\Start Menu\\Programs",
    "start_menu_pattern": "Ansys EM Suite 2023 R1*",

    "environment_scope": "Machine",
    "environment_variables": {
        "ANSYSEM_ROOT231": "C:\\Program Files\\AnsysEM\\v231\\Win64",
        "ANSYSLMD_LICENSE_FILE": "1055@ansys-license",
        "AWP_ROOT231": "C:\\Program Files\\AnsysEM\\v231",
        "ANSYSEM_PY_CLIENT_ROOT231": "C:\\Program Files\\AnsysEM\\v231\\Win64",
    },
}


def resolve_placeholders(value, files_dir=FILES_DIR, runtime_path=RUNTIME_PATH):
    """
    Replaces {FILES_DIR} and {RUNTIME_PATH} placeholders and expands
    environment variables like %ProgramFiles% in a config string.

    Args:
        value (str): The raw string from the configuration.
        files_dir (Path): The staging directory holding the vendor payload.
        runtime_path (Path): The directory the deployment runs from.

    Returns:
        str: The resolved string.
    """
    value = value.replace("{FILES_DIR}", str(files_dir))
    value = value.replace("{RUNTIME_PATH}", str(runtime_path))
    return os.path.expandvars(value)


def load_deploy_config(config_path=CONFIG_FILE):
    """
    Loads the deployment configuration from a JSON file and merges it over
    the built-in defaults. A missing file is not an error: the defaults
    describe the standard package.

    Args:
        config_path (Path): The path to deploy_config.json.

    Returns:
        dict: The merged configuration, or None if the file is invalid.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = Path(config_path)
    if not config_path.exists():
        logger.info(f"No configuration file at {config_path}. Using built-in defaults.")
        return config

    logger.info(f"Loading deployment configuration from {config_path}")
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            overrides = json.load(f)
    except json.JSONDecodeError as e:
        logger.critical(f"Error decoding JSON from {config_path}: {e}")
        return None
    except OSError as e:
        logger.critical(f"An unexpected error occurred while reading the configuration file: {e}", exc_info=True)
        return None

    if not isinstance(overrides, dict):
        logger.critical(f"Configuration in {config_path} must be a JSON object, got {type(overrides).__name__}.")
        return None

    unknown = sorted(set(overrides) - set(DEFAULT_CONFIG))
    if unknown:
        logger.warning(f"Ignoring unknown configuration keys: {', '.join(unknown)}")
    for key in unknown:
        overrides.pop(key)

    config.update(overrides)
    logger.info("Deployment configuration loaded successfully.")
    return config


def install_name(config):
    """Builds the Vendor_Name_Version_Arch_Lang_Rev name used for logs and defer history."""
    parts = [config["app_vendor"], config["app_name"], config["app_version"],
             config["app_arch"], config["app_lang"], config["app_revision"]]
    return "_".join(str(p) for p in parts if p).replace(" ", "")
