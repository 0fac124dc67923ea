# tests/conftest.py
import copy
import logging
import os
import platform
from unittest.mock import MagicMock

import pytest

import deploy_config
from deploy_environment import ProcessEnvironment
from deploy_toolkit import DeploymentToolkit

ENV_NAMES = list(deploy_config.DEFAULT_CONFIG["environment_variables"])

# On non-Windows hosts platform.platform() shells out to `uname -p` on first use;
# prime its cache so tests that patch subprocess.run only see the code's calls.
platform.platform()


@pytest.fixture(autouse=True)
def clean_environment():
    """Make sure the product variables neither leak into nor out of a test."""
    saved = {name: os.environ.pop(name) for name in ENV_NAMES if name in os.environ}
    yield
    for name in ENV_NAMES:
        os.environ.pop(name, None)
    os.environ.update(saved)


@pytest.fixture(autouse=True)
def reset_deploy_logging():
    """Drop the handlers setup_logging attaches to the root logger."""
    yield
    root_logger = logging.getLogger()
    for handler in [h for h in root_logger.handlers if getattr(h, "_deploy_handler", False)]:
        root_logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def deploy_dirs(tmp_path):
    """A staging area, install dir, start menu and log dir under tmp_path."""
    dirs = {
        "files": tmp_path / "Files",
        "install": tmp_path / "Program Files" / "AnsysEM" / "v231",
        "start_menu": tmp_path / "Start Menu" / "Programs",
        "logs": tmp_path / "Logs",
    }
    dirs["files"].mkdir(parents=True)
    dirs["start_menu"].mkdir(parents=True)
    return dirs


@pytest.fixture
def config(deploy_dirs):
    cfg = copy.deepcopy(deploy_config.DEFAULT_CONFIG)
    cfg.update({
        "files_dir": str(deploy_dirs["files"]),
        "install_dir": str(deploy_dirs["install"]),
        "start_menu_dir": str(deploy_dirs["start_menu"]),
        "log_dir": str(deploy_dirs["logs"]),
        "environment_scope": "Process",
        "post_install_delay_seconds": 0,
        "post_uninstall_delay_seconds": 0,
    })
    return cfg


@pytest.fixture
def stage_installer(deploy_dirs):
    """Places a dummy vendor setup.exe in a nested folder of the staging area."""
    installer = deploy_dirs["files"] / "AnsysEM" / "setup.exe"
    installer.parent.mkdir(parents=True)
    installer.write_bytes(b"MZ")
    return installer


@pytest.fixture
def mock_toolkit():
    """Toolkit double recording every call the driver makes."""
    toolkit = MagicMock(spec=DeploymentToolkit)
    toolkit.install_title = "Ansys Electromagnetics 2023"
    toolkit.install_name = "Ansys_Electromagnetics_2023_x64_EN_01"
    toolkit.deployment_type = "Install"
    toolkit.execute_process.return_value = 0
    return toolkit


@pytest.fixture
def env_store():
    return ProcessEnvironment()
