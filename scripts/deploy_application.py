"""
Deploys Ansys Electromagnetics: install, uninstall or repair.

Called by SCCM/Intune or by an operator, for example:

    deploy-application -DeploymentType Install -DeployMode Silent
    deploy-application -DeploymentType Uninstall -DeployMode NonInteractive -AllowRebootPassThru

Exit codes: 0 success, 60001 unhandled error, 60008 toolkit failed to load,
60012 deferred by the user, 69004 insufficient disk space. 3010/1641 are only
passed through with -AllowRebootPassThru.
"""
import sys
import time
import shutil
import logging
import argparse
import traceback
from pathlib import Path

import deploy_config
from deploy_environment import get_environment_store, set_environment_variables, remove_environment_variables
from deploy_toolkit import (
    DEPLOY_MODES,
    DEPLOYMENT_TYPES,
    EXIT_CODE_FATAL,
    EXIT_CODE_SUCCESS,
    EXIT_CODE_TOOLKIT_LOAD_FAILED,
    DeferHistory,
    DeploymentExit,
    DeploymentToolkit,
    find_file,
    get_free_space_gb,
    setup_logging,
)

EXIT_CODE_INSUFFICIENT_DISK_SPACE = 69004

logger = logging.getLogger(__name__)


# --- Filesystem Cleanup ---

def remove_path(path):
    """
    Deletes a file or directory tree. A path that does not exist is not an
    error; a path that cannot be removed is logged and left behind.
    """
    path = Path(path)
    if not path.exists():
        logger.info(f"Nothing to remove at {path}")
        return
    try:
        if path.is_dir():
            logger.info(f"Removing directory: {path}")
            shutil.rmtree(path)
        else:
            logger.info(f"Removing file: {path}")
            path.unlink()
    except OSError as e:
        logger.error(f"Failed to remove {path}: {e}", exc_info=True)


def remove_start_menu_entries(config):
    start_menu_dir = Path(deploy_config.resolve_placeholders(config["start_menu_dir"]))
    pattern = config["start_menu_pattern"]
    if not start_menu_dir.is_dir():
        logger.info(f"Start menu folder {start_menu_dir} does not exist.")
        return
    matches = sorted(start_menu_dir.glob(pattern))
    if not matches:
        logger.info(f"No start menu entries match '{pattern}' in {start_menu_dir}")
    for entry in matches:
        remove_path(entry)


# --- Deployment Phases ---

def install(toolkit, config, env_store):
    # Pre-Installation
    toolkit.show_installation_welcome(
        close_apps=config["close_apps"],
        allow_defer=config["allow_defer"],
        defer_times=config["defer_times"],
        close_apps_countdown=config["close_apps_countdown"],
    )
    toolkit.show_installation_progress()
    remove_start_menu_entries(config)

    min_free_space_gb = config["min_free_space_gb"]
    free_space_gb = get_free_space_gb()
    if free_space_gb < min_free_space_gb:
        message = (f"{toolkit.install_title} requires at least {min_free_space_gb} GB of free space "
                   f"on the system drive. Only {free_space_gb:.2f} GB is available.\n\n"
                   "Please free up disk space and try again.")
        logger.critical(f"Insufficient Disk Space: Requires at least {min_free_space_gb} GB, but only {free_space_gb:.2f} GB is available.")
        toolkit.show_installation_prompt(message, buttons=["OK"])
        raise DeploymentExit(EXIT_CODE_INSUFFICIENT_DISK_SPACE, "Insufficient disk space for installation.")

    # Installation
    files_dir = Path(deploy_config.resolve_placeholders(config["files_dir"]))
    installer_path = find_file(files_dir, config["installer_name"])
    if installer_path:
        installer_args = deploy_config.resolve_placeholders(config["installer_args"], files_dir=files_dir)
        # Exit code is not checked; vendor setup failures only show in its own log
        toolkit.execute_process(installer_path, installer_args, ignore_exit_codes=True)
        time.sleep(config["post_install_delay_seconds"])
    else:
        logger.warning(f"Installer '{config['installer_name']}' not found under {files_dir}. Skipping vendor setup.")

    # Post-Installation
    set_environment_variables(env_store, config["environment_variables"])
    if not config["use_default_msi"]:
        toolkit.show_installation_prompt(config["completion_message"], buttons=["OK"])


def uninstall(toolkit, config, env_store):
    # Pre-Uninstallation
    toolkit.show_installation_welcome(
        close_apps=config["close_apps"],
        close_apps_countdown=config["close_apps_countdown"],
    )
    toolkit.show_installation_progress(f"Uninstalling {toolkit.install_title}. Please wait...")

    # Uninstallation
    remove_path(deploy_config.resolve_placeholders(config["install_dir"]))
    time.sleep(config["post_uninstall_delay_seconds"])
    remove_start_menu_entries(config)

    # Post-Uninstallation
    remove_environment_variables(env_store, config["environment_variables"])


def repair(toolkit, config, env_store):
    logger.info("Pre-Repair: no actions.")
    logger.info("Repair: no actions.")
    logger.info("Post-Repair: no actions.")


PHASES = {
    "Install": install,
    "Uninstall": uninstall,
    "Repair": repair,
}


def run_deployment(toolkit, config, env_store):
    """Runs the phase for the toolkit's deployment type and returns its exit code."""
    phase = PHASES[toolkit.deployment_type]
    logger.info(f"Running the {toolkit.deployment_type} phase for {toolkit.install_title}")
    phase(toolkit, config, env_store)
    return EXIT_CODE_SUCCESS


# --- Main Execution Logic ---

def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Deploy Ansys Electromagnetics.")
    parser.add_argument("-DeploymentType", "--deployment-type", dest="deployment_type",
                        choices=DEPLOYMENT_TYPES, default="Install")
    parser.add_argument("-DeployMode", "--deploy-mode", dest="deploy_mode",
                        choices=DEPLOY_MODES, default="Interactive")
    parser.add_argument("-AllowRebootPassThru", "--allow-reboot-pass-thru", dest="allow_reboot_pass_thru",
                        action="store_true", help="Return 3010/1641 instead of 0 when a reboot is required.")
    parser.add_argument("-TerminalServerMode", "--terminal-server-mode", dest="terminal_server_mode",
                        action="store_true", help="Switch an RDS host to install mode for the deployment.")
    parser.add_argument("-DisableLogging", "--disable-logging", dest="disable_logging",
                        action="store_true", help="Do not write a log file.")
    parser.add_argument("--config", type=Path, default=deploy_config.CONFIG_FILE,
                        help="Path to deploy_config.json.")
    return parser.parse_args(argv)


def main(argv=None):
    """
    Loads the toolkit, runs one deployment phase, and always finishes
    through the toolkit's exit path.

    Returns:
        int: The exit code for the operating system.
    """
    args = parse_args(argv)

    try:
        config = deploy_config.load_deploy_config(args.config)
        if config is None:
            raise ValueError(f"Deployment configuration {args.config} could not be loaded.")
        name = deploy_config.install_name(config)
        log_dir = Path(deploy_config.resolve_placeholders(config["log_dir"]))
        log_path = setup_logging(log_dir, f"{name}_{args.deployment_type}", args.disable_logging)
        # Persisted even with -DisableLogging so deferrals stay bounded
        defer_history = DeferHistory(log_dir / f"{name}_DeferHistory.json")
        toolkit = DeploymentToolkit(
            install_name=name,
            install_title=f"{config['app_vendor']} {config['app_name']} {config['app_version']}",
            deployment_type=args.deployment_type,
            deploy_mode=args.deploy_mode,
            allow_reboot_pass_thru=args.allow_reboot_pass_thru,
            terminal_server_mode=args.terminal_server_mode,
            defer_history=defer_history,
        )
        toolkit.open_session()
        env_store = get_environment_store(config["environment_scope"])
    except Exception as e:
        logger.critical(f"Failed to load the deployment toolkit: {e}", exc_info=True)
        return EXIT_CODE_TOOLKIT_LOAD_FAILED

    if log_path:
        logger.info(f"Logging to {log_path}")

    exit_code = EXIT_CODE_SUCCESS
    try:
        exit_code = run_deployment(toolkit, config, env_store)
    except DeploymentExit as e:
        logger.warning(f"{e} (exit code {e.exit_code})")
        exit_code = e.exit_code
    except Exception as e:
        exit_code = EXIT_CODE_FATAL
        logger.error(f"Unhandled error during {args.deployment_type}: {e}\n{traceback.format_exc()}")
        toolkit.show_dialog_box(
            f"An error occurred during the {args.deployment_type.lower()} of {toolkit.install_title}:\n\n{e}",
            icon="Stop",
        )
    return toolkit.exit_script(exit_code)


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
