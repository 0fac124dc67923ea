import os
import sys
import json
import time
import ctypes
import logging
import platform
import subprocess
from pathlib import Path
from datetime import datetime

import psutil

# --- Exit Codes ---
# 0 success, 60000-68999 toolkit, 69000-69999 deployment script, 70000-79999 extensions
EXIT_CODE_SUCCESS = 0
EXIT_CODE_FATAL = 60001
EXIT_CODE_TOOLKIT_LOAD_FAILED = 60008
EXIT_CODE_DEFERRED = 60012
REBOOT_EXIT_CODES = (3010, 1641)

DEPLOYMENT_TYPES = ("Install", "Uninstall", "Repair")
DEPLOY_MODES = ("Interactive", "Silent", "NonInteractive")

# Seconds an unanswered prompt stays on screen before it is dismissed
DEFAULT_PROMPT_TIMEOUT = 6900
PROGRESS_DISPLAY_SECONDS = 3
TIMEOUT_RESPONSE = "Timeout"
CLOSE_PROGRAMS_BUTTON = "Close Programs"
DEFER_BUTTON = "Defer"

LOG_FORMAT = '%(asctime)s - %(process)d - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


class DeploymentExit(Exception):
    """Ends the deployment early with a specific, expected exit code."""

    def __init__(self, exit_code, message=None):
        super().__init__(message or f"Deployment ended with exit code {exit_code}")
        self.exit_code = exit_code


# --- Logging Setup ---

def setup_logging(log_dir, log_name, disable_logging=False):
    """
    Configures logging to both a file and the console. The file receives
    DEBUG messages, the console INFO and higher. Handlers from a previous
    call are replaced so a second session starts with a clean slate.

    Args:
        log_dir (Path): Directory for the log file.
        log_name (str): Log file name without extension.
        disable_logging (bool): Only log to the console.

    Returns:
        Path: The log file path, or None when file logging is disabled.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG) # Set the lowest level to capture all messages
    for handler in [h for h in root_logger.handlers if getattr(h, "_deploy_handler", False)]:
        root_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setLevel(logging.INFO)
    stream_handler.setFormatter(formatter)
    stream_handler._deploy_handler = True
    root_logger.addHandler(stream_handler)

    if disable_logging:
        return None

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{log_name}.log"
    file_handler = logging.FileHandler(log_path, mode='w', encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    file_handler._deploy_handler = True
    root_logger.addHandler(file_handler)
    return log_path


# --- System Helpers ---

def is_admin():
    """
    Checks if the script is running with Administrator privileges.

    Returns:
        bool: True if running as admin, False otherwise.
    """
    try:
        return bool(ctypes.windll.shell32.IsUserAnAdmin())
    except Exception as e:
        logger.error(f"Failed to check for admin rights: {e}", exc_info=True)
        return False


def get_free_space_gb(drive=None):
    """
    Returns the free space of a drive in GB. Defaults to the system drive.
    """
    if drive is None:
        drive = os.environ.get("SystemDrive", "C:") + os.sep
    disk_usage = psutil.disk_usage(str(drive))
    free_space_gb = disk_usage.free / (1024**3)
    logger.debug(f"Checking disk space on '{drive}': {free_space_gb:.2f} GB free.")
    return free_space_gb


def find_file(directory, file_name):
    """
    Searches a directory tree for a file by name (case-insensitive).

    Returns:
        Path: The first match in sorted order, or None.
    """
    directory = Path(directory)
    if not directory.is_dir():
        logger.warning(f"Search directory does not exist: {directory}")
        return None
    matches = sorted(p for p in directory.rglob("*") if p.is_file() and p.name.lower() == file_name.lower())
    if not matches:
        return None
    if len(matches) > 1:
        logger.debug(f"Found {len(matches)} copies of {file_name}, using {matches[0]}")
    return matches[0]


def _normalize_process_name(name):
    name = (name or "").lower()
    return name[:-4] if name.endswith(".exe") else name


def find_processes(process_names):
    """
    Lists running processes whose executable name matches one of the given
    names. Names may be given with or without the .exe extension.

    Args:
        process_names (list[str]): Executable names to look for.

    Returns:
        list[psutil.Process]: The matching processes.
    """
    wanted = {_normalize_process_name(n) for n in process_names}
    if not wanted:
        return []
    return [proc for proc in psutil.process_iter(['name'])
            if _normalize_process_name(proc.info['name']) in wanted]


def close_processes(processes, timeout=10):
    """
    Terminates processes and kills any that are still alive after the timeout.
    """
    for proc in processes:
        logger.info(f"Stopping process '{proc.info['name']}' (PID {proc.pid})")
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            logger.debug(f"Process {proc.pid} already exited.")
    _, alive = psutil.wait_procs(processes, timeout=timeout)
    for proc in alive:
        logger.warning(f"Process {proc.pid} did not exit within {timeout} seconds. Killing it.")
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            logger.debug(f"Process {proc.pid} already exited.")


def wait_for_msi_to_finish(timeout=600):
    """
    Waits for the Windows Installer service (msiexec.exe) to finish.
    This prevents conflicts when running multiple MSI installers back-to-back.
    """
    logger.info("Checking if another MSI installation is in progress...")
    start_time = time.time()
    while time.time() - start_time < timeout:
        if not find_processes(["msiexec.exe"]):
            logger.info("Windows Installer (msiexec.exe) is not running. Safe to proceed.")
            return
        logger.info("Another installation is still in progress. Waiting...")
        time.sleep(10)
    raise TimeoutError("The previous MSI installation did not finish within the timeout period.")


def _load_dialogs():
    # pyautogui needs a desktop session; services and SCCM system context have none
    import pyautogui
    return pyautogui


class DeferHistory:
    """
    Remaining deferrals per application, persisted as JSON so the count
    survives between deployment attempts.
    """

    def __init__(self, path=None):
        self.path = Path(path) if path else None
        self._data = None

    def _load(self):
        if self._data is not None:
            return self._data
        self._data = {}
        if self.path and self.path.exists():
            try:
                with open(self.path, 'r', encoding='utf-8') as f:
                    self._data = json.load(f)
            except (ValueError, OSError) as e:
                logger.warning(f"Defer history at {self.path} is unreadable and will be reset: {e}")
            if not isinstance(self._data, dict):
                logger.warning(f"Defer history at {self.path} is not a JSON object and will be reset.")
                self._data = {}
        return self._data

    def _save(self):
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(self._data, f, indent=2)

    def remaining(self, app, defer_times):
        return self._load().get(app, defer_times)

    def record_deferral(self, app, defer_times):
        left = max(self.remaining(app, defer_times) - 1, 0)
        self._data[app] = left
        self._save()
        return left

    def reset(self, app):
        if self._load().pop(app, None) is not None:
            self._save()


class DeploymentToolkit:
    """
    The deployment session: user interaction, process execution, and the
    exit path every run goes through exactly once.

    Dialogs are only shown in Interactive mode. Silent and NonInteractive
    runs log what would have been shown and act without asking.
    """

    def __init__(self, install_name, install_title, deployment_type="Install",
                 deploy_mode="Interactive", allow_reboot_pass_thru=False,
                 terminal_server_mode=False, defer_history=None):
        if deployment_type not in DEPLOYMENT_TYPES:
            raise ValueError(f"Unsupported deployment type: {deployment_type}")
        if deploy_mode not in DEPLOY_MODES:
            raise ValueError(f"Unsupported deploy mode: {deploy_mode}")
        self.install_name = install_name
        self.install_title = install_title
        self.deployment_type = deployment_type
        self.deploy_mode = deploy_mode
        self.allow_reboot_pass_thru = allow_reboot_pass_thru
        self.terminal_server_mode = terminal_server_mode
        self.defer_history = defer_history or DeferHistory()
        self.reboot_required = False
        self._terminal_server_install_mode = False
        self._start_time = None

    @property
    def is_interactive(self):
        return self.deploy_mode == "Interactive"

    # --- Session ---

    def open_session(self):
        self._start_time = datetime.now()
        logger.info("=" * 20 + f" [{self.install_name}] {self.deployment_type} started " + "=" * 20)
        logger.info(f"Deploy mode: {self.deploy_mode}, reboot pass-through: {self.allow_reboot_pass_thru}, terminal server mode: {self.terminal_server_mode}")
        logger.debug(f"Host: {platform.node()}, OS: {platform.platform()}, Python: {platform.python_version()}")
        if platform.system() != "Windows":
            logger.warning(f"This deployment is designed for Windows, but found {platform.system()}.")
        elif not is_admin():
            logger.warning("Not running with Administrator privileges. Machine-wide changes will likely fail.")
        if self.terminal_server_mode:
            self._change_user_mode("/install")
            self._terminal_server_install_mode = True

    def _change_user_mode(self, mode):
        logger.info(f"Switching terminal server to 'change user {mode}' mode.")
        process = subprocess.run(["change.exe", "user", mode], check=True, capture_output=True, text=True)
        if process.stdout:
            logger.debug(process.stdout.strip())

    def exit_script(self, exit_code):
        """
        Tears the session down and works out the final exit code. A pending
        reboot turns success into 3010; reboot codes become 0 unless the
        caller allowed reboot pass-through.

        Returns:
            int: The exit code for the operating system.
        """
        if self._terminal_server_install_mode:
            try:
                self._change_user_mode("/execute")
            except (subprocess.CalledProcessError, OSError) as e:
                logger.error(f"Failed to restore terminal server execute mode: {e}", exc_info=True)
            self._terminal_server_install_mode = False

        if exit_code == EXIT_CODE_SUCCESS and self.reboot_required:
            exit_code = 3010
        if exit_code in REBOOT_EXIT_CODES and not self.allow_reboot_pass_thru:
            logger.info(f"A reboot is required (exit code {exit_code}), but reboot pass-through is not allowed. Returning exit code 0.")
            exit_code = EXIT_CODE_SUCCESS

        if exit_code == EXIT_CODE_SUCCESS or exit_code in REBOOT_EXIT_CODES:
            try:
                self.defer_history.reset(self.install_name)
            except OSError as e:
                logger.error(f"Failed to reset the defer history: {e}", exc_info=True)
            logger.info(f"[{self.install_name}] {self.deployment_type} completed with exit code [{exit_code}].")
        elif exit_code == EXIT_CODE_DEFERRED:
            logger.warning(f"[{self.install_name}] {self.deployment_type} was deferred by the user.")
        else:
            logger.error(f"[{self.install_name}] {self.deployment_type} failed with exit code [{exit_code}].")

        if self._start_time:
            logger.info(f"Duration: {datetime.now() - self._start_time}")
        logger.info("=" * 20 + f" [{self.install_name}] {self.deployment_type} finished " + "=" * 20)
        for handler in logging.getLogger().handlers:
            handler.flush()
        return exit_code

    # --- User Interaction ---

    def _message_box(self, kind, text, title, **kwargs):
        try:
            dialogs = _load_dialogs()
            return getattr(dialogs, kind)(text=text, title=title, **kwargs)
        except Exception as e:
            logger.warning(f"Unable to display dialog '{title}': {e}")
            return None

    def show_installation_welcome(self, close_apps=(), allow_defer=False, defer_times=0, close_apps_countdown=None):
        """
        Closes applications that would block the deployment. In Interactive
        mode the user may defer (while deferrals remain) or close the
        programs; when the countdown runs out they are closed anyway.

        Args:
            close_apps (list[str]): Executable names to close.
            allow_defer (bool): Offer a Defer button.
            defer_times (int): Number of deferrals allowed in total.
            close_apps_countdown (int): Seconds before the programs are closed.

        Raises:
            DeploymentExit: With EXIT_CODE_DEFERRED when the user defers.
        """
        running = find_processes(close_apps)
        if not running:
            logger.info(f"None of the applications to close are running: {', '.join(close_apps)}")
            return

        running_names = sorted({proc.info['name'] for proc in running})
        logger.info(f"Applications blocking the {self.deployment_type.lower()}: {', '.join(running_names)}")

        if not self.is_interactive:
            logger.info(f"Deploy mode is {self.deploy_mode}. Closing applications without prompting.")
            close_processes(running)
            return

        remaining = self.defer_history.remaining(self.install_name, defer_times) if allow_defer else 0
        buttons = [CLOSE_PROGRAMS_BUTTON]
        text = (f"The following programs must be closed before {self.install_title} can be "
                f"{'installed' if self.deployment_type == 'Install' else 'removed'}:\n\n"
                + "\n".join(running_names)
                + "\n\nPlease save your work and continue.")
        if close_apps_countdown:
            text += f"\nThe programs will be closed automatically in {close_apps_countdown} seconds."
        if remaining > 0:
            buttons.append(DEFER_BUTTON)
            text += f"\n\nYou can choose to defer {remaining} more time(s)."

        choice = self._message_box(
            "confirm", text, self.install_title, buttons=buttons,
            timeout=close_apps_countdown * 1000 if close_apps_countdown else None,
        )
        logger.info(f"Close applications prompt returned: {choice}")

        if choice == DEFER_BUTTON:
            left = self.defer_history.record_deferral(self.install_name, defer_times)
            logger.warning(f"User deferred the {self.deployment_type.lower()}. Deferrals remaining: {left}")
            raise DeploymentExit(EXIT_CODE_DEFERRED, "Deployment deferred by the user.")
        if choice == TIMEOUT_RESPONSE or choice is None:
            logger.info("Close applications countdown elapsed. Closing applications.")

        close_processes(find_processes(close_apps))

    def show_installation_progress(self, status_message=None):
        status_message = status_message or f"{self.deployment_type} in progress. Please wait..."
        logger.info(f"Progress: {status_message}")
        if self.is_interactive:
            self._message_box("alert", status_message, self.install_title,
                              timeout=PROGRESS_DISPLAY_SECONDS * 1000)

    def show_installation_prompt(self, message, title=None, buttons=("OK",), timeout=DEFAULT_PROMPT_TIMEOUT):
        """
        Shows a message with buttons and returns the one clicked. Returns
        None in non-interactive modes or when no dialog could be shown.
        """
        logger.info(f"Prompt: {message}")
        if not self.is_interactive:
            return None
        return self._message_box("confirm", message, title or self.install_title,
                                 buttons=list(buttons), timeout=timeout * 1000 if timeout else None)

    def show_dialog_box(self, text, title=None, icon="Stop"):
        logger.info(f"Dialog [{icon}]: {text}")
        if not self.is_interactive:
            return None
        return self._message_box("alert", text, title or self.install_title)

    # --- Process Execution ---

    def execute_process(self, path, parameters="", ignore_exit_codes=False, timeout=None):
        """
        Runs an installer and waits for it. MSI packages are run through
        msiexec once any running Windows Installer session has finished.

        Args:
            path (Path): The installer executable or .msi package.
            parameters (str): The command-line arguments, passed verbatim.
            ignore_exit_codes (bool): Only log a failing exit code.
            timeout (int): Seconds to wait for the process, None for no limit.

        Returns:
            int: The process exit code.

        Raises:
            subprocess.CalledProcessError: If the installer fails and exit codes are not ignored.
        """
        path = Path(path)
        if path.suffix.lower() == ".msi":
            wait_for_msi_to_finish()
            command = subprocess.list2cmdline(["msiexec.exe", "/i", str(path)])
        else:
            command = subprocess.list2cmdline([str(path)])
        if parameters:
            command = f"{command} {parameters}"

        logger.info(f"Executing command: {command}")
        process = subprocess.run(command, capture_output=True, text=True, shell=False, timeout=timeout)
        logger.debug(f"Installer Return Code: {process.returncode}")
        if process.stdout:
            logger.debug(f"Installer Stdout:\n--- START ---\n{process.stdout.strip()}\n--- END ---")
        if process.stderr:
            logger.warning(f"Installer Stderr:\n--- START ---\n{process.stderr.strip()}\n--- END ---")

        exit_code = process.returncode
        if exit_code in REBOOT_EXIT_CODES:
            logger.warning(f"{path.name} completed with exit code {exit_code}. A reboot is required.")
            self.reboot_required = True
        elif exit_code != 0:
            if ignore_exit_codes:
                logger.warning(f"{path.name} returned exit code {exit_code}. Ignoring as requested.")
            else:
                logger.error(f"Command failed for '{path}' with exit code {exit_code}")
                raise subprocess.CalledProcessError(exit_code, command, process.stdout, process.stderr)
        else:
            logger.info(f"{path.name} completed successfully.")
        return exit_code
