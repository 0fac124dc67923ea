import os
import sys
import ctypes
import logging

logger = logging.getLogger(__name__)

MACHINE_ENVIRONMENT_KEY = r"SYSTEM\CurrentControlSet\Control\Session Manager\Environment"
HWND_BROADCAST = 0xFFFF
WM_SETTINGCHANGE = 0x001A
SMTO_ABORTIFHUNG = 0x0002


class ProcessEnvironment:
    """Environment variables of the current process only."""

    scope = "Process"

    def get(self, name):
        return os.environ.get(name)

    def set(self, name, value):
        os.environ[name] = value

    def remove(self, name):
        os.environ.pop(name, None)


class MachineEnvironment(ProcessEnvironment):
    """
    Machine-wide environment variables stored under HKLM. Every change is
    mirrored into the current process and announced to running programs
    with WM_SETTINGCHANGE so new shells see it without a logoff.
    """

    scope = "Machine"

    def get(self, name):
        import winreg
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, MACHINE_ENVIRONMENT_KEY) as key:
                value, _ = winreg.QueryValueEx(key, name)
                return value
        except FileNotFoundError:
            return None

    def set(self, name, value):
        import winreg
        with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, MACHINE_ENVIRONMENT_KEY, 0, winreg.KEY_SET_VALUE) as key:
            winreg.SetValueEx(key, name, 0, winreg.REG_EXPAND_SZ if "%" in value else winreg.REG_SZ, value)
        super().set(name, value)
        self._broadcast()

    def remove(self, name):
        import winreg
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, MACHINE_ENVIRONMENT_KEY, 0, winreg.KEY_SET_VALUE) as key:
                winreg.DeleteValue(key, name)
        except FileNotFoundError:
            logger.debug(f"Machine variable '{name}' was not set.")
        super().remove(name)
        self._broadcast()

    def _broadcast(self):
        result = ctypes.c_ulong()
        ctypes.windll.user32.SendMessageTimeoutW(
            HWND_BROADCAST, WM_SETTINGCHANGE, 0, "Environment",
            SMTO_ABORTIFHUNG, 5000, ctypes.byref(result)
        )


def get_environment_store(scope="Machine"):
    """
    Returns the store for the requested scope. Machine scope needs the
    Windows registry; elsewhere the process environment is used.
    """
    if scope == "Machine" and sys.platform == "win32":
        return MachineEnvironment()
    if scope == "Machine":
        logger.warning(f"Machine environment scope is only available on Windows (found {sys.platform}). Using process scope.")
    return ProcessEnvironment()


def set_environment_variables(store, variables):
    """
    Creates or overwrites each variable in the store.

    Args:
        store (ProcessEnvironment): Where to write.
        variables (dict[str, str]): Variable names mapped to their values.
    """
    for name, value in variables.items():
        logger.info(f"Setting {store.scope} environment variable {name}={value}")
        store.set(name, value)


def remove_environment_variables(store, names):
    """Deletes each variable from the store. Variables that do not exist are tolerated."""
    for name in names:
        if store.get(name) is None:
            logger.info(f"{store.scope} environment variable {name} is not set.")
        else:
            logger.info(f"Removing {store.scope} environment variable {name}")
        store.remove(name)
