# tests/test_deploy_environment.py
import logging
import os
import sys
from unittest.mock import MagicMock

import pytest

import deploy_environment
from deploy_environment import (
    MachineEnvironment,
    ProcessEnvironment,
    get_environment_store,
    remove_environment_variables,
    set_environment_variables,
)

VARIABLES = {"ANSYSEM_ROOT231": "C:\\Program Files\\AnsysEM\\v231\\Win64", "AWP_ROOT231": "C:\\Program Files\\AnsysEM\\v231"}


@pytest.fixture
def fake_winreg(monkeypatch):
    """A registry double for the Session Manager environment key."""
    values = {}
    winreg = MagicMock()
    winreg.REG_SZ, winreg.REG_EXPAND_SZ = 1, 2

    def query(key, name):
        if name not in values:
            raise FileNotFoundError(name)
        return values[name], winreg.REG_SZ

    def delete(key, name):
        if name not in values:
            raise FileNotFoundError(name)
        del values[name]

    winreg.QueryValueEx.side_effect = query
    winreg.SetValueEx.side_effect = lambda key, name, reserved, kind, value: values.__setitem__(name, value)
    winreg.DeleteValue.side_effect = delete
    monkeypatch.setitem(sys.modules, "winreg", winreg)
    monkeypatch.setattr(deploy_environment.ctypes, "windll", MagicMock(), raising=False)
    return values


def test_process_store_set_and_remove():
    store = ProcessEnvironment()
    set_environment_variables(store, VARIABLES)
    assert os.environ["AWP_ROOT231"] == "C:\\Program Files\\AnsysEM\\v231"

    remove_environment_variables(store, VARIABLES)
    assert "AWP_ROOT231" not in os.environ
    assert "ANSYSEM_ROOT231" not in os.environ


def test_remove_tolerates_missing_variables(caplog):
    caplog.set_level(logging.INFO)
    remove_environment_variables(ProcessEnvironment(), ["ANSYSEM_ROOT231"])
    assert "Process environment variable ANSYSEM_ROOT231 is not set." in caplog.text


def test_set_overwrites_existing_value():
    os.environ["ANSYSEM_ROOT231"] = "D:\\Old"
    set_environment_variables(ProcessEnvironment(), VARIABLES)
    assert os.environ["ANSYSEM_ROOT231"] == VARIABLES["ANSYSEM_ROOT231"]


def test_machine_store_writes_registry_and_process(fake_winreg):
    store = MachineEnvironment()
    set_environment_variables(store, VARIABLES)

    assert fake_winreg == VARIABLES
    assert os.environ["ANSYSEM_ROOT231"] == VARIABLES["ANSYSEM_ROOT231"]
    assert deploy_environment.ctypes.windll.user32.SendMessageTimeoutW.called


def test_machine_store_remove_is_idempotent(fake_winreg):
    store = MachineEnvironment()
    set_environment_variables(store, VARIABLES)

    remove_environment_variables(store, VARIABLES)
    remove_environment_variables(store, VARIABLES)

    assert fake_winreg == {}
    assert store.get("AWP_ROOT231") is None
    assert "AWP_ROOT231" not in os.environ


def test_machine_scope_falls_back_off_windows(monkeypatch):
    monkeypatch.setattr(deploy_environment.sys, "platform", "linux")
    assert type(get_environment_store("Machine")) is ProcessEnvironment
    assert type(get_environment_store("Process")) is ProcessEnvironment


def test_machine_scope_on_windows(monkeypatch):
    monkeypatch.setattr(deploy_environment.sys, "platform", "win32")
    assert isinstance(get_environment_store("Machine"), MachineEnvironment)
