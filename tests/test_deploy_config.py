# tests/test_deploy_config.py
import json

import pytest

from deploy_config import DEFAULT_CONFIG, install_name, load_deploy_config, resolve_placeholders


def test_missing_config_uses_defaults(tmp_path):
    config = load_deploy_config(tmp_path / "absent.json")
    assert config == DEFAULT_CONFIG
    assert config is not DEFAULT_CONFIG


def test_defaults_are_not_mutated_by_callers(tmp_path):
    config = load_deploy_config(tmp_path / "absent.json")
    config["environment_variables"]["ANSYSLMD_LICENSE_FILE"] = "changed"
    assert DEFAULT_CONFIG["environment_variables"]["ANSYSLMD_LICENSE_FILE"] == "1055@ansys-license"


def test_overrides_are_merged(tmp_path):
    path = tmp_path / "deploy_config.json"
    path.write_text(json.dumps({"min_free_space_gb": 40, "close_apps": ["ansysedt", "ansysedtsv"]}))

    config = load_deploy_config(path)

    assert config["min_free_space_gb"] == 40
    assert config["close_apps"] == ["ansysedt", "ansysedtsv"]
    assert config["installer_name"] == "setup.exe"


def test_unknown_keys_are_dropped(tmp_path, caplog):
    path = tmp_path / "deploy_config.json"
    path.write_text(json.dumps({"colour": "blue"}))

    config = load_deploy_config(path)

    assert "colour" not in config
    assert "Ignoring unknown configuration keys: colour" in caplog.text


@pytest.mark.parametrize("content", ["{broken", "[1, 2, 3]"])
def test_invalid_config_returns_none(tmp_path, content):
    path = tmp_path / "deploy_config.json"
    path.write_text(content)
    assert load_deploy_config(path) is None


def test_shipped_config_matches_known_keys():
    from deploy_config import CONFIG_FILE
    with open(CONFIG_FILE, encoding="utf-8") as f:
        shipped = json.load(f)
    assert set(shipped) <= set(DEFAULT_CONFIG)
    assert load_deploy_config(CONFIG_FILE)["environment_variables"] == DEFAULT_CONFIG["environment_variables"]


def test_resolve_placeholders(tmp_path, monkeypatch):
    monkeypatch.setenv("DEPLOY_TEST_ROOT", "/opt/deploy")
    value = resolve_placeholders("{FILES_DIR}/resp.txt {RUNTIME_PATH} $DEPLOY_TEST_ROOT",
                                 files_dir=tmp_path / "Files", runtime_path=tmp_path)
    assert value == f"{tmp_path / 'Files'}/resp.txt {tmp_path} /opt/deploy"


def test_install_name():
    assert install_name(DEFAULT_CONFIG) == "Ansys_Electromagnetics_2023_x64_EN_01"
    assert install_name(dict(DEFAULT_CONFIG, app_arch="", app_name="EM Suite")) == "Ansys_EMSuite_2023_EN_01"
