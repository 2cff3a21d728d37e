from dataclasses import replace

import pytest

from query_export.core.config import AppConfig, load_config, override
from query_export.core.errors import ConfigurationInvalid

CONFIG_TOML = """
[database]
host = "db.internal"
user = "exporter"
database = "shop"

[sftp]
host = "sftp.example.com"
user = "drop"
password = "from-file"
remote_dir = "/upload"

[export]
mode = "server"

[csv]
header = false
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML, encoding="utf-8")
    return path


def test_load_from_toml(config_file):
    config = load_config(str(config_file), environ={})

    assert config.database.host == "db.internal"
    assert config.database.port == 3306
    assert config.sftp.password == "from-file"
    assert config.export.mode == "server"
    assert config.csv.header is False
    assert config.csv.delimiter == ","


def test_environment_overrides_file_and_is_coerced(config_file):
    environ = {
        "MYSQL_PORT": "3307",
        "SFTP_PASSWORD": "from-env",
        "SFTP_DISABLE_HOST_KEY_CHECKING": "yes",
        "CSV_INCLUDE_HEADER": "true",
        "SFTP_KNOWN_HOSTS": "",
        "OUTPUT_DIR": "/data/out",
    }
    config = load_config(str(config_file), environ=environ)

    assert config.database.port == 3307
    assert config.sftp.password == "from-env"
    assert config.sftp.disable_host_key_checking is True
    assert config.sftp.known_hosts is None
    assert config.csv.header is True
    assert config.export.local_dir == "/data/out"


def test_environment_only():
    config = load_config(None, environ={"MYSQL_USER": "u", "SFTP_HOST": "h"})
    assert config.database.user == "u"
    assert config.sftp.host == "h"


def test_invalid_boolean_is_a_configuration_error():
    with pytest.raises(ConfigurationInvalid, match="disable_host_key_checking"):
        load_config(None, environ={"SFTP_DISABLE_HOST_KEY_CHECKING": "maybe"})


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationInvalid, match="does not exist"):
        load_config(str(tmp_path / "nope.toml"), environ={})


def test_malformed_toml(tmp_path):
    path = tmp_path / "broken.toml"
    path.write_text("[database]\nhost = \"db.internal\n", encoding="utf-8")
    with pytest.raises(ConfigurationInvalid, match="Failed to parse"):
        load_config(str(path), environ={})


def test_unknown_key_is_rejected():
    with pytest.raises(ConfigurationInvalid, match=r"Unknown keys in \[sftp\]: hostname"):
        AppConfig.from_dict({"sftp": {"hostname": "x"}})


def test_validate_collects_every_problem():
    with pytest.raises(ConfigurationInvalid) as excinfo:
        AppConfig().validate()

    problems = excinfo.value.problems
    assert "MYSQL_USER is required" in problems
    assert "MYSQL_DATABASE is required" in problems
    assert "SFTP_HOST is required" in problems
    assert "SFTP_USER is required" in problems
    assert "Either SFTP_PASSWORD or SFTP_KEY_FILE is required" in problems


def test_validate_checks_files_and_choices(config, tmp_path):
    broken = replace(
        config,
        sftp=replace(config.sftp, key_file=str(tmp_path / "missing_key"), transport="scp"),
        export=replace(config.export, mode="stream", delivery_retries=-1),
    )
    problems = broken.problems()

    assert any("key file does not exist" in p for p in problems)
    assert any("Unknown SFTP transport" in p for p in problems)
    assert any("Unknown export mode" in p for p in problems)
    assert any("delivery_retries" in p for p in problems)


def test_valid_config_passes(config):
    assert config.validate() is config


def test_override_ignores_unset_values(config):
    assert override(config, "export", mode=None) is config

    changed = override(config, "export", mode="server", local_dir=None)
    assert changed.export.mode == "server"
    assert changed.export.local_dir == config.export.local_dir
    assert config.export.mode == "client"


def test_password_not_in_repr(config):
    assert "secret" not in repr(config)
