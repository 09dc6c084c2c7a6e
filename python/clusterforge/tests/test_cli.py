"""Unit tests for the command-line entry points."""

from __future__ import annotations

import pytest
import yaml

from clusterforge.cli import bootstrap as bootstrap_cli
from clusterforge.cli.bootstrap import read_cluster_spec
from clusterforge.errors import BootstrapConfigError

from conftest import make_raw_config


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "bootstrap.yaml"
    path.write_text(yaml.safe_dump(make_raw_config(outputDir=str(tmp_path / "out"))))
    return str(path)


def test_read_cluster_spec(config_file):
    spec = read_cluster_spec(config_file)
    assert spec.name == "mgmt"
    assert len(spec.derived_vm_names()) == 3


def test_read_missing_file(tmp_path):
    with pytest.raises(BootstrapConfigError, match="cannot read"):
        read_cluster_spec(str(tmp_path / "missing.yaml"))


def test_read_invalid_yaml(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("management_cluster: [unclosed\n")
    with pytest.raises(BootstrapConfigError, match="not valid YAML"):
        read_cluster_spec(str(path))


def test_main_exits_1_on_invalid_config(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("")
    assert bootstrap_cli.main(["--config", str(path)]) == 1


def test_main_exits_1_when_pipeline_fails(config_file, monkeypatch):
    async def failing(spec, logger):
        raise RuntimeError("provider unreachable")

    monkeypatch.setattr(bootstrap_cli, "_bootstrap", failing)
    assert bootstrap_cli.main(["--config", config_file]) == 1
