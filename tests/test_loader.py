"""Tests for configuration loading and variable resolution."""

import os
import textwrap

import pytest

from stratum.config.loader import (
    load_configuration,
    load_var_file,
    parse_configuration,
    parse_var_assignments,
    resolve_variables,
)
from stratum.errors import ConfigError
from stratum.models.config import Configuration

from conftest import load

VARIABLES = """
variable:
  region:
    type: string
    default: us-east-1
  count:
    type: number
    default: 1
  public:
    type: bool
    default: false
  key:
    type: string
"""


class TestParseConfiguration:
    def test_resources_keep_declaration_order(self) -> None:
        config = load(
            """
            resource:
              test_server:
                b:
                  zone: z1
              test_network:
                a:
                  zone: z1
                c:
                  zone: z2
            """
        )
        assert config.addresses == ["test_server.b", "test_network.a", "test_network.c"]

    def test_meta_arguments_are_not_attributes(self) -> None:
        config = load(
            """
            resource:
              test_network:
                a:
                  zone: z1
              test_server:
                b:
                  zone: z1
                  depends_on: [test_network.a]
                  lifecycle:
                    immutable: [size]
                    prevent_destroy: true
            """
        )
        res = config.resource("test_server.b")
        assert res is not None
        assert res.attributes == {"zone": "z1"}
        assert res.depends_on == ["test_network.a"]
        assert res.lifecycle.immutable == ["size"]
        assert res.lifecycle.prevent_destroy is True

    def test_output_shorthand(self) -> None:
        config = load(
            """
            output:
              ip: ${test_server.b.private_ip}
              dns:
                value: ${test_server.b.public_dns}
                description: DNS name
            """
        )
        assert config.outputs["ip"].value == "${test_server.b.private_ip}"
        assert config.outputs["dns"].description == "DNS name"

    @pytest.mark.parametrize(
        "text",
        [
            "resource: [1, 2]",
            "unknown_block: {}",
            "variable:\n  x:\n    type: float\n",
            "resource:\n  test_server:\n    bad name!:\n      zone: z1\n",
            "resource: {\n",
        ],
    )
    def test_invalid_documents_raise_config_error(self, text: str) -> None:
        with pytest.raises(ConfigError):
            parse_configuration(text)

    def test_yaml_round_trip(self) -> None:
        config = load(VARIABLES)
        again = Configuration.from_yaml(config.to_yaml())
        assert again == config


class TestResolveVariables:
    def test_defaults(self) -> None:
        config = load(VARIABLES)
        values = resolve_variables(config, overrides={"key": "k1"}, environ={})
        assert values == {"region": "us-east-1", "count": 1, "public": False, "key": "k1"}

    def test_precedence(self) -> None:
        config = load(VARIABLES)
        values = resolve_variables(
            config,
            file_values=[{"region": "eu-west-1", "key": "from-file"}, {"count": 2}],
            environ={"STRATUM_VAR_region": "ap-south-1", "STRATUM_VAR_count": "3"},
            overrides={"count": "4"},
        )
        assert values["region"] == "ap-south-1"
        assert values["count"] == 4
        assert values["key"] == "from-file"

    def test_text_overrides_are_typed(self) -> None:
        config = load(VARIABLES)
        values = resolve_variables(
            config, overrides={"key": "123", "public": "true", "count": "2.5"}, environ={}
        )
        assert values["key"] == "123"
        assert values["public"] is True
        assert values["count"] == 2.5

    def test_missing_required(self) -> None:
        with pytest.raises(ConfigError, match="key"):
            resolve_variables(load(VARIABLES), environ={})

    def test_undeclared_override(self) -> None:
        with pytest.raises(ConfigError, match="undeclared"):
            resolve_variables(load(VARIABLES), overrides={"key": "k", "nope": "1"}, environ={})

    def test_wrong_type(self) -> None:
        with pytest.raises(ConfigError, match="count"):
            resolve_variables(
                load(VARIABLES), overrides={"key": "k", "count": "many"}, environ={}
            )


def test_parse_var_assignments() -> None:
    assert parse_var_assignments(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
    with pytest.raises(ConfigError):
        parse_var_assignments(["novalue"])


@pytest.mark.asyncio
async def test_load_files(tmp_path) -> None:
    config_path = tmp_path / "main.yaml"
    config_path.write_text(textwrap.dedent(VARIABLES))
    var_path = tmp_path / "prod.yaml"
    var_path.write_text("key: prod-key\n")

    config = await load_configuration(str(config_path))
    assert set(config.variables) == {"region", "count", "public", "key"}
    assert await load_var_file(str(var_path)) == {"key": "prod-key"}


@pytest.mark.asyncio
async def test_missing_files_raise_config_error(tmp_path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        await load_configuration(os.path.join(tmp_path, "absent.yaml"))
    with pytest.raises(ConfigError, match="not found"):
        await load_var_file(os.path.join(tmp_path, "absent.yaml"))
