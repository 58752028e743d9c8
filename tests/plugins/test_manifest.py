"""Tests for plugin manifest models."""

import pytest
from pydantic import ValidationError

from tests.conftest import make_manifest
from warden.plugins.manifest import (
    CodeType,
    ConfigProperty,
    ConfigSchema,
    HookName,
    PluginManifest,
    PluginPermissions,
    StoragePermission,
)


def test_manifest_defaults():
    """Test manifest default values."""
    m = PluginManifest(id="hello", name="Hello")
    assert m.version == "0.0.0"
    assert m.main == "main.py"
    assert m.code_type == CodeType.SCRIPT
    assert m.dependencies == {}
    assert m.permissions is None
    assert m.hooks == frozenset()
    assert m.exports == frozenset()
    assert m.config_schema is None
    assert m.signature is None


def test_manifest_accepts_wire_aliases():
    """Test camelCase wire names map to Python fields."""
    m = make_manifest(
        "weather",
        version="1.2.0",
        codeType="bytecode",
        hooks=["onLoad", "onConfigChange"],
        configSchema={"properties": {"units": {"type": "string", "default": "metric"}}},
    )
    assert m.code_type == CodeType.BYTECODE
    assert m.hooks == {HookName.ON_LOAD, HookName.ON_CONFIG_CHANGE}
    assert m.config_schema is not None
    assert m.config_schema.defaults() == {"units": "metric"}


def test_manifest_accepts_field_names():
    """Test populate_by_name lets Python names be used too."""
    m = PluginManifest(id="x", name="X", code_type=CodeType.BYTECODE)
    assert m.code_type == CodeType.BYTECODE


def test_manifest_rejects_unknown_hook():
    """Test hooks are limited to the lifecycle callbacks."""
    with pytest.raises(ValidationError):
        make_manifest("bad", hooks=["onExplode"])


def test_manifest_rejects_empty_id():
    with pytest.raises(ValidationError):
        PluginManifest(id="", name="Nameless")


def test_manifest_rejects_blank_version():
    with pytest.raises(ValidationError):
        make_manifest("blank", version="   ")


@pytest.mark.parametrize("plugin_id", ["../../etc", "a/b", "..", "Hello", "-dash", "a..b"])
def test_manifest_rejects_unsafe_id(plugin_id):
    """Test ids that could leave a URL segment or directory are refused."""
    with pytest.raises(ValidationError, match="invalid plugin id"):
        PluginManifest(id=plugin_id, name="x")


@pytest.mark.parametrize("plugin_id", ["hello", "com.example.weather", "my_plugin-2"])
def test_manifest_accepts_plain_ids(plugin_id):
    assert PluginManifest(id=plugin_id, name="x").id == plugin_id


@pytest.mark.parametrize("version", ["banana", "1", "1.2", "1.2.x", "v1.2.3"])
def test_manifest_rejects_non_semver_version(version):
    with pytest.raises(ValidationError, match="MAJOR.MINOR.PATCH"):
        make_manifest("hello", version=version)


@pytest.mark.parametrize("version", ["0.1.0", "2.0.0-beta.1", "1.0.0+build.7", " 1.2.3 "])
def test_manifest_accepts_semver_version(version):
    assert make_manifest("hello", version=version).version == version.strip()


def test_manifest_is_immutable():
    """Test manifests can't be changed after creation."""
    m = make_manifest("frozen")
    with pytest.raises(ValidationError):
        m.version = "9.9.9"


def test_declares_hook():
    m = make_manifest("hooks", hooks=["onLoad"])
    assert m.declares_hook(HookName.ON_LOAD)
    assert m.declares_hook("onLoad")
    assert not m.declares_hook(HookName.ON_UNLOAD)


def test_storage_limit():
    """Test storage cap falls back to the runtime default."""
    assert make_manifest("a").storage_limit(1024) == 1024

    declared = make_manifest("b", permissions={"storage": {"local": True, "size": 64}})
    assert declared.storage_limit(1024) == 64

    unsized = make_manifest("c", permissions={"storage": {"local": True}})
    assert unsized.storage_limit(1024) == 1024


def test_permissions_parsing():
    """Test network/filesystem accept a flag or a list."""
    p = PluginPermissions(network=["example.com"], filesystem=True, system=["emit"], ui=True)
    assert p.network == ["example.com"]
    assert p.filesystem is True
    assert p.system == ["emit"]
    assert p.plugins == []
    assert p.storage is None

    assert StoragePermission().local is False


def test_storage_size_must_not_be_negative():
    with pytest.raises(ValidationError):
        StoragePermission(local=True, size=-1)


class TestConfigSchema:
    """Test plugin configuration schema validation."""

    @pytest.fixture
    def schema(self) -> ConfigSchema:
        return ConfigSchema(
            properties={
                "units": ConfigProperty(
                    type="string", default="metric", enum=["metric", "imperial"]
                ),
                "refresh": ConfigProperty(type="integer", required=True),
                "verbose": ConfigProperty(type="boolean"),
                "ratio": ConfigProperty(type="number"),
            }
        )

    def test_defaults(self, schema):
        assert schema.defaults() == {"units": "metric"}

    def test_valid_config(self, schema):
        assert schema.validate_config({"refresh": 30, "verbose": True, "ratio": 0.5}) == []

    def test_missing_required(self, schema):
        problems = schema.validate_config({})
        assert problems == ["'refresh' is required"]

    def test_wrong_type(self, schema):
        problems = schema.validate_config({"refresh": "soon"})
        assert problems == ["'refresh' must be of type integer"]

    def test_bool_is_not_a_number(self, schema):
        problems = schema.validate_config({"refresh": 1, "ratio": True})
        assert problems == ["'ratio' must be of type number"]

    def test_enum(self, schema):
        problems = schema.validate_config({"refresh": 1, "units": "kelvin"})
        assert problems == ["'units' must be one of ['metric', 'imperial']"]
