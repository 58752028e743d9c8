"""Tests for capability descriptors."""

import pytest

from warden.plugins.capabilities import (
    CapabilityKind,
    FilesystemAccess,
    NetworkAccess,
    PluginAccess,
    StorageAccess,
    SystemAccess,
    UIAccess,
    normalize_path,
    parse_capability,
)


def test_permission_strings():
    """Test each variant renders its dotted permission."""
    assert NetworkAccess("https://example.com").permission == "network.fetch"
    assert FilesystemAccess("/tmp/a", "write").permission == "filesystem.write"
    assert SystemAccess("emit").permission == "system.emit"
    assert PluginAccess("peer").permission == "plugins.call"
    assert UIAccess().permission == "ui.render"
    assert StorageAccess().permission == "storage.local"


def test_resources():
    assert NetworkAccess("https://example.com/x").resource == "https://example.com/x"
    assert PluginAccess("peer").resource == "peer"
    assert SystemAccess("emit").resource is None


def test_filesystem_path_is_normalized():
    """Test dot segments are collapsed on construction."""
    assert FilesystemAccess("/data/plugins/../secrets").path == "/data/secrets"
    assert FilesystemAccess("/data//plugins/./x").path == "/data/plugins/x"


def test_normalize_path():
    assert normalize_path("") == ""
    assert normalize_path("a\\b\\..\\c") == "a/c"


def test_capabilities_are_hashable():
    cache = {NetworkAccess("https://a.com"): True}
    assert cache[NetworkAccess("https://a.com")] is True


class TestParseCapability:
    """Test parsing of dotted permission strings."""

    def test_network(self):
        assert parse_capability("network.fetch", "https://x.io") == NetworkAccess("https://x.io")

    def test_filesystem(self):
        cap = parse_capability("filesystem.write", "/tmp/out")
        assert cap == FilesystemAccess("/tmp/out", "write")

    def test_system(self):
        assert parse_capability("system.emit") == SystemAccess("emit")

    def test_plugins(self):
        assert parse_capability("plugins.call", "peer") == PluginAccess("peer")

    def test_ui_and_storage_defaults(self):
        assert parse_capability("ui") == UIAccess()
        assert parse_capability("storage") == StorageAccess()

    def test_unknown_category(self):
        with pytest.raises(ValueError, match="Unknown permission category"):
            parse_capability("kernel.load")

    def test_kind(self):
        assert parse_capability("network.fetch", "x").kind == CapabilityKind.NETWORK
