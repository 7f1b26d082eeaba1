"""Tests for ingress rule editing and tunnel config file handling."""

from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest
from filelock import FileLock

from vm_relay.errors import TunnelConfigError, ValidationError
from vm_relay.tunnel.config_file import TunnelConfigFile
from vm_relay.tunnel.ingress import (
    IngressEntry,
    build_subdomain,
    insert_ingress_entry,
    list_ingress_hostnames,
    remove_ingress_entry,
    sanitize_vm_name,
)

pytestmark = [
    allure.epic("Tunnel Exposure"),
    allure.feature("Ingress Config"),
]

CONFIG = """\
tunnel: relay
ingress:
  - hostname: web-1.sandbox.test
    service: http://10.0.0.5:3000
  - hostname: web-10.sandbox.test
    service: http://10.0.0.6:3000
  - service: http_status:404
"""


class TestSubdomains:
    def test_sanitizes_unsafe_characters(self):
        assert sanitize_vm_name("My_VM.01") == "my-vm-01"

    def test_builds_subdomain_under_base_domain(self):
        assert build_subdomain("Web 1", "sandbox.test.") == "web-1.sandbox.test"

    def test_rejects_name_without_usable_characters(self):
        with pytest.raises(ValidationError):
            sanitize_vm_name("__")


class TestIngressEditing:
    def test_insert_places_rule_after_marker(self):
        entry = IngressEntry(hostname="api.sandbox.test", service="http://10.0.0.7:3000")

        updated = insert_ingress_entry(CONFIG, entry)

        lines = updated.splitlines()
        assert lines[1] == "ingress:"
        assert lines[2] == "  - hostname: api.sandbox.test"
        assert lines[3] == "    service: http://10.0.0.7:3000"
        assert lines[-1] == "  - service: http_status:404"
        assert updated.endswith("\n")

    def test_insert_replaces_stale_rule_for_same_hostname(self):
        entry = IngressEntry(hostname="web-1.sandbox.test", service="http://10.0.0.8:3000")

        updated = insert_ingress_entry(CONFIG, entry)

        assert list_ingress_hostnames(updated) == ["web-1.sandbox.test", "web-10.sandbox.test"]
        assert "http://10.0.0.5:3000" not in updated
        assert "http://10.0.0.8:3000" in updated

    def test_insert_follows_column_zero_rule_indent(self):
        flush = (
            "tunnel: relay\n"
            "ingress:\n"
            "# managed rules\n"
            "- hostname: web-1.sandbox.test\n"
            "  service: http://10.0.0.5:3000\n"
            "- service: http_status:404\n"
        )
        entry = IngressEntry(hostname="api.sandbox.test", service="http://10.0.0.7:3000")

        updated = insert_ingress_entry(flush, entry)

        lines = updated.splitlines()
        assert lines[2:4] == [
            "- hostname: api.sandbox.test",
            "  service: http://10.0.0.7:3000",
        ]
        assert all(line.startswith("- ") for line in lines if "hostname:" in line)
        assert all(line.startswith("  service:") for line in lines if "service: http:" in line)
        assert list_ingress_hostnames(updated) == ["api.sandbox.test", "web-1.sandbox.test"]

    def test_insert_into_empty_section_indents_under_marker(self):
        updated = insert_ingress_entry(
            "tunnel: relay\ningress:\n",
            IngressEntry(hostname="api.sandbox.test", service="http://10.0.0.7:3000"),
        )

        assert updated.splitlines()[2:] == [
            "  - hostname: api.sandbox.test",
            "    service: http://10.0.0.7:3000",
        ]

    def test_insert_without_marker_fails(self):
        with pytest.raises(TunnelConfigError, match="ingress"):
            insert_ingress_entry("tunnel: relay\n", IngressEntry("a.test", "http://1.2.3.4:1"))

    def test_remove_matches_exact_hostname_only(self):
        updated, removed = remove_ingress_entry(CONFIG, "web-1.sandbox.test")

        assert removed is True
        assert list_ingress_hostnames(updated) == ["web-10.sandbox.test"]
        assert "http://10.0.0.5:3000" not in updated
        assert "http://10.0.0.6:3000" in updated
        assert "http_status:404" in updated

    def test_remove_missing_hostname_leaves_content(self):
        updated, removed = remove_ingress_entry(CONFIG, "web.sandbox.test")

        assert removed is False
        assert updated == CONFIG


def test_config_file_add_and_remove_entry(tunnel_config: Path) -> None:
    config_file = TunnelConfigFile(tunnel_config)

    config_file.add_entry(IngressEntry("web-1.sandbox.test", "http://10.0.0.5:3000"))

    assert list_ingress_hostnames(config_file.read()) == [
        "web-1.sandbox.test",
        "existing.sandbox.test",
    ]
    assert config_file.remove_entry("web-1.sandbox.test") is True
    assert config_file.remove_entry("web-1.sandbox.test") is False
    assert list_ingress_hostnames(config_file.read()) == ["existing.sandbox.test"]


def test_config_file_keeps_file_mode(tunnel_config: Path) -> None:
    tunnel_config.chmod(0o640)

    TunnelConfigFile(tunnel_config).add_entry(IngressEntry("a.sandbox.test", "http://1.1.1.1:80"))

    assert tunnel_config.stat().st_mode & 0o777 == 0o640
    assert not list(tunnel_config.parent.glob("*.tmp"))


def test_config_file_lock_timeout_is_reported(tunnel_config: Path) -> None:
    lock_path = tunnel_config.with_name("config.yml.lock")
    config_file = TunnelConfigFile(tunnel_config, lock_timeout_seconds=0.1)
    holder = FileLock(str(lock_path))
    acquired = threading.Event()
    release = threading.Event()

    def _hold() -> None:
        with holder:
            acquired.set()
            release.wait(timeout=5)

    thread = threading.Thread(target=_hold)
    thread.start()
    acquired.wait(timeout=5)
    try:
        with pytest.raises(TunnelConfigError, match="Timed out"):
            config_file.remove_entry("existing.sandbox.test")
    finally:
        release.set()
        thread.join(timeout=5)


def test_concurrent_edits_keep_every_rule(tunnel_config: Path) -> None:
    names = [f"vm-{index}" for index in range(6)]

    def _add(name: str) -> None:
        TunnelConfigFile(tunnel_config).add_entry(
            IngressEntry(f"{name}.sandbox.test", "http://10.0.0.1:3000"),
        )

    threads = [threading.Thread(target=_add, args=(name,)) for name in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    hostnames = set(list_ingress_hostnames(tunnel_config.read_text("utf-8")))
    assert hostnames == {f"{name}.sandbox.test" for name in names} | {"existing.sandbox.test"}
