"""Line-oriented editing of the tunnel ingress rule list.

The tunnel config keeps one rule per exposed VM directly under the
``ingress:`` marker::

    ingress:
      - hostname: web-1.sandbox.example.com
        service: http://10.0.0.5:3000
      - service: http_status:404

Edits touch only the two lines of a rule so operator-maintained content
(comments, the catch-all rule, other keys) survives untouched.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from vm_relay.errors import TunnelConfigError, ValidationError

INGRESS_MARKER = "ingress:"

_UNSAFE_LABEL_CHARS = re.compile(r"[^a-z0-9-]")
_HOSTNAME_PREFIX = "- hostname:"
_SERVICE_PREFIX = "service:"


@dataclass(slots=True, frozen=True)
class IngressEntry:
    hostname: str
    service: str

    def render(self, indent: int = 2) -> list[str]:
        pad = " " * indent
        return [f"{pad}- hostname: {self.hostname}", f"{pad}  service: {self.service}"]


def sanitize_vm_name(vm_name: str) -> str:
    """Lower-case the name and map anything outside ``[a-z0-9-]`` to ``-``."""

    label = _UNSAFE_LABEL_CHARS.sub("-", vm_name.strip().lower())
    if not label.strip("-"):
        raise ValidationError(f"VM name {vm_name!r} yields an empty subdomain label")
    return label


def build_subdomain(vm_name: str, base_domain: str) -> str:
    return f"{sanitize_vm_name(vm_name)}.{base_domain.strip().strip('.')}"


def service_url(ip: str, port: int) -> str:
    return f"http://{ip}:{port}"


def list_ingress_hostnames(content: str) -> list[str]:
    return [
        _hostname_of(line)
        for line in content.splitlines()
        if line.strip().startswith(_HOSTNAME_PREFIX)
    ]


def insert_ingress_entry(content: str, entry: IngressEntry) -> str:
    """Place ``entry`` right after the ingress marker, replacing a stale rule for its hostname."""

    cleaned, _ = remove_ingress_entry(content, entry.hostname)
    lines = cleaned.splitlines()
    marker_index = _find_marker(lines)
    if marker_index is None:
        raise TunnelConfigError(f"Tunnel config has no '{INGRESS_MARKER}' section")
    indent = _item_indent(lines, marker_index)
    updated = [*lines[: marker_index + 1], *entry.render(indent), *lines[marker_index + 1 :]]
    return _join(updated, trailing_newline=content.endswith("\n"))


def remove_ingress_entry(content: str, hostname: str) -> tuple[str, bool]:
    """Drop the rule for exactly ``hostname`` and its bound service line.

    Returns the new content and whether a rule was removed.
    """

    lines = content.splitlines()
    kept: list[str] = []
    removed = False
    index = 0
    while index < len(lines):
        line = lines[index]
        stripped = line.strip()
        if stripped.startswith(_HOSTNAME_PREFIX) and _hostname_of(line) == hostname:
            removed = True
            index += 1
            if index < len(lines) and lines[index].strip().startswith(_SERVICE_PREFIX):
                index += 1
            continue
        kept.append(line)
        index += 1
    if not removed:
        return content, False
    return _join(kept, trailing_newline=content.endswith("\n")), True


def _hostname_of(line: str) -> str:
    return line.strip()[len(_HOSTNAME_PREFIX) :].strip()


def _find_marker(lines: list[str]) -> int | None:
    for index, line in enumerate(lines):
        if line.strip() == INGRESS_MARKER:
            return index
    return None


def _item_indent(lines: list[str], marker_index: int) -> int:
    """Indent of the existing rule items, or two past the marker when there are none."""

    marker_indent = _indent_of(lines[marker_index])
    for line in lines[marker_index + 1 :]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("-") and _indent_of(line) >= marker_indent:
            return _indent_of(line)
        break
    return marker_indent + 2


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _join(lines: list[str], *, trailing_newline: bool) -> str:
    text = "\n".join(lines)
    return f"{text}\n" if trailing_newline else text
