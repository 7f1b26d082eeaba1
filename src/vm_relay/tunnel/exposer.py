"""Expose a VM workload through the tunnel and take it down again."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from vm_relay.errors import VmRelayError
from vm_relay.tunnel.config_file import TunnelConfigFile
from vm_relay.tunnel.ingress import IngressEntry, build_subdomain, service_url
from vm_relay.tunnel.service import TunnelService

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Exposure:
    subdomain: str
    url: str
    service: str
    dns_routed: bool
    reachable: bool


class TunnelExposer:
    def __init__(
        self,
        *,
        config_file: TunnelConfigFile,
        service: TunnelService,
        base_domain: str,
    ) -> None:
        self.config_file = config_file
        self.service = service
        self.base_domain = base_domain

    def subdomain_for(self, vm_name: str) -> str:
        return build_subdomain(vm_name, self.base_domain)

    def expose(self, vm_name: str, ip: str, port: int) -> Exposure:
        """Route ``<vm>.<base domain>`` to ``http://ip:port``.

        Config edit and restart failures propagate. DNS routing and the
        public URL probe are advisory.
        """

        subdomain = self.subdomain_for(vm_name)
        entry = IngressEntry(hostname=subdomain, service=service_url(ip, port))
        self.config_file.add_entry(entry)
        dns_routed = self.service.route_dns(subdomain)
        self.service.restart_and_verify()
        url = f"https://{subdomain}"
        reachable = self.service.probe_url(url)
        logger.info("VM %s exposed at %s", vm_name, url)
        return Exposure(
            subdomain=subdomain,
            url=url,
            service=entry.service,
            dns_routed=dns_routed,
            reachable=reachable,
        )

    def unexpose(self, vm_name: str) -> bool:
        """Best-effort removal of the VM's ingress rule and DNS route.

        Returns ``True`` only when every cleanup step succeeded. The tunnel
        service is restarted even when no rule was found.
        """

        subdomain = self.subdomain_for(vm_name)
        cleaned = True
        try:
            self.config_file.remove_entry(subdomain)
        except VmRelayError as error:
            logger.warning("Failed to remove ingress rule for %s: %s", subdomain, error)
            cleaned = False
        if not self.service.delete_dns_route(subdomain):
            cleaned = False
        try:
            self.service.restart()
        except VmRelayError as error:
            logger.warning("Failed to restart tunnel service after cleanup: %s", error)
            cleaned = False
        return cleaned
