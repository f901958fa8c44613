"""Guest address discovery for libvirt-managed VMs."""

from __future__ import annotations

import logging

import libvirt

from vmcomm.machine import Machine

log = logging.getLogger(__name__)


class LibvirtMachine(Machine):
    """A machine whose address comes from libvirt's DHCP leases.

    The domain is only looked up, never started or stopped.
    """

    def __init__(
        self,
        name: str,
        uri: str = "qemu:///system",
        domain_prefix: str = "vmt-",
        ssh: dict | None = None,
        **kwargs,
    ) -> None:
        super().__init__(name, **kwargs)
        self._conn = libvirt.open(uri)
        if self._conn is None:
            raise RuntimeError(f"Failed to connect to {uri}")
        self.domain_name = f"{domain_prefix}{name}"
        self.ssh = dict(ssh or {})

    def close(self) -> None:
        """Close the libvirt connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def ssh_info(self) -> dict | None:
        """SSH coordinates of the running domain, or None if not yet known."""
        try:
            dom = self._conn.lookupByName(self.domain_name)
        except libvirt.libvirtError:
            return None

        state, _ = dom.state()
        if state != libvirt.VIR_DOMAIN_RUNNING:
            return None

        ip = self._get_ip(dom)
        if ip is None:
            log.debug("No DHCP lease yet for %s", self.domain_name)
            return None

        info = {
            "host": ip,
            "port": self.ssh.get("port", 22),
            "username": self.ssh.get("username", "root"),
            "password": self.ssh.get("password"),
            "private_key_path": list(self.ssh.get("private_key_path", [])),
            "proxy_command": self.ssh.get("proxy_command"),
            "forward_agent": self.ssh.get("forward_agent", False),
            "forward_env": list(self.ssh.get("forward_env", [])),
            "verify_host_key": self.ssh.get("verify_host_key", "never"),
        }
        if self.private_key_path.is_file():
            info["private_key_path"] = [str(self.private_key_path)]
            info["password"] = None
        return info

    def _get_ip(self, dom) -> str | None:
        """Get the first IPv4 address from DHCP leases, or None."""
        try:
            ifaces = dom.interfaceAddresses(
                libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE
            )
        except libvirt.libvirtError:
            return None

        for iface_info in ifaces.values():
            for addr in iface_info.get("addrs", []):
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    return addr["addr"]
        return None
