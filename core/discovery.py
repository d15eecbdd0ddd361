"""Subnet discovery: bounded fan-out of ``/status`` probes, fan-in of outcomes."""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import TYPE_CHECKING, Callable, Optional

from core.device import DeviceEndpoint
from core.errors import ConfigurationError
from core.health_client import DeviceHealthClient, ProbeOutcome, ProbeStatus

if TYPE_CHECKING:
    from core.app_config import AppConfig

logger = logging.getLogger(__name__)

MIN_PREFIX = 24
MAX_PREFIX = 30

ProbeFn = Callable[[str, float], ProbeOutcome]


def detect_local_address() -> Optional[str]:
    """Return the primary IPv4 address of this host, or None.

    Connecting a UDP socket selects the default-route interface without
    sending any packet.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine local address: %s", e)
        return None
    finally:
        sock.close()


def candidate_hosts(local_address: str | None, subnet_prefix: int = 24) -> list[str]:
    """Every host address of the subnet ``local_address`` belongs to, ascending."""
    if not local_address:
        raise ConfigurationError("Local address is unknown; cannot derive a subnet to scan")
    if not MIN_PREFIX <= int(subnet_prefix) <= MAX_PREFIX:
        raise ConfigurationError(
            f"Subnet prefix /{subnet_prefix} is not supported (use /{MIN_PREFIX} to /{MAX_PREFIX})"
        )
    try:
        interface = ipaddress.IPv4Interface(f"{local_address}/{int(subnet_prefix)}")
    except ValueError as e:
        raise ConfigurationError(f"Local address '{local_address}' is not a valid IPv4 address") from e
    if interface.ip.is_loopback or interface.ip.is_unspecified:
        raise ConfigurationError(f"Local address {interface.ip} has no scannable subnet")
    return [str(host) for host in interface.network.hosts()]


class DiscoveryScanner:
    """Finds the device by probing every host of the local subnet."""

    def __init__(
        self,
        config: "AppConfig",
        health_client: DeviceHealthClient | None = None,
        probe: ProbeFn | None = None,
        local_address_fn: Callable[[], Optional[str]] = detect_local_address,
    ):
        self.config = config
        self._health_client = health_client or DeviceHealthClient(config)
        self._probe = probe or self._health_client.probe
        self._local_address_fn = local_address_fn
        self.last_outcomes: list[ProbeOutcome] = []

    def _safe_probe(self, address: str, timeout: float) -> ProbeOutcome:
        try:
            return self._probe(address, timeout)
        except Exception as e:
            return ProbeOutcome(address, ProbeStatus.ERROR, str(e))

    def discover(
        self,
        local_address: str | None = None,
        subnet_prefix: int | None = None,
        per_host_timeout: float | None = None,
        concurrency_limit: int | None = None,
        overall_timeout: float | None = None,
    ) -> Optional[DeviceEndpoint]:
        """Scan the subnet and return the lowest-numbered responder, or None."""
        if local_address is None:
            local_address = self._local_address_fn()
        prefix = self.config.subnet_prefix if subnet_prefix is None else subnet_prefix
        hosts = candidate_hosts(local_address, prefix)
        per_host_timeout = self.config.probe_timeout if per_host_timeout is None else per_host_timeout
        workers = max(1, int(concurrency_limit or self.config.discovery_concurrency))
        overall_timeout = self.config.discovery_timeout if overall_timeout is None else overall_timeout
        order = {address: index for index, address in enumerate(hosts)}

        logger.info(
            "Scanning %d hosts around %s/%s (%d parallel, %.1fs per probe)",
            len(hosts), local_address, prefix, workers, per_host_timeout,
        )
        started = time.monotonic()
        deadline = started + overall_timeout
        outcomes: list[ProbeOutcome] = []

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe")
        try:
            pending = {executor.submit(self._safe_probe, address, per_host_timeout) for address in hosts}
            while pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                done, pending = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                outcomes.extend(future.result() for future in done)
            if pending:
                logger.warning("Discovery timed out with %d probes unfinished", len(pending))
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.last_outcomes = sorted(outcomes, key=lambda o: order.get(o.address, len(order)))
        found = [o for o in self.last_outcomes if o.found]
        logger.debug(
            "Discovery settled %d/%d probes in %.2fs: %s",
            len(outcomes), len(hosts), time.monotonic() - started, self._summarize(outcomes),
        )
        if not found:
            logger.info("No device answered on %s/%s", local_address, prefix)
            return None
        address = found[0].address
        if len(found) > 1:
            logger.info("Multiple devices answered (%s); using %s",
                        ", ".join(o.address for o in found), address)
        endpoint = DeviceEndpoint(address=address)
        endpoint.mark(True)
        return endpoint

    @staticmethod
    def _summarize(outcomes: list[ProbeOutcome]) -> str:
        counts: dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.status.name] = counts.get(outcome.status.name, 0) + 1
        return ", ".join(f"{name}={count}" for name, count in sorted(counts.items())) or "none"
