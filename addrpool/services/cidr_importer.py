import ipaddress
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import insert, select
from sqlalchemy.orm import Session

from ..config import Settings
from ..events import ADDRESSES_IMPORTED, EventBus
from ..exceptions import InvalidCidr, PoolNotFound, RangeTooLarge
from ..models import AddressRecord, AddressStatus, Pool

logger = logging.getLogger(__name__)

INSERT_BATCH_SIZE = 1000


@dataclass
class ImportResult:
    pool_id: int
    cidr: str
    created: int
    skipped: int
    reserved: int


def parse_cidr(cidr: str, min_prefix: int = 0, max_prefix: int = 32) -> ipaddress.IPv4Network:
    """
    Parse an IPv4 CIDR and check its prefix against the allowed range.

    Host bits are tolerated and masked off, so '10.0.0.7/24' means
    '10.0.0.0/24'.
    """
    try:
        network = ipaddress.ip_network(str(cidr).strip(), strict=False)
    except ValueError:
        raise InvalidCidr(f"Invalid CIDR notation: '{cidr}'")

    if not isinstance(network, ipaddress.IPv4Network):
        raise InvalidCidr(f"Only IPv4 networks are supported, got '{cidr}'")
    if not (min_prefix <= network.prefixlen <= max_prefix):
        raise InvalidCidr(
            f"Prefix /{network.prefixlen} outside the allowed range /{min_prefix}-/{max_prefix}"
        )
    return network


def usable_host_range(network: ipaddress.IPv4Network, reserve_gateway: bool = False) -> range:
    """
    Integer range of assignable hosts.

    Network and broadcast addresses are excluded; with ``reserve_gateway``
    the first host is kept back for the router's own interface.
    """
    first = int(network.network_address) + 1
    last = int(network.broadcast_address) - 1
    if reserve_gateway:
        first += 1
    return range(first, max(first, last + 1))


class CIDRImporter:
    """
    Expands a CIDR block into AddressRecord rows for a pool.

    Import is idempotent: addresses already present anywhere in the store
    are skipped and counted, never duplicated.
    """

    def __init__(self, settings: Settings, event_bus: EventBus):
        self.settings = settings
        self.event_bus = event_bus

    def check_importable(self, cidr: str) -> ipaddress.IPv4Network:
        """Parse ``cidr`` and refuse blocks that would expand past the import limit."""
        network = parse_cidr(cidr, self.settings.import_min_prefix, self.settings.import_max_prefix)
        usable_count = network.num_addresses - 2
        if usable_count > self.settings.import_max_addresses:
            raise RangeTooLarge(
                f"{network} expands to {usable_count} addresses; "
                f"maximum allowed is {self.settings.import_max_addresses}"
            )
        return network

    def import_cidr(
        self,
        db: Session,
        pool_id: int,
        cidr: str,
        reserve_gateway: Optional[bool] = None,
    ) -> ImportResult:
        network = self.check_importable(cidr)

        pool = db.get(Pool, pool_id)
        if not pool:
            raise PoolNotFound(f"Pool {pool_id} not found")

        pool_network = ipaddress.ip_network(pool.cidr)
        if not network.subnet_of(pool_network):
            raise InvalidCidr(f"{network} is not inside pool network {pool.cidr}")

        if reserve_gateway is None:
            reserve_gateway = self.settings.reserve_gateway

        hosts = usable_host_range(network, reserve_gateway)
        existing = set(
            db.execute(
                select(AddressRecord.address_int).where(
                    AddressRecord.address_int >= hosts.start,
                    AddressRecord.address_int < hosts.stop,
                )
            ).scalars()
        )

        rows = [
            {
                "pool_id": pool.id,
                "address": str(ipaddress.IPv4Address(value)),
                "address_int": value,
                "status": AddressStatus.AVAILABLE,
            }
            for value in hosts
            if value not in existing
        ]

        for start in range(0, len(rows), INSERT_BATCH_SIZE):
            db.execute(insert(AddressRecord), rows[start:start + INSERT_BATCH_SIZE])
        db.commit()

        result = ImportResult(
            pool_id=pool.id,
            cidr=str(network),
            created=len(rows),
            skipped=len(existing),
            reserved=1 if reserve_gateway else 0,
        )
        logger.info(
            "Imported %s into pool %s: %d created, %d skipped, %d reserved",
            network, pool.name, result.created, result.skipped, result.reserved,
        )
        self.event_bus.emit(
            ADDRESSES_IMPORTED,
            pool_id=pool.id,
            cidr=result.cidr,
            created=result.created,
            skipped=result.skipped,
        )
        return result
