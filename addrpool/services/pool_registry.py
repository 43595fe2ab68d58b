import ipaddress
import logging
import math
from typing import Dict, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from ..config import Settings
from ..exceptions import (
    PoolInUse,
    PoolNameTaken,
    PoolNotFound,
    PoolOverlap,
    RouterInUse,
    RouterNameTaken,
    RouterNotFound,
)
from ..models import AddressEvent, AddressRecord, AddressStatus, Pool, Router
from ..schemas.pool import PoolCreate, PoolUpdate, RouterCreate
from .cidr_importer import parse_cidr

logger = logging.getLogger(__name__)

CAPACITY_FULL_UTILIZATION = 0.95
CAPACITY_ACCEPT_UTILIZATION = 0.90


class PoolRegistryService:
    """
    Router and pool bookkeeping plus read-only statistics.

    Nothing here changes the status of an address; that belongs to the
    assignment engine.
    """

    @staticmethod
    def create_router(db: Session, router_data: RouterCreate) -> Router:
        if PoolRegistryService.get_router_by_name(db, router_data.name):
            raise RouterNameTaken(f"Router with name '{router_data.name}' already exists")

        router = Router(
            name=router_data.name,
            description=router_data.description,
            api_url=router_data.api_url,
            username=router_data.username,
            password=router_data.password,
            active=router_data.active,
        )
        db.add(router)
        db.commit()
        db.refresh(router)
        logger.info("Registered router %s (%s)", router.name, router.api_url)
        return router

    @staticmethod
    def get_router(db: Session, router_id: int) -> Router:
        router = db.get(Router, router_id)
        if not router:
            raise RouterNotFound(f"Router {router_id} not found")
        return router

    @staticmethod
    def get_router_by_name(db: Session, name: str) -> Optional[Router]:
        return db.query(Router).filter(Router.name == name).first()

    @staticmethod
    def list_routers(db: Session) -> List[Router]:
        return db.query(Router).order_by(Router.name).all()

    @staticmethod
    def delete_router(db: Session, router_id: int) -> None:
        router = PoolRegistryService.get_router(db, router_id)
        pool_count = db.query(Pool).filter(Pool.router_id == router.id).count()
        if pool_count:
            raise RouterInUse(
                f"Router '{router.name}' still owns {pool_count} pools; decommission them first"
            )
        db.delete(router)
        db.commit()

    @staticmethod
    def create_pool(db: Session, pool_data: PoolCreate, settings: Settings) -> Pool:
        """Create a pool from CIDR. Its network must not overlap any other pool."""
        router = PoolRegistryService.get_router(db, pool_data.router_id)
        network = parse_cidr(pool_data.cidr, settings.import_min_prefix, settings.import_max_prefix)
        first_int = int(network.network_address)
        last_int = int(network.broadcast_address)

        overlapping = db.query(Pool).filter(
            Pool.first_int <= last_int,
            Pool.last_int >= first_int,
        ).first()
        if overlapping:
            raise PoolOverlap(f"{network} overlaps pool '{overlapping.name}' ({overlapping.cidr})")

        duplicate = db.query(Pool).filter(
            Pool.router_id == router.id,
            Pool.name == pool_data.name,
        ).first()
        if duplicate:
            raise PoolNameTaken(f"Router '{router.name}' already has a pool named '{pool_data.name}'")

        pool = Pool(
            name=pool_data.name,
            description=pool_data.description,
            router_id=router.id,
            pool_type=pool_data.pool_type.value,
            cidr=str(network),
            network_address=str(network.network_address),
            prefix_length=network.prefixlen,
            first_int=first_int,
            last_int=last_int,
            active=pool_data.active,
        )
        db.add(pool)
        db.commit()
        db.refresh(pool)
        logger.info("Created pool %s %s on router %s", pool.name, pool.cidr, router.name)
        return pool

    @staticmethod
    def get_pool(db: Session, pool_id: int) -> Pool:
        pool = db.get(Pool, pool_id)
        if not pool:
            raise PoolNotFound(f"Pool {pool_id} not found")
        return pool

    @staticmethod
    def list_pools(
        db: Session,
        router_id: Optional[int] = None,
        pool_type: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> List[Pool]:
        query = db.query(Pool)
        if router_id is not None:
            query = query.filter(Pool.router_id == router_id)
        if pool_type is not None:
            query = query.filter(Pool.pool_type == pool_type)
        if active is not None:
            query = query.filter(Pool.active == active)
        return query.order_by(Pool.name).all()

    @staticmethod
    def update_pool(db: Session, pool_id: int, pool_update: PoolUpdate) -> Pool:
        pool = PoolRegistryService.get_pool(db, pool_id)
        update_data = pool_update.model_dump(exclude_unset=True)

        new_name = update_data.get("name")
        if new_name and new_name != pool.name:
            duplicate = db.query(Pool).filter(
                Pool.router_id == pool.router_id,
                Pool.name == new_name,
            ).first()
            if duplicate:
                raise PoolNameTaken(f"Pool name '{new_name}' already used on this router")

        if "pool_type" in update_data and update_data["pool_type"] is not None:
            update_data["pool_type"] = update_data["pool_type"].value

        for field, value in update_data.items():
            setattr(pool, field, value)
        db.commit()
        db.refresh(pool)
        return pool

    @staticmethod
    def decommission_pool(db: Session, pool_id: int) -> int:
        """Delete a pool and its address records. Returns the number of records removed."""
        pool = PoolRegistryService.get_pool(db, pool_id)
        assigned = db.query(AddressRecord).filter(
            AddressRecord.pool_id == pool.id,
            AddressRecord.status == AddressStatus.ASSIGNED,
        ).count()
        if assigned:
            raise PoolInUse(
                f"Cannot decommission pool '{pool.name}'. It has {assigned} assigned addresses."
            )

        removed = db.execute(delete(AddressRecord).where(AddressRecord.pool_id == pool.id)).rowcount
        db.delete(pool)
        db.commit()
        logger.info("Decommissioned pool %s (%d address records removed)", pool.name, removed)
        return removed

    @staticmethod
    def _status_counts(db: Session, pool_ids: List[int]) -> Dict[int, Dict[str, int]]:
        counts = {pool_id: {status: 0 for status in AddressStatus.ALL} for pool_id in pool_ids}
        if not pool_ids:
            return counts
        rows = db.execute(
            select(AddressRecord.pool_id, AddressRecord.status, func.count(AddressRecord.id))
            .where(AddressRecord.pool_id.in_(pool_ids))
            .group_by(AddressRecord.pool_id, AddressRecord.status)
        ).all()
        for pool_id, status, count in rows:
            counts[pool_id][status] = count
        return counts

    @staticmethod
    def _utilization(assigned: int, available: int) -> float:
        assignable = assigned + available
        return assigned / assignable if assignable else 0.0

    @staticmethod
    def get_pool_stats(db: Session, pool_id: int) -> dict:
        """Address counts per status and utilization = assigned / (assigned + available)."""
        pool = PoolRegistryService.get_pool(db, pool_id)
        counts = PoolRegistryService._status_counts(db, [pool.id])[pool.id]

        needs_sync = db.execute(
            select(func.count(AddressRecord.id)).where(
                AddressRecord.pool_id == pool.id,
                AddressRecord.needs_sync.is_(True),
            )
        ).scalar_one()

        return {
            "pool_id": pool.id,
            "pool_name": pool.name,
            "total": sum(counts.values()),
            "available": counts[AddressStatus.AVAILABLE],
            "assigned": counts[AddressStatus.ASSIGNED],
            "reserved": counts[AddressStatus.RESERVED],
            "blocked": counts[AddressStatus.BLOCKED],
            "needs_sync": needs_sync,
            "utilization": PoolRegistryService._utilization(
                counts[AddressStatus.ASSIGNED], counts[AddressStatus.AVAILABLE]
            ),
            "degraded": pool.degraded,
        }

    @staticmethod
    def check_pool_capacity(db: Session, pool_id: int) -> dict:
        """
        Headroom of a pool.

        ``has_capacity`` turns False at 95% utilization, ``accepts_new_sessions``
        already at 90%, so moves keep working a little longer than fresh logins.
        """
        pool = PoolRegistryService.get_pool(db, pool_id)
        counts = PoolRegistryService._status_counts(db, [pool.id])[pool.id]
        available = counts[AddressStatus.AVAILABLE]
        utilization = PoolRegistryService._utilization(counts[AddressStatus.ASSIGNED], available)
        return {
            "pool_id": pool.id,
            "pool_name": pool.name,
            "available": available,
            "utilization": utilization,
            "has_capacity": available > 0 and utilization < CAPACITY_FULL_UTILIZATION,
            "accepts_new_sessions": available > 0 and utilization < CAPACITY_ACCEPT_UTILIZATION,
        }

    @staticmethod
    def _summarize(pools: List[Pool], counts: Dict[int, Dict[str, int]]) -> dict:
        total = sum(sum(counts[pool.id].values()) for pool in pools)
        assigned = sum(counts[pool.id][AddressStatus.ASSIGNED] for pool in pools)
        available = sum(counts[pool.id][AddressStatus.AVAILABLE] for pool in pools)
        return {
            "total_pools": len(pools),
            "total": total,
            "assigned": assigned,
            "available": available,
            "utilization": PoolRegistryService._utilization(assigned, available),
        }

    @staticmethod
    def get_router_stats(db: Session, router_id: int) -> dict:
        """Statistics of every active pool of one router plus a router-wide summary."""
        router = PoolRegistryService.get_router(db, router_id)
        pools = db.query(Pool).filter(
            Pool.router_id == router.id,
            Pool.active.is_(True),
        ).order_by(Pool.first_int).all()
        return {
            "router_id": router.id,
            "router_name": router.name,
            "pools": [PoolRegistryService.get_pool_stats(db, pool.id) for pool in pools],
            "summary": PoolRegistryService._summarize(
                pools, PoolRegistryService._status_counts(db, [pool.id for pool in pools])
            ),
        }

    @staticmethod
    def get_global_stats(db: Session) -> dict:
        """Totals across active routers and their active pools, broken down by pool type and router."""
        routers = db.query(Router).filter(Router.active.is_(True)).order_by(Router.id).all()
        pools = db.query(Pool).filter(
            Pool.router_id.in_([router.id for router in routers]),
            Pool.active.is_(True),
        ).order_by(Pool.first_int).all()
        counts = PoolRegistryService._status_counts(db, [pool.id for pool in pools])

        by_type: Dict[str, List[Pool]] = {}
        for pool in pools:
            by_type.setdefault(pool.pool_type, []).append(pool)

        stats = PoolRegistryService._summarize(pools, counts)
        stats["total_routers"] = len(routers)
        stats["pools_by_type"] = {
            pool_type: PoolRegistryService._summarize(members, counts)
            for pool_type, members in sorted(by_type.items())
        }
        stats["routers"] = []
        for router in routers:
            summary = PoolRegistryService._summarize([p for p in pools if p.router_id == router.id], counts)
            summary.update(router_id=router.id, router_name=router.name)
            stats["routers"].append(summary)
        return stats

    @staticmethod
    def list_pool_addresses(
        db: Session,
        pool_id: int,
        page: int = 1,
        size: int = 50,
        status: Optional[str] = None,
    ) -> dict:
        pool = PoolRegistryService.get_pool(db, pool_id)
        query = db.query(AddressRecord).filter(AddressRecord.pool_id == pool.id)
        if status is not None:
            query = query.filter(AddressRecord.status == status)

        total = query.count()
        items = (
            query.order_by(AddressRecord.address_int)
            .offset((page - 1) * size)
            .limit(size)
            .all()
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "size": size,
            "pages": math.ceil(total / size) if total else 0,
        }

    @staticmethod
    def pool_for_address(pools: List[Pool], address: str) -> Optional[Pool]:
        """Return the pool whose network contains ``address``, None for anything unparseable."""
        try:
            value = int(ipaddress.IPv4Address(str(address).strip()))
        except ValueError:
            return None
        for pool in pools:
            if pool.first_int <= value <= pool.last_int:
                return pool
        return None

    @staticmethod
    def list_events(db: Session, limit: int = 100, event_type: Optional[str] = None) -> List[AddressEvent]:
        query = db.query(AddressEvent)
        if event_type:
            query = query.filter(AddressEvent.event_type == event_type)
        return query.order_by(AddressEvent.id.desc()).limit(limit).all()
