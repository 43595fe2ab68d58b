from .pool import AddressRecord, AddressStatus, Pool, Router
from .event import AddressEvent

__all__ = ["Router", "Pool", "AddressRecord", "AddressStatus", "AddressEvent"]
