from edge_router.services.forwarder import Forwarder
from edge_router.services.health_aggregator import HealthAggregator
from edge_router.services.overload import OverloadShedder
from edge_router.services.shutdown import ShutdownCoordinator, ShutdownState

__all__ = [
    "Forwarder",
    "HealthAggregator",
    "OverloadShedder",
    "ShutdownCoordinator",
    "ShutdownState",
]
