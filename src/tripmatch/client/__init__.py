"""Client-side components for privacy-preserving matching."""
from tripmatch.client.orchestrator import ComputationHandle, HandleState, MatchOrchestrator
from tripmatch.client.routing import OSRMRoutingService, Route, RoutingProfile, get_route
from tripmatch.client.search import MatchClient, MatchReport

__all__ = [
    "ComputationHandle",
    "HandleState",
    "MatchOrchestrator",
    "OSRMRoutingService",
    "Route",
    "RoutingProfile",
    "get_route",
    "MatchClient",
    "MatchReport",
]
