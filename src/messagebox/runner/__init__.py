"""
Runners for the MessageBox: the consumption loop every destination
executes and the transport orchestration around it.
"""

from .consumption_loop import ConsumptionLoop, LoopConfig, PollMetrics
from .transport_runner import TransportResult, TransportRunner

__all__ = [
    "ConsumptionLoop",
    "LoopConfig",
    "PollMetrics",
    "TransportResult",
    "TransportRunner",
]
