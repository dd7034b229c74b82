"""
Bridge engine.

Architecture:
- Source listener -> dedup window -> forward pipeline -> destination
- Destination listener -> reverse pipeline -> source
- Controller owns lifecycle, degraded mode and recovery
"""

from .controller import BridgeController, BridgeState
from .forward import ForwardPipeline
from .reverse import ReversePipeline

__all__ = ["BridgeController", "BridgeState", "ForwardPipeline", "ReversePipeline"]
