"""
Rebalancing Agent
-----------------
Deployer, rebalance trigger and the control loop that sequences them.
"""

from .deployer import Deployer
from .factory import build_control_loop
from .loop import ControlLoop
from .store import DeploymentStore
from .trigger import RebalanceTrigger
from .types import DeploymentRecord, LoopPhase, LoopState

__all__ = [
    # Components
    "Deployer",
    "DeploymentStore",
    "RebalanceTrigger",
    "ControlLoop",
    "build_control_loop",

    # Data structures
    "DeploymentRecord",
    "LoopPhase",
    "LoopState",
]
