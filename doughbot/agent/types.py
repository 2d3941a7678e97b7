"""Loop phases, loop state and the persisted deployment record."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from doughbot.balance.monitor import BalanceReading


class LoopPhase(str, Enum):
    """Control loop phases. TERMINATED and STOPPED are absorbing."""
    BOOTSTRAPPING = "bootstrapping"
    REGISTERING = "registering"
    MONITORING = "monitoring"
    TRIGGERING = "triggering"
    TERMINATED = "terminated"  # stopped by an error
    STOPPED = "stopped"  # graceful shutdown

    @property
    def is_final(self) -> bool:
        return self in (LoopPhase.TERMINATED, LoopPhase.STOPPED)


@dataclass(frozen=True)
class DeploymentRecord:
    """Persisted deployment identity."""
    address: str
    registered: bool = False
    deploy_tx_hash: Optional[str] = None
    register_tx_hash: Optional[str] = None
    deployed_at: Optional[str] = None


@dataclass
class LoopState:
    """State owned by the control loop; nothing else mutates it."""
    phase: LoopPhase = LoopPhase.BOOTSTRAPPING
    contract_address: Optional[str] = None
    last_reading: Optional[BalanceReading] = None
    last_swap_tx: Optional[str] = None
    swaps_issued: int = 0
    cycle: int = 0
    consecutive_fetch_failures: int = 0
    error: Optional[BaseException] = None
    transitions: list[LoopPhase] = field(default_factory=lambda: [LoopPhase.BOOTSTRAPPING])

    @property
    def terminated(self) -> bool:
        return self.phase is LoopPhase.TERMINATED
