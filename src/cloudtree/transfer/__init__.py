"""Transfer orchestration: pipeline stages and the transfer session."""

from cloudtree.transfer.session import TransferHandle, TransferResult, TransferSession
from cloudtree.transfer.stages import Stage, StageResult, StageState, first_failure, run_inline

__all__ = [
    # Session
    "TransferHandle",
    "TransferResult",
    "TransferSession",
    # Stages
    "Stage",
    "StageResult",
    "StageState",
    "first_failure",
    "run_inline",
]
