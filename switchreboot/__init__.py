"""switch-reboot — fast/warm control-plane reboot orchestration."""
from .config import RebootConfig
from .controller import PreconditionFailure, RebootController
from .drain import DrainError, ServiceDrainSequencer
from .handshake import HandshakeError, PreShutdownCoordinator
from .models import ExitCode, RebootMode, RebootOptions
from .recovery import FailureRecovery, RebootAborted
from .snapshot import SnapshotIOError, StateSnapshotStore

__all__ = [
    "RebootController",
    "RebootConfig",
    "RebootMode",
    "RebootOptions",
    "ExitCode",
    "PreconditionFailure",
    "PreShutdownCoordinator",
    "HandshakeError",
    "ServiceDrainSequencer",
    "DrainError",
    "StateSnapshotStore",
    "SnapshotIOError",
    "FailureRecovery",
    "RebootAborted",
]
