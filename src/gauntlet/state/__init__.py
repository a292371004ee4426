from gauntlet.state.execution import ExecutionState, read_execution_state, write_execution_state
from gauntlet.state.lock import LockConflictError, LockHandle, run_lock
from gauntlet.state.sequencer import LogSequencer
from gauntlet.state.store import archive_store, has_result_files

__all__ = [
    "ExecutionState",
    "LockConflictError",
    "LockHandle",
    "LogSequencer",
    "archive_store",
    "has_result_files",
    "read_execution_state",
    "run_lock",
    "write_execution_state",
]
