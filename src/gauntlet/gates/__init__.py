from gauntlet.gates.check import CheckGateExecutor
from gauntlet.gates.result import GateResult, JobLog, SlotResult, Violation

__all__ = ["CheckGateExecutor", "GateResult", "JobLog", "SlotResult", "Violation"]
