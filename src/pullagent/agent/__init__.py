"""Convergence agent for pullagent.

This package provides:
- ConvergenceAgent: the fetch → decrypt → apply → record state machine
- GitSource: desired-state fetch authenticated with the deploy key
- RunLock: filesystem lock with stale-holder reclamation
- StatusStore: atomically replaced last-attempt / last-success records
"""

from pullagent.agent.convergence import ConvergenceAgent, RunOutcome, RunState
from pullagent.agent.lock import LockRecord, RunLock
from pullagent.agent.source import GitSource
from pullagent.agent.status import OutcomeStatus, RunRecord, RunStatus, StatusStore

__all__ = [
    "ConvergenceAgent",
    "GitSource",
    "LockRecord",
    "OutcomeStatus",
    "RunLock",
    "RunOutcome",
    "RunRecord",
    "RunState",
    "RunStatus",
    "StatusStore",
]
