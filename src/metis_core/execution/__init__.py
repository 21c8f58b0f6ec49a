"""Metis Core -- execution layer.

Architecture::

    retry.py          ExponentialBackoff / RetryContext / call_with_retry
    driver.py         PluginDriver: submit, poll, kill DPS tasks (Result-based)
    chain_policy.py   Predecessor resolution over the plugin graph
    factory.py        WorkflowFactory: template + dataset → execution
    cancellation.py   CancellationToken (interruptible sleeps)
    executor.py       WorkflowExecutor: the per-execution state machine
    monitor.py        ExecutionMonitor: claims, heartbeats, reclamation, minute cap
    scheduler.py      ExecutionScheduler: bounded worker pool + admission
    orchestrator.py   WorkflowOrchestrator: enqueue, cancel, scheduled triggers
"""

from metis_core.execution.cancellation import CancellationToken
from metis_core.execution.chain_policy import PluginChainPolicy
from metis_core.execution.driver import MonitorResult, MonitorSession, PluginDriver
from metis_core.execution.executor import RunOutcome, WorkflowExecutor
from metis_core.execution.factory import WorkflowFactory
from metis_core.execution.monitor import ExecutionMonitor
from metis_core.execution.orchestrator import WorkflowOrchestrator
from metis_core.execution.retry import ExponentialBackoff, NoRetry, RetryContext, call_with_retry
from metis_core.execution.scheduler import ExecutionScheduler

__all__ = [
    "CancellationToken",
    "ExecutionMonitor",
    "ExecutionScheduler",
    "ExponentialBackoff",
    "MonitorResult",
    "MonitorSession",
    "NoRetry",
    "PluginChainPolicy",
    "PluginDriver",
    "RetryContext",
    "RunOutcome",
    "WorkflowExecutor",
    "WorkflowFactory",
    "WorkflowOrchestrator",
    "call_with_retry",
]
