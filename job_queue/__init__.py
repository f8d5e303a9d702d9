"""Notification queue, preference gate and per-channel dispatch workers."""
from job_queue.consumer import ChannelWorkerPool, DispatchSupervisor
from job_queue.notification_queue import NotificationQueue, backoff_seconds
from job_queue.preferences import Allow, Defer, GateDecision, PreferenceGate, Suppress

__all__ = [
    "NotificationQueue", "backoff_seconds",
    "PreferenceGate", "Allow", "Suppress", "Defer", "GateDecision",
    "ChannelWorkerPool", "DispatchSupervisor",
]
