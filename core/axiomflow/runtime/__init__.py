"""
Runtime: event bus, trigger sources and the workflow runtime.

Only the event bus is re-exported here; it is imported by the graph layer.
Import ``WorkflowRuntime`` from ``axiomflow.runtime.workflow_runtime`` or
from ``axiomflow``.
"""

from axiomflow.runtime.event_bus import EventBus, EventType, Subscription, WorkflowEvent

__all__ = ["EventBus", "EventType", "Subscription", "WorkflowEvent"]
