"""
Node handlers - one per node type.

The node-type set is closed, so dispatch is a plain table lookup.
"""

from axiomflow.graph.node import NodeType
from axiomflow.graph.nodes.agent import AgentHandler
from axiomflow.graph.nodes.base import NodeHandler
from axiomflow.graph.nodes.condition import ConditionHandler
from axiomflow.graph.nodes.human_input import HumanInputHandler
from axiomflow.graph.nodes.loop import LoopHandler
from axiomflow.graph.nodes.output import OutputHandler
from axiomflow.graph.nodes.parallel import ParallelHandler
from axiomflow.graph.nodes.tool import ToolHandler
from axiomflow.graph.nodes.transform import TransformHandler
from axiomflow.graph.nodes.trigger import TriggerHandler

HANDLERS: dict[NodeType, NodeHandler] = {
    handler.node_type: handler
    for handler in (
        TriggerHandler(),
        AgentHandler(),
        ToolHandler(),
        ConditionHandler(),
        TransformHandler(),
        LoopHandler(),
        ParallelHandler(),
        HumanInputHandler(),
        OutputHandler(),
    )
}


def get_handler(node_type: NodeType) -> NodeHandler:
    return HANDLERS[NodeType(node_type)]


__all__ = [
    "HANDLERS",
    "NodeHandler",
    "get_handler",
    "AgentHandler",
    "ConditionHandler",
    "HumanInputHandler",
    "LoopHandler",
    "OutputHandler",
    "ParallelHandler",
    "ToolHandler",
    "TransformHandler",
    "TriggerHandler",
]
