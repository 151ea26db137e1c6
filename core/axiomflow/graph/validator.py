"""
Graph validation and compilation.

``validate_all`` reports every structural problem of a definition;
``validate`` raises the first one and otherwise returns a ``CompiledGraph``
holding the lookup tables the executor walks:

- ``adjacency``: node id -> outgoing edges in declaration order
- ``by_handle``: node id -> source-handle label -> edges
- ``parallel_joins`` / ``parallel_regions``: the join node of every parallel
  node and the nodes each of its branches owns before the join
- ``subgraphs``: compiled loop bodies keyed by loop node id
"""

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import jmespath
from jmespath.exceptions import JMESPathError
from pydantic import ValidationError

from axiomflow.graph.edge import EdgeSpec
from axiomflow.graph.errors import ValidationErrorKind as Kind
from axiomflow.graph.errors import WorkflowValidationError
from axiomflow.graph.expression import expression_problems, template_problems
from axiomflow.graph.node import (
    AgentConfig,
    ConditionConfig,
    LoopConfig,
    NodeSpec,
    NodeType,
    ParallelConfig,
    ToolConfig,
    TransformConfig,
)
from axiomflow.graph.safe_eval import check_syntax
from axiomflow.graph.workflow import AgentDefinition, ToolDefinition, WorkflowDefinition

logger = logging.getLogger(__name__)

# Node types allowed more than one outgoing edge
_BRANCHING_TYPES = {NodeType.CONDITION, NodeType.PARALLEL}


@dataclass
class CompiledGraph:
    """Executable form of a validated (sub)graph."""

    nodes: dict[str, NodeSpec]
    entry: str
    adjacency: dict[str, list[EdgeSpec]] = field(default_factory=dict)
    by_handle: dict[str, dict[str | None, list[EdgeSpec]]] = field(default_factory=dict)
    parallel_joins: dict[str, str] = field(default_factory=dict)
    parallel_regions: dict[str, dict[str, set[str]]] = field(default_factory=dict)
    subgraphs: dict[str, "CompiledGraph"] = field(default_factory=dict)

    def node(self, node_id: str) -> NodeSpec | None:
        return self.nodes.get(node_id)

    def next_nodes(self, node_id: str, handle: str | None = None) -> list[str]:
        """Targets of the edges leaving ``node_id`` that match ``handle``."""
        return [e.target for e in self.adjacency.get(node_id, []) if e.matches_handle(handle)]

    def edges_for(self, node_id: str, handle: str | None = None) -> list[EdgeSpec]:
        return [e for e in self.adjacency.get(node_id, []) if e.matches_handle(handle)]


class _GraphChecker:
    """Checks one graph scope (the workflow itself or a loop body)."""

    def __init__(
        self,
        nodes: list[NodeSpec],
        edges: list[EdgeSpec],
        *,
        scope: str = "",
        top_level: bool = True,
        entry_hint: str | None = None,
        agents: Mapping[str, AgentDefinition] | None = None,
        tools: Mapping[str, ToolDefinition] | None = None,
    ):
        self.node_list = nodes
        self.edges = edges
        self.scope = scope
        self.top_level = top_level
        self.entry_hint = entry_hint
        self.agents = agents
        self.tools = tools
        self.errors: list[WorkflowValidationError] = []
        self.nodes: dict[str, NodeSpec] = {}
        self.successors: dict[str, list[str]] = {}
        self.predecessors: dict[str, set[str]] = {}

    def _error(
        self,
        kind: Kind,
        message: str,
        node_id: str | None = None,
        edge_id: str | None = None,
    ) -> None:
        if self.scope:
            message = f"{self.scope}: {message}"
        self.errors.append(WorkflowValidationError(kind, message, node_id=node_id, edge_id=edge_id))

    def run(self) -> CompiledGraph | None:
        self._check_ids()
        adjacency = self._check_edges()
        parsed = self._check_configs()
        self._link(adjacency, parsed)
        entry = self._find_entry()

        compiled = CompiledGraph(nodes=dict(self.nodes), entry=entry or "")
        compiled.adjacency = adjacency
        for node_id, edges in adjacency.items():
            handles: dict[str | None, list[EdgeSpec]] = {}
            for edge in edges:
                handles.setdefault(edge.source_handle, []).append(edge)
            compiled.by_handle[node_id] = handles

        self._check_edge_shapes(adjacency, parsed)
        for node_id, config in parsed.items():
            if isinstance(config, ParallelConfig):
                self._check_parallel(node_id, config, compiled)
            elif isinstance(config, LoopConfig):
                body = self._check_loop(node_id, config)
                if body is not None:
                    compiled.subgraphs[node_id] = body

        if entry:
            self._check_reachability(entry)

        for node in self.node_list:
            self._check_templates(node, parsed.get(node.id))

        return compiled if entry else None

    # -- identity and wiring ------------------------------------------------

    def _check_ids(self) -> None:
        for node in self.node_list:
            if node.id in self.nodes:
                self._error(Kind.DUPLICATE_NODE_ID, f"duplicate node id '{node.id}'", node.id)
                continue
            self.nodes[node.id] = node

    def _check_edges(self) -> dict[str, list[EdgeSpec]]:
        adjacency: dict[str, list[EdgeSpec]] = {node_id: [] for node_id in self.nodes}
        for edge in self.edges:
            missing = [end for end in (edge.source, edge.target) if end not in self.nodes]
            if missing:
                self._error(
                    Kind.DANGLING_EDGE,
                    f"edge '{edge.id}' references undeclared node(s) {missing}",
                    edge_id=edge.id,
                )
                continue
            adjacency[edge.source].append(edge)
        return adjacency

    def _check_configs(self) -> dict[str, Any]:
        parsed: dict[str, Any] = {}
        for node_id, node in self.nodes.items():
            try:
                config = node.parsed_config()
            except ValidationError as e:
                fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
                self._error(
                    Kind.MISSING_CONFIG,
                    f"{node.type} node '{node_id}' has an invalid config ({fields})",
                    node_id,
                )
                continue
            parsed[node_id] = config

            if isinstance(config, ConditionConfig) and not config.branches:
                self._error(
                    Kind.MISSING_BRANCHES,
                    f"condition node '{node_id}' declares no branches",
                    node_id,
                )
            elif isinstance(config, ConditionConfig):
                self._check_condition(node_id, config)
            elif isinstance(config, LoopConfig) and not config.body.nodes:
                self._error(
                    Kind.MISSING_BRANCHES, f"loop node '{node_id}' has an empty body", node_id
                )
            elif isinstance(config, AgentConfig):
                self._check_agent(node_id, config)
            elif isinstance(config, ToolConfig):
                self._check_tool(node_id, config)
        return parsed

    def _check_condition(self, node_id: str, config: ConditionConfig) -> None:
        seen = set()
        for branch in config.branches:
            if branch.id in seen:
                self._error(
                    Kind.MISSING_BRANCHES,
                    f"condition node '{node_id}' declares branch '{branch.id}' twice",
                    node_id,
                )
            seen.add(branch.id)
        if config.condition_type == "expression" and config.expression is None:
            for branch in config.branches:
                if not branch.condition and not branch.is_default:
                    self._error(
                        Kind.MISSING_CONFIG,
                        f"branch '{branch.id}' of condition '{node_id}' has no condition",
                        node_id,
                    )

    def _check_agent(self, node_id: str, config: AgentConfig) -> None:
        if self.agents is None:
            return
        referenced = [config.agent_id]
        if config.supervisor:
            referenced.extend(config.supervisor.workers)
        for agent_id in referenced:
            if agent_id not in self.agents:
                self._error(Kind.MISSING_CONFIG, f"unknown agent '{agent_id}'", node_id)
        if config.supervisor and config.supervisor.complete_node:
            if config.supervisor.complete_node not in self.nodes:
                self._error(
                    Kind.MISSING_CONFIG,
                    f"completeNode '{config.supervisor.complete_node}' is not a declared node",
                    node_id,
                )

    def _check_tool(self, node_id: str, config: ToolConfig) -> None:
        if config.tool_id in (self.tools or {}):
            return
        if config.provider and config.endpoint:
            return
        if self.tools is not None:
            self._error(
                Kind.MISSING_CONFIG,
                f"tool '{config.tool_id}' is not in the catalog and declares no provider/endpoint",
                node_id,
            )

    def _link(self, adjacency: dict[str, list[EdgeSpec]], parsed: dict[str, Any]) -> None:
        """Build the effective successor map; parallel branches count as edges."""
        for node_id in self.nodes:
            targets = [e.target for e in adjacency.get(node_id, [])]
            config = parsed.get(node_id)
            if isinstance(config, ParallelConfig):
                targets.extend(b for b in config.branches if b in self.nodes)
            deduped = list(dict.fromkeys(targets))
            self.successors[node_id] = deduped
            for target in deduped:
                self.predecessors.setdefault(target, set()).add(node_id)

    def _find_entry(self) -> str | None:
        if self.top_level:
            triggers = [n.id for n in self.nodes.values() if n.type == NodeType.TRIGGER]
            if not triggers:
                self._error(Kind.NO_ENTRY_NODE, "workflow has no trigger node")
                return None
            if len(triggers) > 1:
                self._error(
                    Kind.MULTIPLE_ENTRY_NODES, f"workflow has several trigger nodes: {triggers}"
                )
                return None
            return triggers[0]

        if self.entry_hint:
            if self.entry_hint not in self.nodes:
                self._error(Kind.NO_ENTRY_NODE, f"entry '{self.entry_hint}' is not a body node")
                return None
            return self.entry_hint
        roots = [node_id for node_id in self.nodes if not self.predecessors.get(node_id)]
        if not roots:
            self._error(Kind.NO_ENTRY_NODE, "body has no node without incoming edges")
            return None
        if len(roots) > 1:
            self._error(Kind.MULTIPLE_ENTRY_NODES, f"body has several root nodes: {roots}")
            return None
        return roots[0]

    def _check_edge_shapes(
        self, adjacency: dict[str, list[EdgeSpec]], parsed: dict[str, Any]
    ) -> None:
        for node_id, edges in adjacency.items():
            node = self.nodes[node_id]
            config = parsed.get(node_id)
            if isinstance(config, ConditionConfig):
                handles = set(config.handles)
                for edge in edges:
                    if edge.source_handle not in handles:
                        self._error(
                            Kind.UNKNOWN_HANDLE,
                            f"edge '{edge.id}' leaves condition '{node_id}' with handle "
                            f"{edge.source_handle!r}; declared branches are {sorted(handles)}",
                            node_id,
                            edge.id,
                        )
            elif isinstance(config, ParallelConfig):
                for edge in edges:
                    if edge.target not in config.branches:
                        self._error(
                            Kind.INVALID_PARALLEL,
                            f"edge '{edge.id}' leaves parallel '{node_id}' to non-branch "
                            f"'{edge.target}'",
                            node_id,
                            edge.id,
                        )
            elif node.type not in _BRANCHING_TYPES and len(edges) > 1:
                self._error(
                    Kind.AMBIGUOUS_EDGES,
                    f"{node.type} node '{node_id}' has {len(edges)} outgoing edges",
                    node_id,
                )

    def _check_reachability(self, entry: str) -> None:
        reachable = self._reach([entry])
        for node_id in self.nodes:
            if node_id not in reachable:
                self._error(
                    Kind.UNREACHABLE_NODE,
                    f"node '{node_id}' is unreachable from '{entry}'",
                    node_id,
                )

    def _reach(self, starts: Iterable[str], stop: str | None = None) -> dict[str, int]:
        """BFS over effective successors; returns node -> visit order."""
        order: dict[str, int] = {}
        queue = deque(s for s in starts if s in self.nodes)
        while queue:
            node_id = queue.popleft()
            if node_id in order or node_id == stop:
                continue
            order[node_id] = len(order)
            queue.extend(self.successors.get(node_id, []))
        return order

    # -- control-flow nodes -------------------------------------------------

    def _check_parallel(
        self, node_id: str, config: ParallelConfig, compiled: CompiledGraph
    ) -> None:
        branches = config.branches
        if len(branches) < 2:
            self._error(
                Kind.INVALID_PARALLEL, f"parallel '{node_id}' needs at least two branches", node_id
            )
            return
        if len(set(branches)) != len(branches):
            self._error(Kind.INVALID_PARALLEL, f"parallel '{node_id}' repeats a branch", node_id)
            return
        unknown = [b for b in branches if b not in self.nodes]
        if unknown:
            self._error(
                Kind.INVALID_PARALLEL,
                f"parallel '{node_id}' names undeclared branch nodes {unknown}",
                node_id,
            )
            return

        reaches = [self._reach([b]) for b in branches]
        common = set(reaches[0]).intersection(*reaches[1:])
        if config.join:
            join = config.join if config.join in common else None
            if join is None:
                self._error(
                    Kind.INVALID_PARALLEL,
                    f"declared join '{config.join}' of '{node_id}' is not reachable "
                    "from every branch",
                    node_id,
                )
                return
        else:
            candidates = [
                n for n in sorted(reaches[0], key=reaches[0].__getitem__)
                if n in common and len(self.predecessors.get(n, ())) > 1
            ]
            if not candidates:
                self._error(
                    Kind.INVALID_PARALLEL,
                    f"branches of parallel '{node_id}' never converge on a join node",
                    node_id,
                )
                return
            join = candidates[0]

        regions: dict[str, set[str]] = {}
        for branch in branches:
            regions[branch] = set(self._reach([branch], stop=join))

        owners: dict[str, str] = {}
        keys: dict[str, str] = {}
        for branch, region in regions.items():
            if node_id in region:
                self._error(
                    Kind.INVALID_PARALLEL,
                    f"branch '{branch}' of '{node_id}' loops back to the parallel node",
                    node_id,
                )
                return
            for member in region:
                if member in owners:
                    self._error(
                        Kind.INVALID_PARALLEL,
                        f"node '{member}' belongs to branches '{owners[member]}' and '{branch}' "
                        f"of '{node_id}'",
                        node_id,
                    )
                    return
                owners[member] = branch
                key = self.nodes[member].output_key
                if key in keys and keys[key] != branch:
                    self._error(
                        Kind.INVALID_PARALLEL,
                        f"branches '{keys[key]}' and '{branch}' of '{node_id}' both write '{key}'",
                        node_id,
                    )
                    return
                keys[key] = branch

        compiled.parallel_joins[node_id] = join
        compiled.parallel_regions[node_id] = regions

    def _check_loop(self, node_id: str, config: LoopConfig) -> CompiledGraph | None:
        if not config.body.nodes:
            return None
        checker = _GraphChecker(
            config.body.nodes,
            config.body.edges,
            scope=f"loop '{node_id}' body",
            top_level=False,
            entry_hint=config.body.entry,
            agents=self.agents,
            tools=self.tools,
        )
        body = checker.run()
        for error in checker.errors:
            self.errors.append(error)
        for body_node in config.body.nodes:
            if body_node.type in (NodeType.TRIGGER, NodeType.HUMAN_INPUT):
                self._error(
                    Kind.MISSING_CONFIG,
                    f"{body_node.type} node '{body_node.id}' is not allowed inside a loop body",
                    node_id,
                )
        return body

    # -- expressions --------------------------------------------------------

    def _check_templates(self, node: NodeSpec, config: Any) -> None:
        raw = {
            k: v
            for k, v in node.config.items()
            if not (node.type == NodeType.LOOP and k == "body")
        }
        for text in _strings(raw):
            for problem in template_problems(text):
                self._error(Kind.INVALID_EXPRESSION, problem, node.id)

        if isinstance(config, ConditionConfig) and config.condition_type == "expression":
            if config.expression is not None:
                candidates = [config.expression]
            else:
                candidates = [b.condition for b in config.branches if not b.is_default]
            for expression in candidates:
                for problem in expression_problems(expression):
                    if problem not in template_problems(expression):
                        self._error(Kind.INVALID_EXPRESSION, problem, node.id)
        elif isinstance(config, TransformConfig):
            if config.transform_type == "jmespath":
                try:
                    jmespath.compile(config.expression)
                except JMESPathError as e:
                    self._error(Kind.INVALID_EXPRESSION, f"invalid jmespath: {e}", node.id)
            elif config.transform_type == "code":
                error = check_syntax(config.expression)
                if error:
                    self._error(
                        Kind.INVALID_EXPRESSION, f"invalid code expression: {error}", node.id
                    )


def _strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from _strings(item)
    elif isinstance(value, list):
        for item in value:
            yield from _strings(item)


def _check_variables(definition: WorkflowDefinition) -> list[WorkflowValidationError]:
    errors = []
    seen = set()
    for variable in definition.variables:
        if variable.name in seen:
            errors.append(
                WorkflowValidationError(
                    Kind.INVALID_VARIABLE, f"variable '{variable.name}' is declared twice"
                )
            )
        seen.add(variable.name)
        if not variable.type.accepts(variable.default_value):
            errors.append(
                WorkflowValidationError(
                    Kind.INVALID_VARIABLE,
                    f"default of '{variable.name}' is not a {variable.type}",
                )
            )
    return errors


def check_inputs(definition: WorkflowDefinition, values: Mapping[str, Any]) -> None:
    """Reject supplied inputs whose type contradicts the declared variable schema."""
    for variable in definition.variables:
        if variable.name in values and not variable.type.accepts(values[variable.name]):
            raise WorkflowValidationError(
                Kind.INVALID_VARIABLE,
                f"input '{variable.name}' must be a {variable.type}, "
                f"got {type(values[variable.name]).__name__}",
            )


def _compile(
    definition: WorkflowDefinition,
    agents: Mapping[str, AgentDefinition] | None,
    tools: Mapping[str, ToolDefinition] | None,
) -> tuple[CompiledGraph | None, list[WorkflowValidationError]]:
    checker = _GraphChecker(definition.nodes, definition.edges, agents=agents, tools=tools)
    compiled = checker.run()
    errors = checker.errors + _check_variables(definition)
    return compiled, errors


def validate_all(
    definition: WorkflowDefinition,
    agents: Mapping[str, AgentDefinition] | None = None,
    tools: Mapping[str, ToolDefinition] | None = None,
) -> list[WorkflowValidationError]:
    """
    Collect every problem of a definition.

    When ``agents``/``tools`` catalogs are given, agent and tool references are
    checked against them as well.
    """
    _, errors = _compile(definition, agents, tools)
    return errors


def validate(
    definition: WorkflowDefinition,
    agents: Mapping[str, AgentDefinition] | None = None,
    tools: Mapping[str, ToolDefinition] | None = None,
) -> CompiledGraph:
    """
    Validate a definition and compile it for execution.

    Raises:
        WorkflowValidationError: the first problem found.
    """
    compiled, errors = _compile(definition, agents, tools)
    if errors:
        logger.debug(
            "Workflow %s rejected with %d problem(s)",
            definition.id,
            len(errors),
            extra={"problems": [e.to_dict() for e in errors]},
        )
        raise errors[0]
    if compiled is None:
        raise WorkflowValidationError(
            Kind.NO_ENTRY_NODE, f"workflow '{definition.id}' has no entry node"
        )
    return compiled
