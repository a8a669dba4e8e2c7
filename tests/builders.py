"""Graph builders and test doubles shared by the test modules."""

import asyncio
from typing import Any, Dict, List, Optional

from flowengine.models.graph import Edge, Node, RetryPolicyModel, WorkflowGraph
from flowengine.services.node_dispatcher import DispatchContext
from flowengine.services.timers import TimerService


class FakeTimerService(TimerService):
    """Records every requested delay and returns at once.

    With ``block=True`` a wait only ends when its cancel event is set, which
    pins a node in backoff until the test cancels it.
    """

    def __init__(self, block: bool = False):
        super().__init__()
        self.delays: List[float] = []
        self.block = block
        self.waiting = asyncio.Event()

    async def wait(self, delay, cancel_event=None, key=None):
        self.delays.append(round(delay, 6))
        if self.block and cancel_event is not None:
            self.waiting.set()
            await cancel_event.wait()
            return False
        await asyncio.sleep(0)
        return not (cancel_event is not None and cancel_event.is_set())


def node(node_id: str, kind: str, config: Optional[Dict[str, Any]] = None, **kwargs) -> Node:
    return Node(id=node_id, kind=kind, config=config or {}, **kwargs)


def edge(source: str, target: str, port: Optional[str] = None) -> Edge:
    return Edge(source=source, target=target, source_port=port)


def graph(nodes: List[Node], edges: List[Edge], workflow_id: str = "wf-1") -> WorkflowGraph:
    return WorkflowGraph(id=workflow_id, name="Test", nodes=nodes, edges=edges)


def no_jitter(max_attempts: int = 3, initial_delay: float = 1.0,
              multiplier: float = 2.0) -> RetryPolicyModel:
    return RetryPolicyModel(max_attempts=max_attempts, initial_delay=initial_delay,
                            backoff_multiplier=multiplier, jitter=0.0)


def dispatch_context(node_id: str = "n1", namespace: Optional[Dict[str, Any]] = None,
                     **kwargs) -> DispatchContext:
    return DispatchContext(
        execution_id="exec-1",
        workflow_id="wf-1",
        node_id=node_id,
        namespace=namespace or {"trigger": {}, "nodes": {}, "execution": {"id": "exec-1"}},
        **kwargs,
    )


def linear_graph(workflow_id: str = "wf-1") -> WorkflowGraph:
    """trigger -> transform -> transform."""
    return graph([
        node("start", "trigger"),
        node("double", "transform", {"expression": "trigger['value'] * 2"}),
        node("label", "transform", {"expression": "'total=' + str(nodes['double'])"}),
    ], [edge("start", "double"), edge("double", "label")], workflow_id)
