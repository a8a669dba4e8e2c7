"""Trigger node handler."""

from typing import Any, Dict, TYPE_CHECKING

if TYPE_CHECKING:
    from flowengine.services.node_dispatcher import DispatchContext


async def handle_trigger(node_id: str, config: Dict[str, Any], context: "DispatchContext") -> Dict[str, Any]:
    """The entry node's output is the payload the execution was started with."""
    return dict(context.trigger)
