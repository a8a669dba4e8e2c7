"""Condition node handler - rule-based branch selection."""

from typing import Any, Dict, TYPE_CHECKING

from flowengine.core.errors import ExecutionError
from flowengine.services.execution.conditions import choose_branches

if TYPE_CHECKING:
    from flowengine.services.node_dispatcher import DispatchContext


async def handle_condition(
    node_id: str,
    config: Dict[str, Any],
    context: "DispatchContext",
    default_policy: str = "first",
) -> Dict[str, Any]:
    """Evaluate rules against ``input`` (default: the trigger payload).

    Returns:
        ``{"branch": label}``, plus ``"branches"`` under the ``all`` policy
    """
    policy = config.get('match_policy') or default_policy
    if policy not in ("first", "all"):
        raise ExecutionError(f"Unknown match policy '{policy}'", code="BAD_INPUT")

    data = config.get('input')
    if data is None:
        data = context.trigger

    branch, branches = choose_branches(config.get('rules') or [], data, policy, config.get('default'))
    output: Dict[str, Any] = {"branch": branch}
    if policy == "all":
        output["branches"] = branches
    return output
