"""Node handlers package, one module per node kind.

- trigger.py: Trigger (entry node)
- http.py: HTTP request/response call
- transform.py: Sandboxed expression or code block
- condition.py: Rule-based branch selection
- ai.py: Generative model call, optionally streamed
- delay.py: Durable timed pause

Every handler has the signature ``(node_id, config, context, **bound)`` and
returns the node output or raises ``ExecutionError``.
"""

from .ai import (
    create_chat_model,
    handle_ai,
)

from .condition import (
    handle_condition,
)

from .delay import (
    handle_delay,
    requested_delay,
)

from .http import (
    handle_http,
)

from .transform import (
    handle_transform,
)

from .trigger import (
    handle_trigger,
)

__all__ = [
    'create_chat_model',
    'handle_ai',
    'handle_condition',
    'handle_delay',
    'requested_delay',
    'handle_http',
    'handle_transform',
    'handle_trigger',
]
