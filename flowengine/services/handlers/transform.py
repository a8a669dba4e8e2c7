"""Transform node handler - sandboxed Python expression or code block.

The sandbox exposes ``input``, ``trigger`` and ``nodes`` (deep copies, so the
execution namespace is never mutated), a whitelist of builtins and restricted
``math`` and ``json`` facades. Source is screened before it is compiled:
imports, dunder access, generator/frame introspection and scope escapes are
rejected. It is then compiled with RestrictedPython, so every attribute, item
and iteration access at runtime goes through a guard.
"""

import ast
import copy
import json
import math
import operator
from types import SimpleNamespace
from typing import Any, Dict, TYPE_CHECKING

from RestrictedPython import compile_restricted, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard, guarded_iter_unpack_sequence, guarded_unpack_sequence, safer_getattr,
)

from flowengine.core.errors import ExecutionError
from flowengine.core.logging import get_logger

if TYPE_CHECKING:
    from flowengine.services.node_dispatcher import DispatchContext

logger = get_logger(__name__)

SAFE_BUILTINS = {name: value for name, value in safe_builtins.items()
                 if name not in ('setattr', 'delattr', '_getattr_')}
SAFE_BUILTINS.update({
    'all': all, 'any': any, 'dict': dict, 'enumerate': enumerate, 'filter': filter,
    'list': list, 'map': map, 'max': max, 'min': min, 'reversed': reversed,
    'set': set, 'sum': sum,
})

FORBIDDEN_NAMES = frozenset([
    'eval', 'exec', 'compile', 'open', 'globals', 'locals', 'vars',
    'getattr', 'setattr', 'delattr', 'breakpoint', '__import__',
])

# Generator, coroutine, frame, traceback and code object internals
FORBIDDEN_ATTR_PREFIXES = ('gi_', 'cr_', 'ag_', 'f_', 'tb_', 'co_')

FORBIDDEN_NODES = (ast.Import, ast.ImportFrom, ast.Global, ast.Nonlocal,
                   ast.AsyncFunctionDef, ast.Await, ast.ClassDef,
                   ast.Yield, ast.YieldFrom)

INPLACE_OPERATORS = {
    '+=': operator.iadd, '-=': operator.isub, '*=': operator.imul,
    '/=': operator.itruediv, '//=': operator.ifloordiv, '%=': operator.imod,
    '**=': operator.ipow, '|=': operator.ior, '&=': operator.iand,
}

SAFE_MATH = SimpleNamespace(**{name: getattr(math, name) for name in dir(math)
                               if not name.startswith('_')})
SAFE_JSON = SimpleNamespace(loads=json.loads, dumps=json.dumps)


def _inplace(op: str, target: Any, value: Any) -> Any:
    if op not in INPLACE_OPERATORS:
        raise ExecutionError(f"Operator '{op}' is not allowed in transforms", code="SANDBOX_VIOLATION")
    return INPLACE_OPERATORS[op](target, value)


def _screen(tree: ast.AST) -> None:
    for node in ast.walk(tree):
        if isinstance(node, FORBIDDEN_NODES):
            raise ExecutionError(f"'{type(node).__name__}' is not allowed in transforms",
                                 code="SANDBOX_VIOLATION")
        if isinstance(node, ast.Attribute) and (
                node.attr.startswith('_') or node.attr.startswith(FORBIDDEN_ATTR_PREFIXES)):
            raise ExecutionError(f"Access to '{node.attr}' is not allowed", code="SANDBOX_VIOLATION")
        if isinstance(node, ast.Name) and (node.id in FORBIDDEN_NAMES or node.id.startswith('__')):
            raise ExecutionError(f"Name '{node.id}' is not allowed", code="SANDBOX_VIOLATION")


def _compile(source: str, mode: str):
    try:
        tree = ast.parse(source, mode=mode)
    except SyntaxError as e:
        raise ExecutionError(f"Syntax error in transform: {e.msg} (line {e.lineno})",
                             code="BAD_INPUT") from e
    _screen(tree)
    try:
        return compile_restricted(source, '<transform>', mode)
    except SyntaxError as e:
        # The source already parsed, so this is a restriction policy rejection
        raise ExecutionError(f"Transform rejected by sandbox: {e}", code="SANDBOX_VIOLATION") from e


def _globals(config: Dict[str, Any], context: "DispatchContext") -> Dict[str, Any]:
    nodes = copy.deepcopy(context.nodes)
    return {
        '__builtins__': SAFE_BUILTINS,
        '_getattr_': safer_getattr,
        '_getitem_': default_guarded_getitem,
        '_getiter_': default_guarded_getiter,
        '_iter_unpack_sequence_': guarded_iter_unpack_sequence,
        '_unpack_sequence_': guarded_unpack_sequence,
        '_write_': full_write_guard,
        '_inplacevar_': _inplace,
        'math': SAFE_MATH,
        'json': SAFE_JSON,
        'input': copy.deepcopy(config['input']) if config.get('input') is not None else nodes,
        'trigger': copy.deepcopy(context.trigger),
        'nodes': nodes,
        'output': None,
    }


async def handle_transform(node_id: str, config: Dict[str, Any], context: "DispatchContext") -> Any:
    """Evaluate ``expression`` or run ``code``.

    A code block returns whatever it assigns to ``output``.
    """
    expression = config.get('expression')
    code = config.get('code')
    if bool(expression) == bool(code):
        raise ExecutionError("Exactly one of 'expression' or 'code' is required", code="BAD_INPUT")

    namespace = _globals(config, context)
    try:
        if expression:
            result = eval(_compile(expression, 'eval'), namespace)
        else:
            exec(_compile(code, 'exec'), namespace)
            result = namespace.get('output')
    except ExecutionError:
        raise
    except Exception as e:
        logger.warning("[Transform] Failed", node_id=node_id, error=str(e))
        raise ExecutionError(f"Transform failed: {type(e).__name__}: {e}", code="BAD_INPUT") from e

    try:
        json.dumps(result)
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"Transform output is not JSON-serializable: {e}", code="BAD_INPUT") from e
    return result
