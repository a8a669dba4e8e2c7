"""AI node handler - chat model call through LangChain, optionally streamed."""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Type, TYPE_CHECKING

import httpx
from langchain_anthropic import ChatAnthropic
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from flowengine.constants import AI_API_KEY_SECRETS, DEFAULT_AI_MODELS, EVENT_NODE_PARTIAL
from flowengine.core.errors import CancellationSignal, ExecutionError
from flowengine.core.logging import get_logger
from flowengine.services.secrets import SecretReference

if TYPE_CHECKING:
    from flowengine.services.node_dispatcher import DispatchContext
    from flowengine.services.secrets import SecretResolver

logger = get_logger(__name__)


# =============================================================================
# AI PROVIDER REGISTRY
# =============================================================================

@dataclass
class ProviderConfig:
    """Configuration for an AI provider."""
    name: str
    model_class: Type
    api_key_param: str  # Parameter name for API key in model constructor
    max_tokens_param: str
    default_model: str


PROVIDER_CONFIGS: Dict[str, ProviderConfig] = {
    'openai': ProviderConfig(
        name='openai',
        model_class=ChatOpenAI,
        api_key_param='api_key',
        max_tokens_param='max_tokens',
        default_model=DEFAULT_AI_MODELS['openai'],
    ),
    'anthropic': ProviderConfig(
        name='anthropic',
        model_class=ChatAnthropic,
        api_key_param='api_key',
        max_tokens_param='max_tokens',
        default_model=DEFAULT_AI_MODELS['anthropic'],
    ),
}


def create_chat_model(provider: str, api_key: str, model: str,
                      temperature: float, max_tokens: Optional[int]):
    """Create LangChain model instance using provider registry."""
    config = PROVIDER_CONFIGS.get(provider)
    if not config:
        raise ExecutionError(f"Unsupported provider: {provider}", code="BAD_INPUT")

    kwargs = {
        config.api_key_param: api_key,
        'model': model,
        'temperature': temperature,
        'max_retries': 0,  # retries belong to the engine
    }
    if max_tokens:
        kwargs[config.max_tokens_param] = max_tokens
    return config.model_class(**kwargs)


def classify_provider_error(error: Exception) -> ExecutionError:
    """Map a provider SDK exception to a classified ExecutionError."""
    status = getattr(error, 'status_code', None)
    if isinstance(status, int):
        return ExecutionError.from_status(status, f"Model provider error: {error}")
    name = type(error).__name__
    if isinstance(error, (TimeoutError, httpx.TimeoutException)) or 'Timeout' in name:
        return ExecutionError(f"Model provider timed out: {error}", code="TIMEOUT")
    if isinstance(error, httpx.TransportError) or 'Connection' in name:
        return ExecutionError(f"Model provider unreachable: {error}", code="CONNECTION_ERROR")
    return ExecutionError(f"Model provider error: {name}: {error}", code="PROVIDER_ERROR")


def _chunk_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Anthropic content blocks
        return "".join(block.get('text', '') if isinstance(block, dict) else str(block)
                       for block in content)
    return str(content or "")


def _to_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ExecutionError(f"'{name}' must be a number, got {value!r}", code="BAD_INPUT") from e


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('true', '1', 'yes')
    return bool(value)


async def _stream(chat_model, messages: List[BaseMessage], node_id: str,
                  context: "DispatchContext") -> str:
    """Stream chunks to ``on_partial``; stop between chunks on cancel."""
    parts: List[str] = []
    stream = chat_model.astream(messages)
    try:
        index = 0
        async for chunk in stream:
            text = _chunk_text(getattr(chunk, 'content', chunk))
            if text:
                parts.append(text)
                await context.on_partial({"type": EVENT_NODE_PARTIAL, "index": index, "delta": text})
                index += 1
            if context.cancel_event.is_set():
                logger.info("[AI] Stream cancelled", node_id=node_id, chunks=index)
                raise CancellationSignal()
    finally:
        await stream.aclose()
    return "".join(parts)


async def handle_ai(
    node_id: str,
    config: Dict[str, Any],
    context: "DispatchContext",
    secrets: "SecretResolver",
    model_factory: Callable = create_chat_model,
) -> Dict[str, Any]:
    """Run one chat completion.

    The API key comes from the node's ``api_key`` secret reference (already
    resolved by the dispatcher) or the provider's well-known secret name.

    Returns:
        ``{"text", "model", "provider"}``
    """
    provider = config.get('provider') or 'openai'
    if provider not in PROVIDER_CONFIGS:
        raise ExecutionError(f"Unsupported provider: {provider}", code="BAD_INPUT")
    model = config.get('model') or PROVIDER_CONFIGS[provider].default_model
    prompt = config.get('prompt')
    if not prompt:
        raise ExecutionError("Prompt is required", code="BAD_INPUT")

    api_key = config.get('api_key')
    if not api_key:
        api_key = await secrets.resolve(SecretReference(AI_API_KEY_SECRETS[provider]))

    max_tokens = config.get('max_tokens')
    chat_model = model_factory(
        provider=provider,
        api_key=api_key,
        model=model,
        temperature=_to_float(config.get('temperature', 0.7), 'temperature'),
        max_tokens=int(_to_float(max_tokens, 'max_tokens')) if max_tokens is not None else None,
    )

    messages: List[BaseMessage] = []
    if config.get('system_prompt'):
        messages.append(SystemMessage(content=str(config['system_prompt'])))
    messages.append(HumanMessage(content=str(prompt)))

    streaming = _to_bool(config.get('stream', False))
    logger.info("[AI] Invoking model", node_id=node_id, provider=provider, model=model, stream=streaming)

    try:
        if streaming:
            text = await _stream(chat_model, messages, node_id, context)
        else:
            response = await chat_model.ainvoke(messages)
            text = _chunk_text(response.content)
    except (CancellationSignal, ExecutionError):
        raise
    except Exception as e:
        error = classify_provider_error(e)
        logger.warning("[AI] Provider call failed", node_id=node_id, provider=provider,
                       code=error.code, error=str(e))
        raise error from e

    return {"text": text, "model": model, "provider": provider}
