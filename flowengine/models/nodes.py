"""Per-kind node configuration schemas with a discriminated union.

Configs are validated when a graph is saved, before template resolution, so
any field that is normally numeric or boolean also accepts a string holding
``{{ ... }}`` interpolation. Secret-bearing fields accept a
``{"$secret": "NAME"}`` reference instead of a literal value.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from flowengine.constants import AI_PROVIDERS, CONDITION_OPERATORS, HTTP_METHODS, SECRET_MARKER


def _require_template(value: str) -> str:
    if "{{" not in value or "}}" not in value:
        raise ValueError("expected a literal value or a {{ template }} expression")
    return value


TemplateString = Annotated[str, AfterValidator(_require_template)]


class SecretRef(BaseModel):
    """``{"$secret": "NAME"}`` - resolved only at dispatch time."""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")
    name: str = Field(alias=SECRET_MARKER, min_length=1)


# =============================================================================
# BASE
# =============================================================================

class BaseNodeConfig(BaseModel):
    """Base class for all node configs."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)
    timeout: Optional[Union[float, TemplateString]] = Field(default=None)

    @model_validator(mode="after")
    def check_timeout(self):
        if isinstance(self.timeout, (int, float)) and self.timeout <= 0:
            raise ValueError("timeout must be positive")
        return self


# =============================================================================
# KIND SCHEMAS
# =============================================================================

class TriggerConfig(BaseNodeConfig):
    """Entry node. Its output is the trigger payload."""
    kind: Literal["trigger"] = "trigger"


class HttpConfig(BaseNodeConfig):
    """Request/response call to an external endpoint."""
    kind: Literal["http"] = "http"
    url: str = Field(min_length=1)
    method: str = "GET"
    headers: Dict[str, Union[str, SecretRef]] = Field(default_factory=dict)
    query: Dict[str, Any] = Field(default_factory=dict)
    json_body: Optional[Any] = Field(default=None, alias="json")
    body: Optional[str] = None
    expect_json: Union[bool, TemplateString] = True

    @model_validator(mode="after")
    def check_method(self):
        if "{{" not in self.method and self.method.upper() not in HTTP_METHODS:
            raise ValueError(f"unsupported HTTP method '{self.method}'")
        if self.json_body is not None and self.body is not None:
            raise ValueError("set either 'json' or 'body', not both")
        return self


class TransformConfig(BaseNodeConfig):
    """Sandboxed data transform: one ``expression`` or a ``code`` block."""
    kind: Literal["transform"] = "transform"
    expression: Optional[str] = None
    code: Optional[str] = None
    input: Any = None

    @model_validator(mode="after")
    def check_source(self):
        if bool(self.expression) == bool(self.code):
            raise ValueError("exactly one of 'expression' or 'code' is required")
        return self


class ConditionRule(BaseModel):
    """One branch rule; either a single comparison or a group of them."""
    model_config = ConfigDict(extra="allow")
    branch: str = Field(min_length=1)
    field: Optional[str] = None
    operator: str = "eq"
    value: Any = None
    conditions: Optional[List[Dict[str, Any]]] = None
    logic: Literal["and", "or"] = "and"

    @model_validator(mode="after")
    def check_operator(self):
        operators = [self.operator] + [c.get("operator", "eq") for c in self.conditions or []]
        for op in operators:
            if op not in CONDITION_OPERATORS:
                raise ValueError(f"unknown operator '{op}'")
        return self


class ConditionConfig(BaseNodeConfig):
    """Ordered rules mapping the input to a branch label."""
    kind: Literal["condition"] = "condition"
    rules: List[ConditionRule] = Field(default_factory=list)
    input: Any = None
    default: Optional[str] = None
    match_policy: Optional[Literal["first", "all"]] = None

    @model_validator(mode="after")
    def check_rules(self):
        if not self.rules and not self.default:
            raise ValueError("a condition needs at least one rule or a default branch")
        return self

    def branch_labels(self) -> List[str]:
        labels = [r.branch for r in self.rules]
        if self.default:
            labels.append(self.default)
        return labels


class AiConfig(BaseNodeConfig):
    """Generative model call, optionally streamed."""
    kind: Literal["ai"] = "ai"
    prompt: str = Field(min_length=1)
    provider: str = "openai"
    model: Optional[str] = None
    system_prompt: Optional[str] = None
    temperature: Union[float, TemplateString] = 0.7
    max_tokens: Optional[Union[int, TemplateString]] = None
    stream: Union[bool, TemplateString] = False
    api_key: Optional[SecretRef] = None

    @model_validator(mode="after")
    def check_provider(self):
        if "{{" not in self.provider and self.provider not in AI_PROVIDERS:
            raise ValueError(f"unknown provider '{self.provider}'")
        if isinstance(self.temperature, float) and not 0.0 <= self.temperature <= 2.0:
            raise ValueError("temperature must be between 0 and 2")
        return self


class DelayConfig(BaseNodeConfig):
    """Timed pause: ``seconds`` from dispatch or ``until`` an ISO timestamp."""
    kind: Literal["delay"] = "delay"
    seconds: Optional[Union[float, TemplateString]] = None
    until: Optional[str] = None

    @model_validator(mode="after")
    def check_duration(self):
        if (self.seconds is None) == (self.until is None):
            raise ValueError("exactly one of 'seconds' or 'until' is required")
        if isinstance(self.seconds, float) and self.seconds < 0:
            raise ValueError("seconds must be >= 0")
        return self


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

NodeConfig = Annotated[
    Union[TriggerConfig, HttpConfig, TransformConfig, ConditionConfig, AiConfig, DelayConfig],
    Field(discriminator="kind"),
]

# Created once at module level
_node_config_adapter = TypeAdapter(NodeConfig)


def validate_node_config(kind: str, config: Dict[str, Any]) -> BaseNodeConfig:
    """Validate a node's config against its kind's schema.

    Raises:
        pydantic.ValidationError: with locations relative to the config
            (the discriminator tag is the first element of each ``loc``).
    """
    return _node_config_adapter.validate_python({**config, "kind": kind})
