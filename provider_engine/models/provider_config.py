"""Provider configuration models (endpoint templates and response mappings)."""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _ConfigModel(BaseModel):
    """camelCase JSON keys on the wire, snake_case attributes in Python"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )


class AuthType(str, Enum):
    NONE = "none"
    HEADER = "header"
    QUERY_PARAM = "query_param"
    BEARER = "bearer"


class ResponseType(str, Enum):
    JSON_ARRAY = "json_array"
    JSON_DICTIONARY = "json_dictionary"
    JSON_OBJECT = "json_object"
    JSON_VALUE = "json_value"
    JSON_ARRAY_POSITIONAL = "json_array_positional"
    JSON_KEYED_VALUE = "json_keyed_value"
    JSON_NESTED_ARRAY = "json_nested_array"
    TEXT_REGEX = "text_regex"
    TEXT_LINES = "text_lines"


class NormalizationMode(str, Enum):
    MANUAL = "MANUAL"
    SMART_AUTO = "SMART_AUTO"
    API = "API"
    AUTO = "AUTO"


class NumberStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class WebhookStrategy(str, Enum):
    NONE = "none"
    IP_WHITELIST = "ip_whitelist"
    HMAC = "hmac"
    CUSTOM_HEADER = "custom_header"


class EndpointTemplate(_ConfigModel):
    method: str = Field(default="GET", description="HTTP method")
    path: str = Field(default="", description="Path appended to base URL, or a full URL")
    query_params: Dict[str, Any] = Field(default_factory=dict, description="Static values or $var|fallback templates")
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Dict[str, Any]] = Field(default=None, description="JSON body for non-GET calls; $var|fallback values resolved")

    @field_validator('method', mode='before')
    @classmethod
    def upper_method(cls, v):
        return str(v or "GET").upper()


class NestingLevels(_ConfigModel):
    depth: Optional[int] = None
    extract_operators: bool = False
    providers_key: Optional[str] = None
    required_field: Optional[str] = None

    @property
    def effective_required_field(self) -> Optional[str]:
        if self.required_field:
            return self.required_field
        return "provider_id" if self.extract_operators else None


class MappingConfig(_ConfigModel):
    type: ResponseType = ResponseType.JSON_OBJECT
    root_path: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)
    transform: Dict[str, str] = Field(default_factory=dict)
    status_mapping: Dict[str, NumberStatus] = Field(default_factory=dict)
    error_patterns: Dict[str, str] = Field(default_factory=dict, description="kind -> pattern (pattern -> kind also accepted)")
    error_field: Optional[str] = None

    # json_value / json_keyed_value
    value_field: Optional[str] = None
    key_field: Optional[str] = None
    # json_array_positional / json_nested_array
    position_fields: Dict[str, str] = Field(default_factory=dict)
    header_row: bool = False
    # text_regex / text_lines
    regex: Optional[str] = None
    separator: Optional[str] = None

    nesting_levels: Optional[NestingLevels] = None
    field_fallbacks: Dict[str, List[str]] = Field(default_factory=dict)
    conditional_fields: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    icon_url_template: Optional[str] = None

    @field_validator('status_mapping', mode='before')
    @classmethod
    def lower_statuses(cls, v):
        if not v:
            return {}
        return {str(raw): str(status).lower() for raw, status in v.items()}


class ErrorConfig(_ConfigModel):
    error_field: Optional[str] = None
    patterns: Dict[str, str] = Field(default_factory=dict, description="pattern -> kind (kind -> pattern also accepted)")


class WebhookConfig(_ConfigModel):
    strategy: WebhookStrategy = WebhookStrategy.NONE
    secret: Optional[str] = Field(default=None, description="Inline secret; secret_env_var takes precedence")
    secret_env_var: Optional[str] = None
    ip_whitelist: List[str] = Field(default_factory=list)
    signature_header: Optional[str] = None
    algorithm: str = "sha256"
    fields: Dict[str, str] = Field(default_factory=dict)


class ProviderConfig(_ConfigModel):
    """One record per external provider; read-only to the engine"""
    id: Optional[str] = None
    name: str
    display_name: Optional[str] = None
    is_active: bool = True
    base_url: str = Field(default="", validation_alias=AliasChoices("apiBaseUrl", "baseUrl", "base_url"))

    auth_type: AuthType = AuthType.NONE
    auth_key: Optional[str] = Field(default=None, description="Encrypted iv:tag:ciphertext or plain value")
    auth_header: Optional[str] = None
    auth_query_param: Optional[str] = None

    endpoints: Dict[str, EndpointTemplate] = Field(default_factory=dict)
    mappings: Dict[str, MappingConfig] = Field(default_factory=dict)
    webhook: Optional[WebhookConfig] = None
    error_config: Optional[ErrorConfig] = None

    rate_limit_delay_ms: Optional[int] = Field(
        default=None, validation_alias=AliasChoices("rateLimitDelay", "rateLimitDelayMs", "rate_limit_delay_ms"), ge=0
    )
    price_multiplier: float = Field(default=1.0, gt=0)
    fixed_markup: float = Field(default=0.0, ge=0, description="Markup in USD")
    currency: str = "USD"
    normalization_mode: NormalizationMode = NormalizationMode.AUTO
    normalization_rate: Optional[float] = Field(default=None, gt=0, description="Provider units per 1 USD (MANUAL)")
    deposit_spent: Optional[float] = None
    deposit_received: Optional[float] = None
    deposit_currency: str = "USD"

    use_price_optimizer: bool = False
    leaf_fields: Optional[List[str]] = Field(default=None, description="Overrides the dictionary leaf vocabulary")

    @model_validator(mode="before")
    @classmethod
    def lift_webhook_mapping(cls, data):
        # Stored records keep the webhook block alongside the response mappings
        if isinstance(data, dict):
            mappings = data.get("mappings")
            if isinstance(mappings, dict) and "webhook" in mappings:
                data = dict(data)
                data.setdefault("webhook", mappings["webhook"])
                data["mappings"] = {k: m for k, m in mappings.items() if k != "webhook"}
        return data

    @property
    def identity(self) -> str:
        """Key used for shared per-provider state (rate limiter slots)"""
        return self.id or self.name

