"""Models package for the provider engine."""

from .canonical import (
    Country, NumberResult, PriceData, ProviderResponse, RequestTrace, Service,
    SetStatusResult, SmsMessage, StatusResult, WebhookPayload, WebhookSms,
    WebhookVerificationResult,
)
from .provider_config import (
    AuthType, EndpointTemplate, ErrorConfig, MappingConfig, NestingLevels,
    NormalizationMode, NumberStatus, ProviderConfig, ResponseType, WebhookConfig,
    WebhookStrategy,
)
