"""
Canonical records returned by domain operations.

Independent of any provider's wire format.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ProviderResponse:
    """Decoded provider response: ``kind`` is 'json' or 'text'"""
    kind: str
    data: Any
    status: int = 200
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def is_json(self) -> bool:
        return self.kind == 'json'


@dataclass
class Country:
    id: str
    name: str
    code: Optional[str] = None
    flag_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'code': self.code, 'name': self.name, 'flagUrl': self.flag_url}


@dataclass
class Service:
    id: str
    name: str
    code: Optional[str] = None
    icon_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'code': self.code, 'name': self.name, 'iconUrl': self.icon_url}


@dataclass
class NumberResult:
    activation_id: str
    phone_number: str
    country_code: str
    service_code: str
    price: Optional[float] = None
    raw_price: Optional[float] = None
    expires_at: Optional[datetime] = None
    operator: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'activationId': self.activation_id,
            'phoneNumber': self.phone_number,
            'countryCode': self.country_code,
            'serviceCode': self.service_code,
            'price': self.price,
            'rawPrice': self.raw_price,
            'expiresAt': self.expires_at.isoformat() if self.expires_at else None,
            'operator': self.operator,
        }


@dataclass
class SmsMessage:
    id: str
    sender: str
    content: str
    code: Optional[str] = None
    received_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'sender': self.sender,
            'content': self.content,
            'code': self.code,
            'receivedAt': self.received_at.isoformat(),
        }


@dataclass
class StatusResult:
    status: str = 'pending'
    messages: List[SmsMessage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'status': self.status, 'messages': [m.to_dict() for m in self.messages]}


@dataclass
class SetStatusResult:
    success: bool
    raw: Any = None
    parsed: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class PriceData:
    country: str
    service: str
    cost: float
    count: int
    operator: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'country': self.country,
            'service': self.service,
            'operator': self.operator,
            'cost': self.cost,
            'count': self.count,
        }


@dataclass
class RequestTrace:
    """Last request/response pair kept for diagnostics; headers are already masked"""
    method: str
    url: str
    headers: Dict[str, str]
    response_status: int
    response_body: Any
    request_time_ms: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method,
            'url': self.url,
            'headers': self.headers,
            'responseStatus': self.response_status,
            'responseBody': self.response_body,
            'requestTime': self.request_time_ms,
        }


@dataclass
class WebhookSms:
    text: str
    sender: str
    received_at: datetime
    code: Optional[str] = None


@dataclass
class WebhookPayload:
    provider: str
    activation_id: str
    sms: WebhookSms
    raw_payload: Any = None
    event_type: str = 'sms.received'
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider': self.provider,
            'eventType': self.event_type,
            'activationId': self.activation_id,
            'sms': {
                'text': self.sms.text,
                'code': self.sms.code,
                'sender': self.sms.sender,
                'receivedAt': self.sms.received_at.isoformat(),
            },
            'timestamp': self.timestamp.isoformat(),
        }


@dataclass
class WebhookVerificationResult:
    valid: bool
    error: Optional[str] = None
