from decimal import Decimal
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

# Decimal in Python, plain JSON number on the wire.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

RequestStatus = Literal["open", "closed", "expired"]
ClosedReason = Literal["offer_accepted", "time_limit"]
OfferStatus = Literal["pending", "accepted", "declined", "ignored"]
PaymentStatus = Literal["unpaid", "pending", "paid", "failed"]
VendorStatus = Literal["pending_review", "approved", "rejected"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class VendorOffer(ApiModel):
    id: str
    request_id: str
    vendor_name: str
    vendor_email: Optional[str] = None
    price: Money
    message: str = ""
    status: OfferStatus
    payment_status: PaymentStatus = "unpaid"
    stripe_session_id: Optional[str] = None
    stripe_payment_intent: Optional[str] = None
    paid_at: Optional[str] = None
    created_at: str


class ServiceRequest(ApiModel):
    id: str
    customer_name: str
    customer_email: str
    customer_phone: Optional[str] = None
    selected_services: list[str]
    budget: Money
    event_date: Optional[str] = None
    address: Optional[str] = None
    notes: str = ""
    status: RequestStatus
    offer_response_hours: int
    created_at: str
    expires_at: str
    closed_at: Optional[str] = None
    closed_reason: Optional[ClosedReason] = None
    offers: list[VendorOffer] = Field(default_factory=list)


class ServiceRequestCreate(ApiModel):
    # Required-ness is checked by the lifecycle manager so missing fields map to 400.
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    selected_services: Optional[list[str]] = None
    budget: Optional[Decimal] = None
    event_date: Optional[str] = None
    address: Optional[str] = None
    notes: Optional[str] = None
    offer_response_hours: Optional[float] = None


class VendorOfferCreate(ApiModel):
    vendor_name: Optional[str] = None
    vendor_email: Optional[str] = None
    price: Optional[Decimal] = None
    message: Optional[str] = None


class OfferStatusUpdateRequest(ApiModel):
    status: str
    customer_email: Optional[str] = None


class RequestEnvelope(ApiModel):
    request: ServiceRequest


class RequestListEnvelope(ApiModel):
    requests: list[ServiceRequest]


class OfferEnvelope(ApiModel):
    offer: VendorOffer


class OfferStatusResult(ApiModel):
    offer: VendorOffer
    request_status: RequestStatus


class VendorOfferWithRequest(VendorOffer):
    request: ServiceRequest


class VendorOfferListEnvelope(ApiModel):
    offers: list[VendorOfferWithRequest]


class Vendor(ApiModel):
    id: str
    business_name: str
    contact_name: str
    email: str
    status: VendorStatus = "pending_review"
    contract_accepted: bool = False
    contract_accepted_at: Optional[str] = None
    training_completed: bool = False
    training_completed_at: Optional[str] = None
    stripe_account_id: Optional[str] = None
    created_at: str


class VendorCompliance(ApiModel):
    status: VendorStatus
    admin_approved: bool
    contract_accepted: bool
    training_completed: bool
    can_publish: bool


class VendorCreateRequest(ApiModel):
    business_name: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    stripe_account_id: Optional[str] = None


class VendorComplianceUpdateRequest(ApiModel):
    status: Optional[VendorStatus] = None
    contract_accepted: Optional[bool] = None
    training_completed: Optional[bool] = None
    stripe_account_id: Optional[str] = None


class VendorEnvelope(ApiModel):
    vendor: Vendor
    compliance: VendorCompliance


class ComplianceEnvelope(ApiModel):
    compliance: VendorCompliance


class VendorPost(ApiModel):
    id: str
    vendor_id: str
    title: str
    service_name: str
    description: Optional[str] = None
    city: Optional[str] = None
    base_price: Optional[Money] = None
    availability: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    created_at: str
    updated_at: str


class PublicVendorPost(VendorPost):
    vendor_name: str


class VendorPostCreateRequest(ApiModel):
    vendor_email: Optional[str] = None
    title: Optional[str] = None
    service_name: Optional[str] = None
    description: Optional[str] = None
    city: Optional[str] = None
    base_price: Optional[Decimal] = None
    availability: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


class VendorPostUpdateRequest(VendorPostCreateRequest):
    pass


class VendorPostEnvelope(ApiModel):
    post: VendorPost


class VendorPostListEnvelope(ApiModel):
    posts: list[VendorPost]


class PublicVendorPostListEnvelope(ApiModel):
    posts: list[PublicVendorPost]


class CheckoutSessionCreateRequest(ApiModel):
    request_id: Optional[str] = None
    offer_id: Optional[str] = None
    customer_email: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutSessionResponse(ApiModel):
    session_id: str
    url: Optional[str] = None


class WebhookAck(ApiModel):
    received: bool = True
    event: Optional[str] = None
