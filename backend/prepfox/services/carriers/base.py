from __future__ import annotations

from dataclasses import dataclass, asdict, replace
from typing import Any, Dict, List, Optional


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


@dataclass
class Address:
    name: str = ""
    company: Optional[str] = None
    address_line1: str = ""
    address_line2: Optional[str] = None
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Address":
        """Build an address from snake_case, camelCase or Shopify-style keys."""
        data = data or {}
        return cls(
            name=_pick(data, "name", "full_name", "fullName", default=""),
            company=_pick(data, "company"),
            address_line1=_pick(data, "address_line1", "addressLine1", "address1", "street1", default=""),
            address_line2=_pick(data, "address_line2", "addressLine2", "address2", "street2"),
            city=_pick(data, "city", default=""),
            state=_pick(data, "state", "province_code", "provinceCode", "province", default=""),
            postal_code=_pick(data, "postal_code", "postalCode", "zip", default=""),
            country=_pick(data, "country_code", "countryCode", "country", default="US"),
            phone=_pick(data, "phone"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PackageDetails:
    """A single parcel; weight in pounds, dimensions in inches."""

    weight: float = 1.0
    length: float = 12.0
    width: float = 12.0
    height: float = 6.0
    value: float = 100.0
    signature_required: bool = False

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PackageDetails":
        data = data or {}
        defaults = cls()
        return cls(
            weight=float(_pick(data, "weight", default=defaults.weight)),
            length=float(_pick(data, "length", default=defaults.length)),
            width=float(_pick(data, "width", default=defaults.width)),
            height=float(_pick(data, "height", default=defaults.height)),
            value=float(_pick(data, "value", "declared_value", "declaredValue", default=defaults.value)),
            signature_required=bool(_pick(data, "signature_required", "signatureRequired", default=False)),
        )


@dataclass
class Rate:
    carrier: str
    service_code: str
    service_name: str
    rate: float
    currency: str = "USD"
    service_type: str = "standard"
    estimated_days: Optional[str] = None
    markup_percent: float = 0.0
    markup_amount: float = 0.0
    total_rate: Optional[float] = None
    is_prepfox_managed: bool = False
    carrier_configuration_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.total_rate is None:
            self.total_rate = round(self.rate + self.markup_amount, 2)

    def with_markup(
        self,
        markup_percent: float,
        *,
        is_prepfox_managed: bool = False,
        carrier_configuration_id: Optional[str] = None,
    ) -> "Rate":
        markup_amount = round(self.rate * (markup_percent or 0) / 100, 2)
        return replace(
            self,
            markup_percent=markup_percent or 0,
            markup_amount=markup_amount,
            total_rate=round(self.rate + markup_amount, 2),
            is_prepfox_managed=is_prepfox_managed,
            carrier_configuration_id=carrier_configuration_id,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LabelResult:
    carrier: str
    service_code: str
    tracking_number: str
    label_data: Optional[str]
    label_format: str = "PDF"
    cost: Optional[float] = None
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CarrierClient:
    """Interface every carrier integration implements."""

    carrier_name: str = ""

    async def get_rates(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
    ) -> List[Rate]:  # pragma: no cover - interface
        raise NotImplementedError

    async def create_label(
        self,
        from_address: Address,
        to_address: Address,
        package: PackageDetails,
        service_code: str,
    ) -> LabelResult:  # pragma: no cover - interface
        raise NotImplementedError
