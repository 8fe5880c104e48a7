from prepfox.services.carriers.base import (
    Address,
    CarrierClient,
    LabelResult,
    PackageDetails,
    Rate,
)

__all__ = ["Address", "CarrierClient", "LabelResult", "PackageDetails", "Rate"]
