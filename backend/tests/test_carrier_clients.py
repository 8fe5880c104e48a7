import httpx
import pytest
from fastapi import HTTPException

from prepfox.services.carriers import Address, PackageDetails
from prepfox.services.carriers import canada_post
from prepfox.services.carriers.canada_post import CanadaPostClient
from prepfox.services.carriers.shipstation import ShipStationClient
from prepfox.services.carriers.ups import UPSClient, build_rate_request, parse_rated_shipments

from conftest import FakeResponse


US_FROM = Address(name="Warehouse", address_line1="1 Main St", city="Austin", state="TX", postal_code="78701", country="US")
US_TO = Address(name="Buyer", address_line1="9 Elm St", city="Denver", state="CO", postal_code="80202", country="US")
CA_FROM = Address(name="Depot", address_line1="100 King St", city="Toronto", state="ON", postal_code="M5H 1A1", country="CA")
CA_TO = Address(name="Client", address_line1="5 Rue", city="Montreal", state="QC", postal_code="h2x 1y4", country="CA")


def _rated(code, amount, negotiated=None):
    shipment = {"Service": {"Code": code}, "TotalCharges": {"MonetaryValue": str(amount), "CurrencyCode": "USD"}}
    if negotiated is not None:
        shipment["NegotiatedRateCharges"] = {"TotalCharge": {"MonetaryValue": str(negotiated), "CurrencyCode": "USD"}}
    return shipment


def test_address_and_package_accept_mixed_key_styles():
    address = Address.from_dict({"addressLine1": "1 Main", "postalCode": "78701", "province_code": "TX", "country_code": "US"})
    package = PackageDetails.from_dict({"weight": "2.5", "declaredValue": 40})

    assert address.address_line1 == "1 Main"
    assert address.postal_code == "78701"
    assert address.state == "TX"
    assert package.weight == 2.5
    assert package.value == 40.0
    assert package.length == 12.0


def test_rate_request_includes_negotiated_indicator_only_when_enabled():
    plain = build_rate_request(US_FROM, US_TO, PackageDetails(), "ACC1")
    negotiated = build_rate_request(US_FROM, US_TO, PackageDetails(), "ACC1", negotiated_rates=True)

    assert "ShipmentRatingOptions" not in plain["RateRequest"]["Shipment"]
    assert negotiated["RateRequest"]["Shipment"]["ShipmentRatingOptions"] == {"NegotiatedRatesIndicator": ""}
    assert plain["RateRequest"]["Request"]["RequestOption"] == "Shop"
    assert plain["RateRequest"]["Shipment"]["Shipper"]["ShipperNumber"] == "ACC1"


def test_parse_prefers_negotiated_charges_and_accepts_single_object():
    rates = parse_rated_shipments({"RateResponse": {"RatedShipment": _rated("03", 20.5, negotiated=17.25)}})

    assert len(rates) == 1
    assert rates[0].rate == 17.25
    assert rates[0].service_name == "UPS Ground"
    assert rates[0].service_type == "standard"


def test_parse_filters_services_for_canadian_origin():
    body = {"RateResponse": {"RatedShipment": [_rated("03", 10), _rated("11", 12), _rated("65", 30)]}}

    codes = [r.service_code for r in parse_rated_shipments(body, canadian_origin=True)]

    assert codes == ["11", "65"]


@pytest.mark.asyncio
async def test_ups_get_rates_posts_shop_request(fake_http):
    fake_http.add(
        "POST",
        "/api/rating/v1/Shop",
        FakeResponse(200, {"RateResponse": {"RatedShipment": [_rated("01", 55), _rated("03", 12)]}}),
    )
    client = UPSClient("tok", "ACC1", base_url="https://wwwcie.ups.com")

    rates = await client.get_rates(US_FROM, US_TO, PackageDetails(weight=3.5))

    assert {r.service_code for r in rates} == {"01", "03"}
    call = fake_http.calls[0]
    assert call["url"] == "https://wwwcie.ups.com/api/rating/v1/Shop"
    assert call["headers"]["Authorization"] == "Bearer tok"
    assert call["json"]["RateRequest"]["Shipment"]["Package"]["PackageWeight"]["Weight"] == "3.5"


@pytest.mark.asyncio
async def test_ups_rating_error_becomes_carrier_error(fake_http):
    fake_http.add(
        "POST",
        "/api/rating",
        FakeResponse(400, {"response": {"errors": [{"code": "111210", "message": "Invalid postal code"}]}}),
    )

    with pytest.raises(HTTPException) as exc:
        await UPSClient("tok", "ACC1").get_rates(US_FROM, US_TO, PackageDetails())

    assert exc.value.status_code == 502
    assert exc.value.detail["message"] == "Invalid postal code"


@pytest.mark.asyncio
async def test_ups_network_failures_become_carrier_errors(fake_http):
    fake_http.add("POST", "/api/rating", httpx.ConnectTimeout("timed out"))
    fake_http.add("POST", "/api/shipments", httpx.ConnectError("refused"))
    client = UPSClient("tok", "ACC1")

    with pytest.raises(HTTPException) as rating:
        await client.get_rates(US_FROM, US_TO, PackageDetails())
    with pytest.raises(HTTPException) as label:
        await client.create_label(US_FROM, US_TO, PackageDetails(), "03")

    assert (rating.value.status_code, rating.value.detail["code"]) == (502, "carrier_error")
    assert (label.value.status_code, label.value.detail["code"]) == (502, "carrier_error")


@pytest.mark.asyncio
async def test_ups_label_with_rejected_token_raises_token_expired(fake_http):
    fake_http.add(
        "POST",
        "/api/shipments",
        FakeResponse(401, {"response": {"errors": [{"code": "250002", "message": "Invalid Authentication Information."}]}}),
    )

    with pytest.raises(HTTPException) as exc:
        await UPSClient("tok", "ACC1").create_label(US_FROM, US_TO, PackageDetails(), "03")

    assert exc.value.status_code == 401
    assert exc.value.detail["code"] == "token_expired"


@pytest.mark.asyncio
async def test_ups_label_parses_tracking_and_image(fake_http):
    fake_http.add(
        "POST",
        "/api/shipments/v2409/ship",
        FakeResponse(
            200,
            {
                "ShipmentResponse": {
                    "ShipmentResults": {
                        "ShipmentIdentificationNumber": "1Z999",
                        "ShipmentCharges": {"TotalCharges": {"MonetaryValue": "14.20", "CurrencyCode": "USD"}},
                        "PackageResults": [{"TrackingNumber": "1Z999", "ShippingLabel": {"GraphicImage": "R0lGOD"}}],
                    }
                }
            },
        ),
    )

    label = await UPSClient("tok", "ACC1").create_label(US_FROM, US_TO, PackageDetails(signature_required=True), "03")

    assert label.tracking_number == "1Z999"
    assert label.label_data == "R0lGOD"
    assert label.cost == 14.2
    shipment = fake_http.calls[0]["json"]["ShipmentRequest"]["Shipment"]
    assert shipment["ShipmentServiceOptions"]["DeliveryConfirmation"]["DCISType"] == "1"


def test_mailing_scenario_converts_units_and_normalizes_postal_codes():
    xml = canada_post.build_mailing_scenario("0001234567", CA_FROM, CA_TO, PackageDetails(weight=2, length=10, width=5, height=4))

    assert "<customer-number>0001234567</customer-number>" in xml
    assert "<weight>0.907</weight>" in xml
    assert "<length>25.40</length>" in xml
    assert "<origin-postal-code>M5H1A1</origin-postal-code>" in xml
    assert "<domestic><postal-code>H2X1Y4</postal-code></domestic>" in xml


def test_mailing_scenario_destination_kinds():
    us = canada_post.build_mailing_scenario("1", CA_FROM, US_TO, PackageDetails())
    intl = canada_post.build_mailing_scenario("1", CA_FROM, Address(country="GB", postal_code="SW1"), PackageDetails())

    assert "<united-states><zip-code>80202</zip-code></united-states>" in us
    assert "<international><country-code>GB</country-code></international>" in intl


def test_weight_has_a_floor():
    assert canada_post.weight_kg(0) == canada_post.MIN_WEIGHT_KG


PRICE_QUOTES = f"""<?xml version="1.0" encoding="UTF-8"?>
<price-quotes xmlns="{canada_post.RATE_NS}">
  <price-quote>
    <service-code>DOM.EP</service-code>
    <service-name>Expedited Parcel</service-name>
    <price-details><due>18.42</due></price-details>
  </price-quote>
  <price-quote>
    <service-code>DOM.PC</service-code>
    <service-name>Priority</service-name>
    <price-details><due>40.10</due></price-details>
  </price-quote>
</price-quotes>"""


@pytest.mark.asyncio
async def test_canada_post_live_rates(fake_http):
    fake_http.add("POST", "/rs/ship/price", FakeResponse(200, text=PRICE_QUOTES))
    client = CanadaPostClient("user", "pass", "0001234567")

    rates = await client.get_rates(CA_FROM, CA_TO, PackageDetails())

    assert [(r.service_code, r.rate) for r in rates] == [("DOM.EP", 18.42), ("DOM.PC", 40.10)]
    assert rates[0].currency == "CAD"
    assert rates[1].service_type == "overnight"
    call = fake_http.calls[0]
    assert call["headers"]["Content-Type"] == canada_post.RATE_MEDIA_TYPE
    assert b"mailing-scenario" in call["content"]


@pytest.mark.asyncio
async def test_canada_post_without_credentials_returns_estimates(fake_http):
    rates = await CanadaPostClient(None, None, None).get_rates(CA_FROM, US_TO, PackageDetails(weight=1))

    assert [r.service_code for r in rates] == ["USA.SP.AIR", "USA.TP", "USA.EP", "USA.XP"]
    assert rates[0].rate == 8.99
    assert fake_http.calls == []


@pytest.mark.asyncio
async def test_canada_post_http_failure_falls_back_with_weight_multiplier(fake_http):
    fake_http.add("POST", "/rs/ship/price", FakeResponse(500, text="oops"))
    package = PackageDetails(weight=10)

    rates = await CanadaPostClient("user", "pass", "1").get_rates(CA_FROM, CA_TO, package)

    multiplier = canada_post.weight_kg(10) * 0.5 + 0.5
    assert [r.service_code for r in rates] == ["DOM.RP", "DOM.EP", "DOM.PC"]
    assert rates[0].rate == round(15.99 * multiplier, 2)


@pytest.mark.asyncio
async def test_canada_post_network_error_falls_back(fake_http):
    fake_http.add("POST", "/rs/ship/price", httpx.ConnectError("down"))

    rates = await CanadaPostClient("user", "pass", "1").get_rates(CA_FROM, CA_TO, PackageDetails())

    assert len(rates) == 3


@pytest.mark.asyncio
async def test_canada_post_has_no_labels():
    with pytest.raises(HTTPException) as exc:
        await CanadaPostClient("u", "p", "1").create_label(CA_FROM, CA_TO, PackageDetails(), "DOM.EP")

    assert exc.value.status_code == 400


@pytest.mark.asyncio
async def test_shipstation_queries_each_carrier_and_sorts(fake_http):
    def rates_for(method, url, kwargs):
        code = kwargs["json"]["carrierCode"]
        if code == "ups":
            return FakeResponse(200, [{"serviceName": "UPS Ground", "serviceCode": "ups_ground", "shipmentCost": 11.0, "otherCost": 1.5}])
        if code == "stamps_com":
            return FakeResponse(200, [{"serviceName": "USPS Priority Mail", "serviceCode": "usps_priority", "shipmentCost": 8.25, "otherCost": 0}])
        return FakeResponse(500, text="carrier not connected")

    fake_http.add("POST", "/shipments/getrates", rates_for)

    rates = await ShipStationClient("key", "secret").get_rates(US_FROM, US_TO, PackageDetails())

    assert [(r.service_code, r.rate) for r in rates] == [("usps_priority", 8.25), ("ups_ground", 12.5)]
    assert rates[0].carrier == "ShipStation (USPS)"
    assert rates[0].service_type == "expedited"
    assert len(fake_http.calls_to("/shipments/getrates")) == 5


@pytest.mark.asyncio
async def test_shipstation_skips_malformed_rate_items(fake_http):
    fake_http.add(
        "POST",
        "/shipments/getrates",
        FakeResponse(200, ["oops", None, {"serviceName": "UPS Ground", "serviceCode": "ups_ground", "shipmentCost": 10}]),
    )

    rates = await ShipStationClient("key", "secret", carrier_codes=["ups"]).get_rates(US_FROM, US_TO, PackageDetails())

    assert [r.service_code for r in rates] == ["ups_ground"]


@pytest.mark.asyncio
async def test_shipstation_falls_back_when_nothing_is_returned(fake_http):
    fake_http.add("POST", "/shipments/getrates", FakeResponse(500, text="nope"))

    rates = await ShipStationClient("key", "secret", carrier_codes=["ups"]).get_rates(US_FROM, US_TO, PackageDetails())

    assert len(rates) == 1
    assert rates[0].rate == 9.99
    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_shipstation_label_requires_credentials():
    with pytest.raises(HTTPException) as exc:
        await ShipStationClient(None, None).create_label(US_FROM, US_TO, PackageDetails(), "usps_priority")

    assert exc.value.detail["code"] == "missing_credentials"


@pytest.mark.asyncio
async def test_shipstation_label(fake_http):
    fake_http.add(
        "POST",
        "/shipments/createlabel",
        FakeResponse(200, {"trackingNumber": "9400111", "labelData": "JVBERi0", "shipmentCost": 7.4}),
    )

    label = await ShipStationClient("key", "secret").create_label(US_FROM, US_TO, PackageDetails(value=50), "usps_priority")

    assert label.tracking_number == "9400111"
    assert label.cost == 7.4
    payload = fake_http.calls[0]["json"]
    assert payload["insuranceOptions"]["insuredValue"] == 50
    assert payload["shipTo"]["postalCode"] == "80202"


@pytest.mark.asyncio
async def test_shipstation_label_network_failure(fake_http):
    fake_http.add("POST", "/shipments/createlabel", httpx.ReadTimeout("slow"))

    with pytest.raises(HTTPException) as exc:
        await ShipStationClient("key", "secret").create_label(US_FROM, US_TO, PackageDetails(), "usps_priority")

    assert exc.value.status_code == 502
    assert exc.value.detail["code"] == "carrier_error"


@pytest.mark.asyncio
async def test_shipstation_resource_fetch_only_targets_api_host(fake_http):
    fake_http.add("GET", "/shipments", FakeResponse(200, {"shipments": []}))
    client = ShipStationClient("key", "secret")

    assert await client.fetch_resource("https://ssapi.shipstation.com/shipments?batchId=9") == {"shipments": []}
    with pytest.raises(HTTPException):
        await client.fetch_resource("https://ssapi.shipstation.com.evil.example/shipments")

    assert len(fake_http.calls) == 1
    assert fake_http.calls[0]["headers"]["Authorization"].startswith("Basic ")
