import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from fooddash.channel import InMemoryTrackingChannel
from fooddash.gateways import (
    DRIVER_ASSIGNED,
    NEW_DELIVERY_REQUEST,
    GCashPayoutGateway,
    LoggingNotifier,
    PayoutRecipient,
    SemaphoreNotifier,
    StubPayoutGateway,
    format_ph_number,
    render_message,
)

RECIPIENT = PayoutRecipient(account_type="gcash_account", account_number="09170001111", account_name="Juan Cruz")


def test_render_new_delivery_request():
    text = render_message(NEW_DELIVERY_REQUEST, {
        "orderNumber": "ORD-1001",
        "restaurantName": "Lola's Kitchen",
        "deliveryAddress": "123 Ayala Ave",
        "distanceKm": 2.4,
        "deliveryFee": Decimal("50.00"),
    })
    assert "Order ORD-1001 from Lola's Kitchen to 123 Ayala Ave" in text
    assert "Distance: 2.4km" in text
    assert "₱50.00" in text


def test_render_driver_assigned_links_tracking_page():
    text = render_message(DRIVER_ASSIGNED, {
        "orderNumber": "ORD-1001",
        "orderId": "or_1",
        "driverName": "Juan Cruz",
        "vehicleType": "motorcycle",
        "vehicleNumber": "NAB-1234",
    }, app_url="https://fooddash.ph/")
    assert text.startswith("Driver Juan Cruz has been assigned to your order ORD-1001.")
    assert "motorcycle (NAB-1234)" in text
    assert text.endswith("https://fooddash.ph/track/or_1")


def test_render_unknown_template():
    with pytest.raises(ValueError):
        render_message("promo_blast", {})


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("09171234567", "+639171234567"),
        ("9171234567", "+639171234567"),
        ("+63 917 123 4567", "+639171234567"),
        ("0917-123-4567", "+639171234567"),
    ],
)
def test_format_ph_number(raw, expected):
    assert format_ph_number(raw) == expected


def test_semaphore_sends_formatted_message():
    sent = []

    def handler(request):
        sent.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json=[{"message_id": 8812, "status": "Queued"}])

    notifier = SemaphoreNotifier(api_key="k", sender_name="FoodDash", api_url="https://sms.test/api/v4",
                                 transport=httpx.MockTransport(handler))
    result = asyncio.run(notifier.notify("09171234567", DRIVER_ASSIGNED, {
        "orderNumber": "ORD-1", "orderId": "or_1", "driverName": "Juan",
        "vehicleType": "motorcycle", "vehicleNumber": "NAB-1",
    }))

    assert result.success is True
    assert result.message_id == "8812"
    path, body = sent[0]
    assert path == "/api/v4/messages"
    assert body["number"] == "+639171234567"
    assert body["sendername"] == "FoodDash"
    assert body["apikey"] == "k"


def test_semaphore_http_error_is_a_failed_result():
    notifier = SemaphoreNotifier(api_key="k", api_url="https://sms.test",
                                 transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    result = asyncio.run(notifier.notify("09171234567", DRIVER_ASSIGNED, {
        "orderNumber": "ORD-1", "orderId": "or_1", "driverName": "Juan",
        "vehicleType": "motorcycle", "vehicleNumber": "NAB-1",
    }))
    assert result.success is False


def test_semaphore_unexpected_body_is_a_failed_result():
    notifier = SemaphoreNotifier(api_key="k", api_url="https://sms.test",
                                 transport=httpx.MockTransport(lambda r: httpx.Response(200, json=["queued"])))
    result = asyncio.run(notifier.notify("09171234567", DRIVER_ASSIGNED, {
        "orderNumber": "ORD-1", "orderId": "or_1", "driverName": "Juan",
        "vehicleType": "motorcycle", "vehicleNumber": "NAB-1",
    }))
    assert result.success is False


def test_logging_notifier_always_succeeds():
    result = asyncio.run(LoggingNotifier().notify("0917", NEW_DELIVERY_REQUEST, {
        "orderNumber": "ORD-1", "restaurantName": "R", "deliveryAddress": "A",
        "distanceKm": 1, "deliveryFee": "50.00",
    }))
    assert result.success is True


def test_gcash_payout_authenticates_then_pays():
    requests = []

    def handler(request):
        requests.append(request)
        if request.url.path.endswith("/oauth/token"):
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(200, json={"payout_id": "gc_77", "status": "processing"})

    gateway = GCashPayoutGateway(api_url="https://gcash.test/v1", app_id="a", app_secret="s",
                                 merchant_id="m", transport=httpx.MockTransport(handler))
    result = asyncio.run(gateway.payout("DRV_st_1_1", RECIPIENT, Decimal("50"), "Driver earnings",
                                        {"settlement_id": "st_1"}))

    assert result.success is True
    assert result.payout_id == "gc_77"
    token_req, payout_req = requests
    assert token_req.url.path == "/v1/oauth/token"
    assert payout_req.headers["Authorization"] == "Bearer tok"
    body = json.loads(payout_req.content)
    assert body["amount"] == {"value": "50.00", "currency": "PHP"}
    assert body["recipient"]["account_number"] == "09170001111"
    assert body["metadata"] == {"settlement_id": "st_1"}


def test_gcash_payout_failure_is_a_failed_result():
    def handler(request):
        if request.url.path.endswith("/oauth/token"):
            return httpx.Response(200, json={"access_token": "tok"})
        return httpx.Response(422, json={"error": "invalid account"})

    gateway = GCashPayoutGateway(api_url="https://gcash.test/v1", transport=httpx.MockTransport(handler))
    result = asyncio.run(gateway.payout("REST_st_1_1", RECIPIENT, Decimal("246"), "Restaurant settlement"))
    assert result.success is False
    assert result.error == "Payout processing failed"


@pytest.mark.parametrize("token_body,payout_body", [([], {"payout_id": "gc_1"}), ({"access_token": "tok"}, [])])
def test_gcash_malformed_body_is_a_failed_result(token_body, payout_body):
    def handler(request):
        if request.url.path.endswith("/oauth/token"):
            return httpx.Response(200, json=token_body)
        return httpx.Response(200, json=payout_body)

    gateway = GCashPayoutGateway(api_url="https://gcash.test/v1", transport=httpx.MockTransport(handler))
    result = asyncio.run(gateway.payout("DRV_st_1_1", RECIPIENT, Decimal("50"), "Driver earnings"))
    assert result.success is False
    assert result.error == "Payout processing failed"


def test_stub_payout_gateway():
    result = asyncio.run(StubPayoutGateway().payout("REST_st_9_1", RECIPIENT, Decimal("1"), "x"))
    assert result.success is True
    assert result.payout_id == "po_REST_st_9_1"


def test_channel_fans_out_to_order_subscribers():
    channel = InMemoryTrackingChannel()

    async def run():
        a = channel.subscribe("or_1")
        b = channel.subscribe("or_1")
        other = channel.subscribe("or_2")
        await channel.publish("or_1", {"type": "location", "lat": 1})
        return a.get_nowait(), b.get_nowait(), other.empty()

    got_a, got_b, other_empty = asyncio.run(run())
    assert got_a == got_b == {"type": "location", "lat": 1}
    assert other_empty is True


def test_channel_drops_oldest_when_subscriber_lags():
    channel = InMemoryTrackingChannel(max_queue=2)

    async def run():
        q = channel.subscribe("or_1")
        for i in range(3):
            await channel.publish("or_1", {"seq": i})
        return [q.get_nowait()["seq"] for _ in range(q.qsize())]

    assert asyncio.run(run()) == [1, 2]


def test_channel_unsubscribe():
    channel = InMemoryTrackingChannel()
    q = channel.subscribe("or_1")
    assert channel.subscriber_count("or_1") == 1
    channel.unsubscribe("or_1", q)
    assert channel.subscriber_count("or_1") == 0
    channel.unsubscribe("or_1", q)
