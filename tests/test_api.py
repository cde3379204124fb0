import uuid

import pytest

from lotpass import main
from lotpass.db import make_engine
from lotpass.idempotency import claim, release
from lotpass.security import sign_payment_notification
from tests.helpers import create_event, create_vehicle, reserve, send_payment_outcome

pytestmark = pytest.mark.asyncio

SECRET = "test_webhook_secret"


async def _paid_registration(client, clock, capacity=2):
    event_id = await create_event(client, clock, capacity=capacity)
    vehicle_id = await create_vehicle(client, "user_a")
    reg = (await reserve(client, event_id, vehicle_id, "user_a")).json()
    paid = (await send_payment_outcome(client, SECRET, reg["id"])).json()
    assert paid["payment_status"] == "completed"
    reg = (await client.get(f"/registrations/{reg['id']}")).json()
    return event_id, reg


async def _occupancy(client, event_id):
    return (await client.get(f"/admin/events/{event_id}/occupancy")).json()


async def test_full_event_frees_seat_after_failed_payment(client, clock):
    event_id = await create_event(client, clock, capacity=2)
    a, b, c = [await create_vehicle(client, user) for user in ("user_a", "user_b", "user_c")]

    r = await reserve(client, event_id, a, "user_a")
    assert r.status_code == 201
    reg_a = r.json()
    assert reg_a["payment_status"] == "pending"
    assert (await _occupancy(client, event_id))["occupancy"] == 1

    assert (await reserve(client, event_id, b, "user_b")).status_code == 201
    occ = await _occupancy(client, event_id)
    assert (occ["occupancy"], occ["remaining"]) == (2, 0)

    r = await reserve(client, event_id, c, "user_c")
    assert r.status_code == 422
    assert r.json()["code"] == "CAPACITY_EXCEEDED"

    r = await send_payment_outcome(client, SECRET, reg_a["id"], outcome="failed")
    assert r.status_code == 200
    assert r.json()["result"] == "applied"
    assert r.json()["payment_status"] == "failed"
    assert (await _occupancy(client, event_id))["occupancy"] == 1

    assert (await reserve(client, event_id, c, "user_c")).status_code == 201


async def test_paid_registration_checks_in_once(client, clock):
    event_id = await create_event(client, clock)
    vehicle_id = await create_vehicle(client, "user_b")
    reg = (await reserve(client, event_id, vehicle_id, "user_b")).json()

    r = await send_payment_outcome(client, SECRET, reg["id"], payment_id="pi_b")
    assert r.json()["result"] == "applied"

    reg = (await client.get(f"/registrations/{reg['id']}")).json()
    assert reg["payment_status"] == "completed"
    assert reg["qr_code_data"]
    assert reg["expires_at"] is None
    assert reg["stripe_payment_id"] == "pi_b"

    vehicle = (await client.get(f"/vehicles/{vehicle_id}/registration")).json()
    assert vehicle["id"] == reg["id"]

    scan = {"qr_code_data": reg["qr_code_data"], "checked_in_by": "staff_1", "event_id": event_id}
    first = (await client.post("/checkin", json=scan)).json()
    assert first["status"] == "ACCEPTED"
    assert first["registration"]["checked_in"] is True

    second = (await client.post("/checkin", json=scan)).json()
    assert second["status"] == "REJECTED"
    assert second["reason_code"] == "ALREADY_CHECKED_IN"

    audit = (await client.get("/admin/audit", params={"event_id": event_id})).json()
    assert [row["reason_code"] for row in audit] == ["ALREADY_CHECKED_IN", "OK"]


async def test_late_success_after_sweep_is_already_resolved(client, clock):
    event_id = await create_event(client, clock)
    vehicle_id = await create_vehicle(client, "user_a")
    reg = (await reserve(client, event_id, vehicle_id, "user_a")).json()

    clock.advance(minutes=6)
    swept = (await client.post("/admin/sweep")).json()
    assert swept["reclaimed"] == 1

    r = await send_payment_outcome(client, SECRET, reg["id"])
    assert r.status_code == 200
    assert r.json()["result"] == "already_resolved"
    assert r.json()["payment_status"] == "failed"


async def test_webhook_rejects_bad_signature(client, clock):
    body, _ = sign_payment_notification({"id": "d_1", "type": "payment.succeeded"}, SECRET)
    _, forged = sign_payment_notification({"id": "d_1", "type": "payment.succeeded"}, "not-the-secret")

    r = await client.post("/webhooks/payments", content=body, headers={"Processor-Signature": forged})
    assert r.status_code == 400
    assert r.json()["code"] == "INVALID_SIGNATURE"

    r = await client.post("/webhooks/payments", content=body)
    assert r.status_code == 400


async def test_webhook_replayed_delivery_returns_first_answer(client, clock):
    event_id = await create_event(client, clock)
    vehicle_id = await create_vehicle(client, "user_a")
    reg = (await reserve(client, event_id, vehicle_id, "user_a")).json()
    delivery = f"evt_{uuid.uuid4().hex}"

    first = (await send_payment_outcome(client, SECRET, reg["id"], delivery_id=delivery)).json()
    again = (await send_payment_outcome(client, SECRET, reg["id"], delivery_id=delivery)).json()
    fresh = (await send_payment_outcome(client, SECRET, reg["id"])).json()

    assert first["result"] == "applied"
    assert again == first
    assert fresh["result"] == "noop"


async def test_webhook_ignores_unrelated_types(client):
    body, signature = sign_payment_notification({"id": "d_2", "type": "charge.refunded"}, SECRET)
    r = await client.post("/webhooks/payments", content=body, headers={"Processor-Signature": signature})
    assert r.json() == {"ok": True, "result": "ignored"}


async def test_webhook_unknown_registration(client):
    r = await send_payment_outcome(client, SECRET, "reg_missing")
    assert r.status_code == 404


async def test_start_payment(client, clock):
    event_id = await create_event(client, clock, vendor_price=2500)
    vehicle_id = await create_vehicle(client, "user_a")
    reg = (await reserve(client, event_id, vehicle_id, "user_a")).json()

    r = await client.post(f"/registrations/{reg['id']}/payment", json={"user_id": "user_a", "amount": 2500})
    assert r.status_code == 200
    body = r.json()
    assert body["payment_id"] == "pi_test_1"
    assert body["registration"]["stripe_payment_id"] == "pi_test_1"

    r = await client.post(f"/registrations/{reg['id']}/payment", json={"user_id": "user_a", "amount": 99})
    assert r.status_code == 422
    assert r.json()["code"] == "INVALID_AMOUNT"


async def test_reservation_errors(client, clock):
    event_id = await create_event(client, clock)
    vehicle_id = await create_vehicle(client, "user_a")

    r = await reserve(client, "evt_missing", vehicle_id, "user_a")
    assert (r.status_code, r.json()["code"]) == (404, "NOT_FOUND")

    await send_payment_outcome(client, SECRET, (await reserve(client, event_id, vehicle_id, "user_a")).json()["id"])
    r = await reserve(client, event_id, vehicle_id, "user_a")
    assert (r.status_code, r.json()["code"]) == (409, "ALREADY_REGISTERED")

    assert (await client.get("/registrations/reg_missing")).status_code == 404


async def test_registration_listings(client, clock):
    event_id = await create_event(client, clock, capacity=3)
    for user in ("user_a", "user_b"):
        await reserve(client, event_id, await create_vehicle(client, user), user)
        clock.advance(seconds=1)

    by_event = (await client.get(f"/events/{event_id}/registrations")).json()
    by_user = (await client.get("/users/user_b/registrations")).json()

    assert [r["user_id"] for r in by_event] == ["user_a", "user_b"]
    assert len(by_user) == 1 and by_user[0]["event_id"] == event_id


async def test_checkin_rejects_bad_and_foreign_tokens(client, clock):
    event_id, reg = await _paid_registration(client, clock)
    other_event = await create_event(client, clock, name="Other Show")

    r = (await client.post("/checkin", json={"qr_code_data": "junk", "checked_in_by": "staff_1"})).json()
    assert (r["status"], r["reason_code"]) == ("REJECTED", "INVALID_TOKEN")

    r = (await client.post("/checkin", json={
        "qr_code_data": reg["qr_code_data"], "checked_in_by": "staff_1", "event_id": other_event,
    })).json()
    assert (r["status"], r["reason_code"]) == ("REJECTED", "WRONG_EVENT")


async def test_checkin_idempotency_key_replays_decision(client, clock):
    _, reg = await _paid_registration(client, clock)
    scan = {"qr_code_data": reg["qr_code_data"], "checked_in_by": "staff_1"}
    headers = {"Idempotency-Key": "scan-123"}

    first = (await client.post("/checkin", json=scan, headers=headers)).json()
    second = (await client.post("/checkin", json=scan, headers=headers)).json()

    assert first["status"] == "ACCEPTED"
    assert second == first


async def test_checkin_rate_limited_per_device(client):
    results = []
    for _ in range(12):
        r = await client.post("/checkin", json={"qr_code_data": "junk", "checked_in_by": "staff_1"})
        results.append(r.json()["reason_code"])

    assert results[:10] == ["INVALID_TOKEN"] * 10
    assert results[10:] == ["RATE_LIMITED"] * 2


async def test_preview_and_sheet(client, clock):
    event_id, reg = await _paid_registration(client, clock)

    preview = (await client.post("/checkin/preview", json={"qr_code_data": reg["qr_code_data"]})).json()
    assert preview["already_checked_in"] is False
    assert preview["event"]["id"] == event_id
    assert preview["vehicle"]["user_id"] == "user_a"

    sheet = (await client.get(f"/admin/events/{event_id}/checkin-sheet")).json()
    assert [row["registration_id"] for row in sheet["rows"]] == [reg["id"]]

    r = await client.post("/checkin/preview", json={"qr_code_data": "junk"})
    assert r.status_code == 404


async def test_admin_rejects_past_event(client, clock):
    r = await client.post("/admin/events", json={
        "name": "Yesterday", "capacity": 5, "date": clock.now().replace(year=2025).isoformat(),
    })
    assert r.status_code == 422


async def test_vehicle_analytics(client):
    await client.post("/vehicles/veh_1/views")
    await client.post("/vehicles/veh_1/views")
    r = await client.post("/vehicles/veh_1/shares")

    assert r.json() == {"vehicle_id": "veh_1", "views": 2, "shares": 1}
    assert (await client.get("/vehicles/veh_1/analytics")).json()["views"] == 2


async def test_webhook_delivery_in_flight_is_retried_later(client, redis, clock):
    event_id = await create_event(client, clock)
    reg = (await reserve(client, event_id, await create_vehicle(client, "user_a"), "user_a")).json()
    await claim(redis, "evt_inflight", 60, namespace="webhook-claim")

    r = await send_payment_outcome(client, SECRET, reg["id"], delivery_id="evt_inflight")
    assert (r.status_code, r.json()["code"]) == (409, "CONCURRENCY_CONFLICT")
    assert (await client.get(f"/registrations/{reg['id']}")).json()["payment_status"] == "pending"

    await release(redis, "evt_inflight", namespace="webhook-claim")
    r = await send_payment_outcome(client, SECRET, reg["id"], delivery_id="evt_inflight")
    assert r.json()["result"] == "applied"


async def test_webhook_failed_delivery_is_not_left_claimed(client):
    first = await send_payment_outcome(client, SECRET, "reg_missing", delivery_id="evt_retry")
    again = await send_payment_outcome(client, SECRET, "reg_missing", delivery_id="evt_retry")

    assert first.status_code == 404
    assert again.status_code == 404


async def test_confirmation_email_and_resend(client, sender, clock):
    r = await client.post("/admin/users", json={"id": "user_a", "email": "pat@example.com", "name": "Pat"})
    assert r.status_code == 201
    _, reg = await _paid_registration(client, clock)
    assert [mail["to"] for mail in sender.sent] == [["pat@example.com"]]

    r = await client.post(f"/registrations/{reg['id']}/confirmation", json={"user_id": "user_a"})
    assert r.json() == {"registration_id": reg["id"], "sent": True}
    assert len(sender.sent) == 2

    r = await client.post(f"/registrations/{reg['id']}/confirmation", json={"user_id": "user_b"})
    assert r.status_code == 404


async def test_resend_confirmation_for_unpaid_registration(client, clock):
    event_id = await create_event(client, clock)
    reg = (await reserve(client, event_id, await create_vehicle(client, "user_a"), "user_a")).json()

    r = await client.post(f"/registrations/{reg['id']}/confirmation", json={"user_id": "user_a"})
    assert (r.status_code, r.json()["code"]) == (422, "NOT_ELIGIBLE")


async def test_payment_succeeds_when_mail_server_is_down(client, sender, clock):
    await client.post("/admin/users", json={"id": "user_a", "email": "pat@example.com"})
    sender.fail = True

    _, reg = await _paid_registration(client, clock)

    assert reg["payment_status"] == "completed"
    assert sender.sent == []


async def test_app_shutdown_closes_processor_and_redis(monkeypatch, services, settings, redis):
    engine = make_engine(settings.DATABASE_URL)
    monkeypatch.setattr(main, "get_settings", lambda: settings)
    monkeypatch.setattr(main, "build_services", lambda sessions, settings: services)
    monkeypatch.setattr(main, "engine", engine)

    app = main.create_app(redis=redis)
    async with app.router.lifespan_context(app):
        assert services.processor.closed is False
    engine.dispose()

    assert services.processor.closed is True
    assert redis.closed is True
