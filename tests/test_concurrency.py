from concurrent.futures import ThreadPoolExecutor

from lotpass.db import transaction
from lotpass.errors import AlreadyCheckedInError, CapacityExceededError, DomainError
from lotpass.payments import APPLIED, FAILED, NOOP, SUCCEEDED
from lotpass.store import RegistrationStore
from tests.helpers import make_event, make_vehicle


def _outcome(fn, *args):
    try:
        return fn(*args)
    except DomainError as e:
        return e


def test_concurrent_scans_one_wins(services, sessions, clock):
    event_id = make_event(sessions, clock, capacity=1)
    reg = services.capacity.reserve(event_id, make_vehicle(sessions, "user_a"), "user_a")
    token = services.payments.apply_outcome(SUCCEEDED, registration_id=reg.id).registration.qr_code_data

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(
            lambda i: _outcome(services.checkin.check_in, token, f"staff_{i}"), range(20)
        ))

    winners = [r for r in results if not isinstance(r, DomainError)]
    losers = [r for r in results if isinstance(r, DomainError)]
    assert len(winners) == 1
    assert len(losers) == 19
    assert all(isinstance(e, AlreadyCheckedInError) for e in losers)

    with transaction(sessions) as db:
        stored = RegistrationStore(db).get(reg.id)
    assert stored.checked_in_by == winners[0].checked_in_by


def test_concurrent_reservations_never_overbook(services, sessions, clock):
    event_id = make_event(sessions, clock, capacity=1)
    sellers = [(make_vehicle(sessions, f"user_{i}"), f"user_{i}") for i in range(8)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(
            lambda s: _outcome(services.capacity.reserve, event_id, *s), sellers
        ))

    admitted = [r for r in results if not isinstance(r, DomainError)]
    rejected = [r for r in results if isinstance(r, DomainError)]
    assert len(admitted) == 1
    assert all(isinstance(e, CapacityExceededError) for e in rejected)
    assert services.capacity.occupancy(event_id).occupancy == 1


def test_duplicate_notifications_apply_once(services, sessions, clock):
    event_id = make_event(sessions, clock, capacity=1)
    reg = services.capacity.reserve(event_id, make_vehicle(sessions, "user_a"), "user_a")

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(
            lambda _: services.payments.apply_outcome(SUCCEEDED, registration_id=reg.id), range(6)
        ))

    assert [r.result for r in results].count(APPLIED) == 1
    assert all(r.result in (APPLIED, NOOP) for r in results)
    assert len({r.registration.qr_code_data for r in results}) == 1


def test_sweep_racing_success_settles_once(services, sessions, clock):
    event_id = make_event(sessions, clock, capacity=1)
    reg = services.capacity.reserve(event_id, make_vehicle(sessions, "user_a"), "user_a")
    clock.advance(minutes=6)

    with ThreadPoolExecutor(max_workers=2) as pool:
        swept = pool.submit(services.sweeper.sweep)
        paid = pool.submit(services.payments.apply_outcome, SUCCEEDED, registration_id=reg.id)
        report, result = swept.result(), paid.result()

    with transaction(sessions) as db:
        final = RegistrationStore(db).get(reg.id)

    if final.payment_status == "completed":
        assert result.result == APPLIED
        assert report.reclaimed == 0
        assert final.qr_code_data is not None
    else:
        assert final.payment_status == "failed"
        assert report.reclaimed == 1
        assert final.qr_code_data is None
    assert final.expires_at is None

    # a late failure notification never moves the settled row
    assert services.payments.apply_outcome(FAILED, registration_id=reg.id).registration.payment_status == final.payment_status


def test_concurrent_increments_are_all_counted(services):
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda _: services.analytics.increment("veh_hot", "views"), range(40)))

    assert services.analytics.get("veh_hot") == {"views": 40, "shares": 0}
