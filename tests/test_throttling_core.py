"""Unit tests for the throttling core (whitelists, keys, rules, counting)."""

from __future__ import annotations

import threading

import pytest

from apithrottle.adapters.rate_limit.in_memory import InMemoryCounterStore
from apithrottle.schemas.policy import RateLimitPeriod, RateLimitPolicy, RateLimits
from apithrottle.schemas.throttle import RequestIdentity, ThrottleCounter
from apithrottle.services.throttling_service import ThrottlingCore


def _identity(
    ip: str = "1.2.3.4",
    key: str = "anon",
    endpoint: str = "/a",
    route: str | None = None,
) -> RequestIdentity:
    return RequestIdentity.from_request_parts(
        client_ip=ip, client_key=key, endpoint=endpoint, route=route
    )


@pytest.fixture
def store(clock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)


@pytest.fixture
def core(store, clock) -> ThrottlingCore:
    return ThrottlingCore(store, clock=clock)


class TestEvaluate:
    def test_minute_limit_blocks_third_request(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(per_minute=2, ip_throttling=True)
        identity = _identity()

        assert core.evaluate(identity, policy).allowed is True
        assert core.evaluate(identity, policy).allowed is True

        blocked = core.evaluate(identity, policy)
        assert blocked.allowed is False
        assert blocked.period is RateLimitPeriod.MINUTE
        assert blocked.limit == 2
        assert 1 <= blocked.retry_after_seconds <= 60

    def test_limit_plus_one_is_blocked_within_window(self, core: ThrottlingCore, clock) -> None:
        policy = RateLimitPolicy.create(per_hour=5, ip_throttling=True)
        identity = _identity()

        for _ in range(5):
            assert core.evaluate(identity, policy).allowed is True
            clock.advance(100)

        assert core.evaluate(identity, policy).allowed is False

    def test_new_window_starts_after_expiry(self, core: ThrottlingCore, clock) -> None:
        policy = RateLimitPolicy.create(per_second=1, ip_throttling=True)
        identity = _identity()

        assert core.evaluate(identity, policy).allowed is True
        assert core.evaluate(identity, policy).allowed is False

        clock.advance(2)
        assert core.evaluate(identity, policy).allowed is True

    def test_missing_policy_allows(self, core: ThrottlingCore, store) -> None:
        assert core.evaluate(_identity(), None).allowed is True
        assert len(store) == 0

    def test_policy_without_enabled_scope_allows(self, core: ThrottlingCore, store) -> None:
        policy = RateLimitPolicy.create(per_second=1)

        for _ in range(3):
            assert core.evaluate(_identity(), policy).allowed is True
        assert len(store) == 0

    def test_zero_limits_are_never_counted(self, core: ThrottlingCore, store) -> None:
        policy = RateLimitPolicy.create(per_second=0, ip_throttling=True)

        for _ in range(10):
            assert core.evaluate(_identity(), policy).allowed is True
        assert len(store) == 0

    def test_zero_limit_window_ignored_when_stacking(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(
            per_minute=1, ip_throttling=True, stack_blocked_requests=True
        )
        identity = _identity()

        assert core.evaluate(identity, policy).allowed is True
        blocked = core.evaluate(identity, policy)
        assert blocked.period is RateLimitPeriod.MINUTE

    def test_ip_scope_isolates_counters(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(per_minute=1, ip_throttling=True)

        assert core.evaluate(_identity(ip="1.1.1.1"), policy).allowed is True
        assert core.evaluate(_identity(ip="1.1.1.1"), policy).allowed is False
        assert core.evaluate(_identity(ip="2.2.2.2"), policy).allowed is True

    def test_disabled_client_scope_shares_counter(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(per_minute=1, ip_throttling=True)

        assert core.evaluate(_identity(key="k1"), policy).allowed is True
        assert core.evaluate(_identity(key="k2"), policy).allowed is False

    def test_narrow_window_blocks_before_wider_is_counted(self, core: ThrottlingCore, store) -> None:
        policy = RateLimitPolicy.create(per_second=1, per_minute=10, ip_throttling=True)
        identity = _identity()

        core.evaluate(identity, policy)
        blocked = core.evaluate(identity, policy)
        assert blocked.period is RateLimitPeriod.SECOND

        minute_key = core.compute_throttle_key(identity, policy, RateLimitPeriod.MINUTE)
        assert store.get(minute_key).total_requests == 1

    def test_stacking_counts_blocked_requests_in_wider_windows(
        self, core: ThrottlingCore, store
    ) -> None:
        policy = RateLimitPolicy.create(
            per_second=1,
            per_minute=10,
            ip_throttling=True,
            stack_blocked_requests=True,
        )
        identity = _identity()

        core.evaluate(identity, policy)
        blocked = core.evaluate(identity, policy)
        assert blocked.period is RateLimitPeriod.SECOND

        minute_key = core.compute_throttle_key(identity, policy, RateLimitPeriod.MINUTE)
        assert store.get(minute_key).total_requests == 2

    def test_whitelisted_identity_is_never_counted(self, core: ThrottlingCore, store) -> None:
        policy = RateLimitPolicy.create(
            per_second=1,
            ip_throttling=True,
            ip_whitelist=frozenset({"10.0.0.0/8"}),
        )

        for _ in range(5):
            assert core.evaluate(_identity(ip="10.1.1.1"), policy).allowed is True
        assert len(store) == 0

    def test_force_whitelist_bypasses_counting(self, core: ThrottlingCore, store) -> None:
        policy = RateLimitPolicy.create(per_second=1, ip_throttling=True)
        identity = RequestIdentity(client_ip="1.2.3.4", force_whitelist=True)

        for _ in range(3):
            assert core.evaluate(identity, policy).allowed is True
        assert len(store) == 0

    def test_malformed_ip_does_not_raise(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(
            per_minute=1,
            ip_throttling=True,
            ip_rules={"10.0.0.0/8": RateLimits(per_minute=100)},
        )

        assert core.evaluate(_identity(ip="not-an-ip"), policy).allowed is True
        assert core.evaluate(_identity(ip="not-an-ip"), policy).allowed is False


class TestIsWhitelisted:
    def test_client_whitelist_exact_match(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(client_throttling=True, client_whitelist=frozenset({"admin"}))

        assert core.is_whitelisted(_identity(key="admin"), policy) is True
        assert core.is_whitelisted(_identity(key="admin2"), policy) is False

    def test_endpoint_whitelist_case_insensitive_substring(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(endpoint_throttling=True, endpoint_whitelist=frozenset({"/Health"}))

        assert core.is_whitelisted(_identity(endpoint="/api/health/live"), policy) is True
        assert core.is_whitelisted(_identity(endpoint="/api/values"), policy) is False

    def test_whitelist_of_disabled_scope_is_ignored(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            ip_throttling=True,
            client_throttling=False,
            client_whitelist=frozenset({"admin"}),
        )

        assert core.is_whitelisted(_identity(key="admin"), policy) is False


class TestComputeThrottleKey:
    def test_key_is_deterministic(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(ip_throttling=True, client_throttling=True)
        identity = _identity(key="k1")

        first = core.compute_throttle_key(identity, policy, RateLimitPeriod.MINUTE)
        second = core.compute_throttle_key(identity, policy, RateLimitPeriod.MINUTE)

        assert first == second
        assert len(first) == 64

    def test_disabled_scope_is_excluded(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(ip_throttling=True, client_throttling=False)

        assert core.compute_throttle_key(
            _identity(key="k1"), policy, RateLimitPeriod.MINUTE
        ) == core.compute_throttle_key(_identity(key="k2"), policy, RateLimitPeriod.MINUTE)

    def test_enabled_scope_and_period_change_key(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(ip_throttling=True, client_throttling=True)

        base = core.compute_throttle_key(_identity(key="k1"), policy, RateLimitPeriod.MINUTE)

        assert base != core.compute_throttle_key(_identity(key="k2"), policy, RateLimitPeriod.MINUTE)
        assert base != core.compute_throttle_key(_identity(key="k1"), policy, RateLimitPeriod.HOUR)

    def test_parts_cannot_shift_between_scopes(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(ip_throttling=True, client_throttling=True)

        left = core.compute_throttle_key(
            RequestIdentity(client_ip="1.2.3.4", client_key="5anon"), policy, RateLimitPeriod.SECOND
        )
        right = core.compute_throttle_key(
            RequestIdentity(client_ip="1.2.3.45", client_key="anon"), policy, RateLimitPeriod.SECOND
        )

        assert left != right

    def test_prefix_partitions_keys(self, store) -> None:
        policy = RateLimitPolicy(ip_throttling=True)
        identity = _identity()

        app_a = ThrottlingCore(store, key_prefix="a-throttle")
        app_b = ThrottlingCore(store, key_prefix="b-throttle")

        assert app_a.compute_throttle_key(
            identity, policy, RateLimitPeriod.DAY
        ) != app_b.compute_throttle_key(identity, policy, RateLimitPeriod.DAY)


class TestApplyRules:
    def test_client_rule_overrides_endpoint_rule(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(
            per_second=5,
            client_throttling=True,
            endpoint_throttling=True,
            endpoint_rules={"/search": RateLimits(per_second=10)},
            client_rules={"k1": RateLimits(per_second=100)},
        )

        limit = core.apply_rules(
            _identity(key="k1", endpoint="/search"), RateLimitPeriod.SECOND, policy, 5
        )
        assert limit == 100

    def test_ip_rule_wins_over_client_and_endpoint(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy.create(
            per_second=5,
            ip_throttling=True,
            client_throttling=True,
            endpoint_throttling=True,
            endpoint_rules={"/search": RateLimits(per_second=10)},
            client_rules={"k1": RateLimits(per_second=100)},
            ip_rules={"192.168.0.0/24": RateLimits(per_second=3)},
        )

        limit = core.apply_rules(
            _identity(ip="192.168.0.7", key="k1", endpoint="/search"),
            RateLimitPeriod.SECOND,
            policy,
            5,
        )
        assert limit == 3

    def test_most_conservative_endpoint_rule_wins(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            endpoint_throttling=True,
            endpoint_rules={
                "/api": RateLimits(per_minute=50),
                "/api/search": RateLimits(per_minute=20),
                "/api/search/deep": RateLimits(per_minute=5),
            },
        )

        limit = core.apply_rules(
            _identity(endpoint="/api/search?q=1"), RateLimitPeriod.MINUTE, policy, 100
        )
        assert limit == 20

    def test_unset_window_in_rule_keeps_default(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            ip_throttling=True,
            client_throttling=True,
            client_rules={"k1": RateLimits(per_hour=1000)},
        )

        assert core.apply_rules(_identity(key="k1"), RateLimitPeriod.SECOND, policy, 7) == 7

    def test_rules_of_disabled_scope_are_ignored(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            ip_throttling=True,
            client_rules={"k1": RateLimits(per_second=100)},
        )

        assert core.apply_rules(_identity(key="k1"), RateLimitPeriod.SECOND, policy, 7) == 7

    def test_route_rules_merge_with_endpoint_rules(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            endpoint_throttling=True,
            endpoint_rules={"/v1/values": RateLimits(per_second=10)},
            route_rules={"/v1/values/{value_id}": RateLimits(per_second=2)},
        )

        item = _identity(endpoint="/v1/values/1", route="/v1/values/{value_id}")
        listing = _identity(endpoint="/v1/values", route="/v1/values")

        assert core.apply_rules(item, RateLimitPeriod.SECOND, policy, 0) == 2
        assert core.apply_rules(listing, RateLimitPeriod.SECOND, policy, 0) == 10

    def test_rule_enables_window_without_default(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(
            ip_throttling=True,
            ip_rules={"1.2.3.4": RateLimits(per_second=1)},
        )
        identity = _identity(ip="1.2.3.4")

        assert core.evaluate(identity, policy).allowed is True
        assert core.evaluate(identity, policy).allowed is False
        assert core.evaluate(_identity(ip="1.2.3.5"), policy).allowed is True
        assert core.evaluate(_identity(ip="1.2.3.5"), policy).allowed is True


class TestRatesWithDefaults:
    def test_fills_missing_windows_in_canonical_order(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(rates={RateLimitPeriod.HOUR: 3, RateLimitPeriod.SECOND: 1})

        assert core.rates_with_defaults(policy) == [
            (RateLimitPeriod.SECOND, 1),
            (RateLimitPeriod.MINUTE, 0),
            (RateLimitPeriod.HOUR, 3),
            (RateLimitPeriod.DAY, 0),
            (RateLimitPeriod.WEEK, 0),
        ]

    def test_reversed_when_stacking(self, core: ThrottlingCore) -> None:
        policy = RateLimitPolicy(stack_blocked_requests=True)

        periods = [period for period, _ in core.rates_with_defaults(policy)]
        assert periods[0] is RateLimitPeriod.WEEK
        assert periods[-1] is RateLimitPeriod.SECOND


class TestRetryAfter:
    @pytest.mark.parametrize("period", list(RateLimitPeriod))
    def test_bounds(self, core: ThrottlingCore, clock, period: RateLimitPeriod) -> None:
        start = clock()
        for elapsed in (0, 0.4, period.seconds / 2, period.seconds, period.seconds + 5):
            clock.current = start + elapsed
            retry = core.retry_after(start, period)
            assert 1 <= retry <= period.seconds

    def test_counts_down_within_window(self, core: ThrottlingCore, clock) -> None:
        start = clock()
        clock.advance(45)

        assert core.retry_after(start, RateLimitPeriod.MINUTE) == 15

    def test_future_window_start_is_capped(self, core: ThrottlingCore, clock) -> None:
        assert core.retry_after(clock() + 30, RateLimitPeriod.MINUTE) == 60


class TestProcessRequest:
    def test_expired_counter_is_replaced(self, core: ThrottlingCore, store, clock) -> None:
        period = RateLimitPeriod.MINUTE
        stale_start = clock() - 2 * period.seconds
        store.put("k", ThrottleCounter(window_start=stale_start, total_requests=40), 10_000)

        counter = core.process_request("k", period)

        assert counter.total_requests == 1
        assert counter.window_start == clock()

    def test_increment_keeps_original_window_start(self, core: ThrottlingCore, clock) -> None:
        first = core.process_request("k", RateLimitPeriod.MINUTE)
        clock.advance(30)
        second = core.process_request("k", RateLimitPeriod.MINUTE)

        assert second.total_requests == 2
        assert second.window_start == first.window_start

    def test_concurrent_requests_do_not_lose_increments(self, store) -> None:
        core = ThrottlingCore(store, lock_shards=4)
        workers, per_worker = 8, 250

        def _hit() -> None:
            for _ in range(per_worker):
                core.process_request("shared", RateLimitPeriod.HOUR)

        threads = [threading.Thread(target=_hit) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.get("shared").total_requests == workers * per_worker


def test_compute_log_entry_for_blocked_decision(core: ThrottlingCore) -> None:
    policy = RateLimitPolicy.create(per_second=1, ip_throttling=True)
    identity = _identity(key="secret-key")

    core.evaluate(identity, policy)
    blocked = core.evaluate(identity, policy)
    entry = core.compute_log_entry("req-1", identity, blocked)

    assert entry.request_id == "req-1"
    assert entry.total_requests == 2
    assert entry.rate_limit == 1
    assert entry.rate_limit_period == "Second"
    assert entry.client_key == "secret-key"


def test_compute_log_entry_rejects_allowed_decision(core: ThrottlingCore) -> None:
    from apithrottle.schemas.throttle import ThrottleDecision

    with pytest.raises(ValueError):
        core.compute_log_entry("req-1", _identity(), ThrottleDecision.allow())
