"""
Tests for the Pod Executor.

Tests cover:
- Slot and pod state transitions
- Call planning (skip, reduce_timeout, disabled sources, effective timeouts)
- Competitive separation across the slots of a pod
- Failure isolation between slots
- Learning loop updates after every slot
- Creative fallback flagging
- Repeated single-slot pods against a fixed demand mix
"""

import math
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from adpod.auction.creative import CreativeFetcher
from adpod.auction.dispatcher import BidDispatcher
from adpod.auction.engine import AuctionEngine
from adpod.auction.executor import PodExecutor
from adpod.demand.base import BidClient, DemandSource
from adpod.demand.paper import PaperBidClient, PaperSourceProfile
from adpod.demand.registry import DemandSourceRegistry
from adpod.learning.history import PerformanceHistory
from adpod.learning.loop import LearningLoop
from adpod.models import FailureReason, Opportunity, PodState, PodStrategy, Slot, SlotState
from adpod.prediction.predictor import FillRatePredictor

WHEN = datetime(2024, 6, 12, 10, 0, tzinfo=timezone.utc)


def make_source(name, price, fill_rate, latency=300.0, timeout_ms=1500, enabled=True):
    return DemandSource(
        name=name,
        endpoint=f"http://demand.test/{name}",
        avg_price=price,
        fill_rate=fill_rate,
        avg_latency_ms=latency,
        timeout_ms=timeout_ms,
        enabled=enabled,
    )


def make_opportunity(position="postroll", device="mobile", budget=30) -> Opportunity:
    return Opportunity(position=position, max_ad_duration=budget, category="general", device=device, timestamp=WHEN)


def make_strategy(*slot_specs) -> PodStrategy:
    slots = [
        Slot(index=i + 1, duration=30, floor=floor, timeout_ms=timeout, sources=list(sources))
        for i, (floor, timeout, sources) in enumerate(slot_specs)
    ]
    return PodStrategy(slots=slots, origin="fallback")


def build_executor(sources, profiles, seed=11, creative_fetcher=None, engine=None):
    registry = DemandSourceRegistry(sources)
    predictor = FillRatePredictor(capacity=5000)
    history = PerformanceHistory()
    client = PaperBidClient(profiles, seed=seed)
    executor = PodExecutor(
        dispatcher=BidDispatcher(client),
        engine=engine or AuctionEngine(registry),
        learning=LearningLoop(registry, predictor, history),
        predictor=predictor,
        registry=registry,
        creative_fetcher=creative_fetcher,
    )
    return executor, client, registry, predictor, history


class TestStates:
    """Tests for lifecycle transitions."""

    @pytest.mark.asyncio
    async def test_pod_and_slot_states(self):
        """Test the pod completes and every slot is terminal."""
        # no advertiser metadata, so slot 1's win does not exclude slot 2's bid
        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)],
            {"a": PaperSourceProfile(price=12.0, advertiser_domains=[], categories=[])},
        )
        strategy = make_strategy((8.0, 1500, ["a"]), (50.0, 1500, ["a"]))

        result = await executor.execute(strategy, make_opportunity())

        assert strategy.state == PodState.COMPLETED
        assert strategy.slots[0].state == SlotState.FILLED
        assert strategy.slots[1].state == SlotState.FAILED
        assert strategy.slots[1].outcome.failure_reason == FailureReason.BELOW_FLOOR
        assert result.slots_attempted == 2
        assert result.slots_filled == 1
        assert result.failure_reasons == {2: "all bids below floor"}

    def test_slot_resolves_once(self):
        """Test a second resolve is rejected."""
        from adpod.models import SlotOutcome

        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1000)
        slot.mark_dispatched()
        slot.resolve(SlotOutcome(state=SlotState.FAILED, failure_reason=FailureReason.NO_BIDS))
        with pytest.raises(RuntimeError):
            slot.resolve(SlotOutcome(state=SlotState.FILLED))

    @pytest.mark.asyncio
    async def test_no_bids(self):
        """Test a silent slot fails with no bids."""
        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)], {"a": PaperSourceProfile(fill_probability=0.0)}
        )
        strategy = make_strategy((8.0, 1500, ["a"]))

        result = await executor.execute(strategy, make_opportunity())

        assert strategy.slots[0].outcome.failure_reason == FailureReason.NO_BIDS
        assert result.failure_reasons == {1: "no bids received"}
        assert result.total_revenue == 0.0

    @pytest.mark.asyncio
    async def test_revenue_is_cpm_over_thousand(self):
        """Test revenue accumulates clearing price / 1000 per filled slot."""
        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)], {"a": PaperSourceProfile(price=12.0)}
        )
        result = await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())
        assert result.total_revenue == pytest.approx(11.40 / 1000)
        assert result.per_slot_winner == {1: "a"}
        assert result.total_duration == 30


class TestPlanCalls:
    """Tests for per-source call decisions."""

    def test_skip_low_fill_source(self):
        """Test a low-probability source is not called."""
        executor, *_ = build_executor(
            [make_source("good", 10.0, 0.9), make_source("poor", 20.0, 0.1)], {}
        )
        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1500, sources=["good", "poor"])
        calls = executor.plan_calls(slot, make_opportunity())
        assert [c.source.name for c in calls] == ["good"]

    def test_all_skip_calls_everyone(self):
        """Test sources are called when every candidate is skip."""
        executor, *_ = build_executor(
            [make_source("p1", 10.0, 0.05), make_source("p2", 20.0, 0.1)], {}
        )
        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1500, sources=["p1", "p2"])
        assert [c.source.name for c in executor.plan_calls(slot, make_opportunity())] == ["p1", "p2"]

    def test_effective_timeout(self):
        """Test the timeout is the smaller of source and slot timeouts."""
        executor, *_ = build_executor(
            [make_source("a", 10.0, 0.9, timeout_ms=1200), make_source("b", 10.0, 0.9, timeout_ms=3000)], {}
        )
        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1500, sources=["a", "b"])
        calls = executor.plan_calls(slot, make_opportunity())
        assert [c.timeout_ms for c in calls] == [1200, 1500]
        assert all(c.timeout_ms <= slot.timeout_ms for c in calls)

    def test_reduce_timeout(self):
        """Test slow, uncertain sources run under a shorter timeout."""
        executor, *_ = build_executor([make_source("slow", 10.0, 0.55, latency=1800.0)], {})
        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1000, sources=["slow"])
        (call,) = executor.plan_calls(slot, make_opportunity())
        assert call.timeout_ms == 750

    def test_disabled_and_unknown_not_called(self):
        """Test disabled and unregistered sources are dropped."""
        executor, *_ = build_executor(
            [make_source("a", 10.0, 0.9), make_source("off", 10.0, 0.9, enabled=False)], {}
        )
        slot = Slot(index=1, duration=30, floor=8.0, timeout_ms=1500, sources=["a", "off", "ghost"])
        assert [c.source.name for c in executor.plan_calls(slot, make_opportunity())] == ["a"]


class TestSeparation:
    """Tests for exclusions across slots."""

    @pytest.mark.asyncio
    async def test_second_slot_excludes_first_winner(self):
        """Test a slot-1 winner's advertiser cannot win slot 2."""
        executor, client, *_ = build_executor(
            [make_source("a", 15.0, 0.9), make_source("b", 10.0, 0.9)],
            {
                "a": PaperSourceProfile(price=15.0, advertiser_domains=["x.example"], categories=["auto"]),
                "b": PaperSourceProfile(price=10.0, advertiser_domains=["y.example"], categories=["travel"]),
            },
        )
        strategy = make_strategy((8.0, 1500, ["a", "b"]), (8.0, 1500, ["a", "b"]))

        result = await executor.execute(strategy, make_opportunity(position="midroll", budget=60))

        assert result.per_slot_winner == {1: "a", 2: "b"}
        assert strategy.slots[1].outcome.winner.advertiser_domain == "y.example"
        slot_two_requests = [r for _, r in client.requests[2:]]
        assert all(r.excluded_advertisers == ["x.example"] for r in slot_two_requests)
        assert all(r.excluded_categories == ["auto"] for r in slot_two_requests)

    @pytest.mark.asyncio
    async def test_exclusions_reset_per_pod(self):
        """Test a new pod starts with an empty exclusion set."""
        executor, client, *_ = build_executor(
            [make_source("a", 15.0, 0.9)],
            {"a": PaperSourceProfile(price=15.0, advertiser_domains=["x.example"])},
        )
        await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())
        result = await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())
        assert result.slots_filled == 1
        assert client.requests[-1][1].excluded_advertisers == []


class TestIsolation:
    """Tests for per-slot failure isolation."""

    @pytest.mark.asyncio
    async def test_engine_error_does_not_abort_pod(self):
        """Test an error in slot 1 leaves slot 2 running."""

        class FlakyEngine(AuctionEngine):
            def evaluate_bids(self, bids, slot, separation=None):
                if slot.index == 1:
                    raise RuntimeError("scoring exploded")
                return super().evaluate_bids(bids, slot, separation)

        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)],
            {"a": PaperSourceProfile(price=12.0, advertiser_domains=[], categories=[])},
            engine=FlakyEngine(),
        )
        strategy = make_strategy((8.0, 1500, ["a"]), (8.0, 1500, ["a"]))

        result = await executor.execute(strategy, make_opportunity())

        assert strategy.slots[0].outcome.failure_reason == FailureReason.ERROR
        assert "scoring exploded" in strategy.slots[0].outcome.detail
        assert strategy.slots[1].state == SlotState.FILLED
        assert result.slots_filled == 1

    @pytest.mark.asyncio
    async def test_source_errors_do_not_fail_slot(self):
        """Test one failing source still lets another fill the slot."""
        executor, *_ = build_executor(
            [make_source("down", 20.0, 0.9), make_source("up", 10.0, 0.9)],
            {"down": PaperSourceProfile(error_rate=1.0), "up": PaperSourceProfile(price=10.0)},
        )
        result = await executor.execute(make_strategy((8.0, 1500, ["down", "up"])), make_opportunity())
        assert result.per_slot_winner == {1: "up"}

    @pytest.mark.asyncio
    async def test_infinite_price_cannot_win(self):
        """Test a source answering an infinite price neither wins nor poisons the registry."""

        class InfinityClient(BidClient):
            async def request_bid(self, source, request):
                price = float("inf") if source.name == "bad" else 12.0
                return {"price": price, "creativeRef": f"https://c/{source.name}.xml"}

        registry = DemandSourceRegistry([make_source("bad", 10.0, 0.9), make_source("ok", 10.0, 0.9)])
        predictor = FillRatePredictor(capacity=100)
        executor = PodExecutor(
            dispatcher=BidDispatcher(InfinityClient()),
            engine=AuctionEngine(registry),
            learning=LearningLoop(registry, predictor, PerformanceHistory()),
            predictor=predictor,
            registry=registry,
        )

        result = await executor.execute(make_strategy((8.0, 1500, ["bad", "ok"])), make_opportunity())

        assert result.per_slot_winner == {1: "ok"}
        assert math.isfinite(result.total_revenue)
        assert registry.get("bad").avg_price == 10.0
        assert registry.top_by_price(1)[0].name == "ok"


class TestLearning:
    """Tests for learning updates."""

    @pytest.mark.asyncio
    async def test_records_and_registry_updates(self):
        """Test one record per attempted source and an EMA update for the winner."""
        executor, _, registry, predictor, history = build_executor(
            [make_source("a", 10.0, 0.9), make_source("b", 8.0, 0.9)],
            {"a": PaperSourceProfile(price=12.0), "b": PaperSourceProfile(fill_probability=0.0)},
        )
        await executor.execute(make_strategy((8.0, 1500, ["a", "b"])), make_opportunity())

        assert len(predictor) == 2
        assert predictor.sample_count("a") == 1
        assert predictor.sample_count("b") == 1
        assert registry.get("a").avg_price == pytest.approx(10.0 * 0.95 + 12.0 * 0.05)
        assert registry.get("b").avg_price == 8.0
        hist = history.get("postroll")
        assert hist.sample_size == 1
        assert hist.fill_count == 1

    @pytest.mark.asyncio
    async def test_failed_slot_still_learned(self):
        """Test unfilled slots produce training records."""
        executor, _, registry, predictor, history = build_executor(
            [make_source("a", 10.0, 0.9)], {"a": PaperSourceProfile(fill_probability=0.0)}
        )
        await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())
        assert predictor.get_analytics()["by_source"]["a"]["fill_rate"] == 0.0
        assert registry.get("a").fill_rate == 0.9
        assert history.get("postroll").avg_fill_rate == 0.0

    def test_unresolved_slot_rejected(self):
        """Test the learning loop refuses unresolved slots."""
        registry = DemandSourceRegistry([make_source("a", 10.0, 0.9)])
        loop = LearningLoop(registry, FillRatePredictor(capacity=10))
        with pytest.raises(ValueError):
            loop.record_slot(Slot(index=1, duration=30, floor=8.0, timeout_ms=1000), make_opportunity(), [])


class TestCreatives:
    """Tests for creative resolution during execution."""

    @pytest.mark.asyncio
    async def test_fetch_failure_flags_fallback(self):
        """Test a failed creative fetch keeps the slot filled but flagged."""
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("unreachable")
        fetcher = CreativeFetcher(session=session)
        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)],
            {"a": PaperSourceProfile(price=12.0)},
            creative_fetcher=fetcher,
        )

        result = await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())

        assert result.slots_filled == 1
        assert result.flagged_creatives == [1]
        assert fetcher.failures == 1

    @pytest.mark.asyncio
    async def test_inline_creative_not_fetched(self):
        """Test inline markup needs no fetch."""
        session = MagicMock()
        fetcher = CreativeFetcher(session=session)
        executor, *_ = build_executor(
            [make_source("a", 12.0, 0.9)],
            {"a": PaperSourceProfile(price=12.0, inline_creative=True)},
            creative_fetcher=fetcher,
        )

        result = await executor.execute(make_strategy((8.0, 1500, ["a"])), make_opportunity())

        assert result.flagged_creatives == []
        session.get.assert_not_called()


class TestRepeatedPods:
    """Tests for a fixed three-source demand mix."""

    @pytest.mark.asyncio
    async def test_thousand_single_slot_pods(self):
        """Test the reliable mid-priced source wins most slots at a capped price."""
        executor, *_ = build_executor(
            [
                make_source("s1", 10.0, 0.9, latency=300.0),
                make_source("s2", 20.0, 0.1, latency=300.0),
                make_source("s3", 5.0, 0.5, latency=300.0),
            ],
            {
                "s1": PaperSourceProfile(fill_probability=0.9, price=10.0, advertiser_domains=["one.example"]),
                "s2": PaperSourceProfile(fill_probability=0.1, price=20.0, advertiser_domains=["two.example"]),
                "s3": PaperSourceProfile(fill_probability=0.5, price=5.0, advertiser_domains=["three.example"]),
            },
            seed=2024,
        )

        wins = {"s1": 0, "s2": 0, "s3": 0}
        filled = 0
        for _ in range(1000):
            strategy = make_strategy((8.0, 1500, ["s1", "s2", "s3"]))
            result = await executor.execute(strategy, make_opportunity())
            outcome = strategy.slots[0].outcome
            if outcome.filled:
                filled += 1
                wins[outcome.winner.source] += 1
                assert outcome.clearing_price <= 10.0
                assert outcome.clearing_price <= outcome.winner.price
            else:
                assert outcome.failure_reason in (FailureReason.NO_BIDS, FailureReason.BELOW_FLOOR)
            assert result.slots_attempted == 1

        assert wins["s1"] > 500
        assert wins["s1"] == filled
        assert wins["s3"] == 0
