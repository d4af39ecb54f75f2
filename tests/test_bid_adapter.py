"""
Tests for bid response normalisation.

Tests cover:
- Simplified response shape and its field aliases
- Seat-bid response shape (flattening, first adomain/cat)
- No-bid payloads
- Malformed payloads, including non-finite prices
- Inline creative detection
"""

import json

import pytest

from adpod.demand.adapter import (
    SeatBidResponse,
    SimpleBidResponse,
    normalize_bid,
    parse_bid_response,
    to_bids,
)
from adpod.demand.base import MalformedBidResponse


SEATBID_PAYLOAD = {
    "id": "r-1",
    "seatbid": [
        {
            "seat": "s1",
            "bid": [
                {
                    "id": "b-1",
                    "price": 11.2,
                    "adm": "https://cdn.example/vast1.xml",
                    "nurl": "https://win.example/1",
                    "adomain": ["x.example", "y.example"],
                    "cat": ["IAB2"],
                    "dealid": "d-1",
                },
                {"id": "b-2", "price": 13.4, "adm": "<VAST version=\"4.0\"></VAST>", "adomain": ["z.example"]},
            ],
        },
        {"seat": "s2", "bid": [{"id": "b-3", "price": 9.0, "nurl": "https://win.example/3"}]},
    ],
}


class TestParse:
    """Tests for shape classification."""

    def test_simple_shape(self):
        """Test the simplified object is recognised."""
        response = parse_bid_response(
            {"price": 12, "creativeRef": "https://c/1.xml", "advertiserDomain": "a.example", "category": "auto"},
            "src",
        )
        assert isinstance(response, SimpleBidResponse)
        assert response.kind == "simple"
        assert response.price == 12.0
        assert response.advertiser_domain == "a.example"

    def test_simple_shape_aliases(self):
        """Test cpm / vastUrl aliases."""
        response = parse_bid_response({"cpm": "7.5", "vastUrl": "https://c/2.xml"}, "src")
        assert response.price == 7.5
        assert response.creative_ref == "https://c/2.xml"

    def test_seatbid_shape(self):
        """Test the seat-bid structure is recognised."""
        response = parse_bid_response(SEATBID_PAYLOAD, "src")
        assert isinstance(response, SeatBidResponse)
        assert response.kind == "seatbid"
        assert len(response.seats) == 2

    @pytest.mark.parametrize("payload", [None, {}, {"nobid": True}, {"seatbid": []}])
    def test_no_bid_payloads(self, payload):
        """Test explicit no-bid payloads."""
        assert parse_bid_response(payload, "src") is None

    @pytest.mark.parametrize(
        "payload",
        [
            ["not", "an", "object"],
            {"unexpected": "payload"},
            {"price": "abc"},
            {"price": -1},
            {"seatbid": "nope"},
        ],
    )
    def test_malformed_payloads(self, payload):
        """Test unusable payloads raise MalformedBidResponse."""
        with pytest.raises(MalformedBidResponse) as exc_info:
            parse_bid_response(payload, "src")
        assert exc_info.value.source == "src"

    @pytest.mark.parametrize("price", [float("inf"), float("-inf"), float("nan"), "Infinity", "NaN"])
    def test_non_finite_simple_price(self, price):
        """Test non-finite prices in the simplified shape are malformed."""
        with pytest.raises(MalformedBidResponse):
            parse_bid_response({"price": price, "creativeRef": "r"}, "src")

    @pytest.mark.parametrize("price", [float("inf"), "Infinity"])
    def test_non_finite_seat_price(self, price):
        """Test a non-finite seat bid price is malformed."""
        payload = {"seatbid": [{"bid": [{"price": 12.0, "adm": "a"}, {"price": price, "adm": "b"}]}]}
        with pytest.raises(MalformedBidResponse):
            normalize_bid(payload, "src", 0.0)

    def test_infinity_token_from_json(self):
        """Test the bare Infinity token accepted by json.loads is rejected."""
        payload = json.loads('{"price": Infinity, "creativeRef": "r"}')
        with pytest.raises(MalformedBidResponse):
            parse_bid_response(payload, "src")


class TestToBids:
    """Tests for canonical bid conversion."""

    def test_seatbid_flattened(self):
        """Test every seat bid becomes a Bid."""
        bids = to_bids(parse_bid_response(SEATBID_PAYLOAD, "src"), "src", 120.0)
        assert [b.price for b in bids] == [11.2, 13.4, 9.0]
        assert all(b.source == "src" for b in bids)
        assert all(b.latency_ms == 120.0 for b in bids)

    def test_seatbid_first_domain_and_category(self):
        """Test list-valued adomain/cat take their first element."""
        first = to_bids(parse_bid_response(SEATBID_PAYLOAD, "src"), "src", 0.0)[0]
        assert first.advertiser_domain == "x.example"
        assert first.category == "IAB2"
        assert first.deal_id == "d-1"
        assert first.seat == "s1"

    def test_inline_markup_detected(self):
        """Test VAST markup in adm is kept as inline creative."""
        bids = to_bids(parse_bid_response(SEATBID_PAYLOAD, "src"), "src", 0.0)
        assert not bids[0].has_inline_creative
        assert bids[1].has_inline_creative

    def test_notice_url_used_without_adm(self):
        """Test nurl becomes the creative reference when adm is absent."""
        third = to_bids(parse_bid_response(SEATBID_PAYLOAD, "src"), "src", 0.0)[2]
        assert third.creative_ref == "https://win.example/3"

    def test_seat_bid_without_price(self):
        """Test a seat bid lacking a price is malformed."""
        with pytest.raises(MalformedBidResponse):
            to_bids(SeatBidResponse(seats=[{"bid": [{"adm": "x"}]}]), "src", 0.0)


class TestNormalizeBid:
    """Tests for single-bid normalisation."""

    def test_highest_price_kept(self):
        """Test the best seat bid represents the source."""
        bid = normalize_bid(SEATBID_PAYLOAD, "src", 50.0)
        assert bid.price == 13.4
        assert bid.advertiser_domain == "z.example"

    def test_no_bid(self):
        """Test no-bid payloads normalise to None."""
        assert normalize_bid(None, "src", 0.0) is None

    def test_both_shapes_produce_same_type(self):
        """Test both shapes give the canonical Bid."""
        simple = normalize_bid({"price": 5, "creativeRef": "r"}, "a", 1.0)
        seat = normalize_bid({"seatbid": [{"bid": [{"price": 5, "adm": "r"}]}]}, "a", 1.0)
        assert type(simple) is type(seat)
        assert simple.price == seat.price
        assert simple.creative_ref == seat.creative_ref
