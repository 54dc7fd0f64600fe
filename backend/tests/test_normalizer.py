"""Tests for price/text helpers and the DealNormalizer."""

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from orben.core.exceptions import NormalizationError
from orben.ingestion.base import RawRecord
from orben.ingestion.normalize import CanonicalDeal, DealNormalizer
from orben.ingestion.registry import SourceSnapshot
from orben.ingestion.utils.normalizer import (
    CategoryClassifier,
    PriceNormalizer,
    discount_percentage,
    merchant_from_title,
    normalize_url,
    strip_price_tokens,
)


FETCHED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(source_type="rss", **config) -> SourceSnapshot:
    return SourceSnapshot(
        id=uuid.uuid4(),
        name="Deal Feed",
        slug="deal-feed",
        type=source_type,
        endpoint="https://feeds.example.com/deals",
        enabled=True,
        poll_interval=timedelta(minutes=30),
        config=config,
    )


def record(source_type, **data) -> RawRecord:
    return RawRecord(source_type=source_type, data=data, fetched_at=FETCHED_AT)


class TestPriceNormalizer:

    @pytest.mark.parametrize("raw, expected", [
        ("$12.99", Decimal("12.99")),
        ("USD 1,234.50", Decimal("1234.50")),
        ("1.234,56 €", Decimal("1234.56")),
        ("12,99", Decimal("12.99")),
        ("1,299", Decimal("1299")),
    ])
    def test_clean_price_string(self, raw, expected):
        assert PriceNormalizer.clean_price_string(raw) == expected

    def test_clean_price_string_rejects_garbage(self):
        assert PriceNormalizer.clean_price_string("call for price") is None
        assert PriceNormalizer.clean_price_string("") is None

    def test_coerce_quantizes_to_cents(self):
        assert PriceNormalizer.coerce(19.999) == Decimal("20.00")
        assert PriceNormalizer.coerce(199) == Decimal("199.00")

    def test_coerce_minor_units(self):
        assert PriceNormalizer.coerce(1999, cents=True) == Decimal("19.99")
        assert PriceNormalizer.coerce("1999", cents=True) == Decimal("19.99")

    @pytest.mark.parametrize("value", [None, True, 0, -5, "free", float("nan")])
    def test_coerce_rejects_unusable_prices(self, value):
        assert PriceNormalizer.coerce(value) is None

    def test_extract_prices_from_headline(self):
        price, original = PriceNormalizer.extract_prices_from_text("Sony WH-1000XM4 — $199 (was $349)")
        assert price == Decimal("199.00")
        assert original == Decimal("349.00")

    def test_extract_prices_was_before_price(self):
        price, original = PriceNormalizer.extract_prices_from_text("Reg. $59.99, now $39.99 at Target")
        assert price == Decimal("39.99")
        assert original == Decimal("59.99")

    def test_extract_percent_off(self):
        assert PriceNormalizer.extract_percent_off("Save 35% off all LEGO") == 35
        assert PriceNormalizer.extract_percent_off("no discount here") is None


class TestTextHelpers:

    def test_discount_percentage_rounds_half_up(self):
        assert discount_percentage(Decimal("199"), Decimal("349")) == 43
        assert discount_percentage(Decimal("50"), Decimal("100")) == 50

    def test_discount_percentage_requires_real_discount(self):
        assert discount_percentage(Decimal("100"), Decimal("100")) is None
        assert discount_percentage(Decimal("100"), None) is None

    def test_strip_price_tokens(self):
        assert strip_price_tokens("Sony WH-1000XM4 — $199 (was $349)") == "Sony WH-1000XM4"

    def test_normalize_url_drops_tracking_and_fragment(self):
        url = "HTTPS://WWW.BestBuy.com/site/123?utm_source=rss&skuId=123&fbclid=x#reviews"
        assert normalize_url(url) == "https://www.bestbuy.com/site/123?skuId=123"

    def test_merchant_from_title(self):
        assert merchant_from_title("Echo Dot (5th Gen) $19.99 at Amazon") == "Amazon"
        assert merchant_from_title("Echo Dot (5th Gen) $19.99") is None

    def test_category_classifier(self):
        assert CategoryClassifier.classify("DEWALT 20V Max Drill Kit") == "tools"
        assert CategoryClassifier.classify("Nintendo Switch OLED Console") == "gaming"
        assert CategoryClassifier.classify("Mystery box") is None


class TestDealNormalizer:

    def setup_method(self):
        self.normalizer = DealNormalizer()

    def test_rss_headline_prices_and_source_merchant(self):
        source = snapshot(merchant="BestBuy")
        deal = self.normalizer.normalize(
            record(
                "rss",
                guid="sd-1",
                title="Sony WH-1000XM4 — $199 (was $349)",
                link="https://www.bestbuy.com/site/6408356",
                summary=None,
                image_url=None,
                published_at=datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc),
            ),
            source,
        )

        assert isinstance(deal, CanonicalDeal)
        assert deal.price == Decimal("199.00")
        assert deal.original_price == Decimal("349.00")
        assert deal.discount_percentage == 43
        assert deal.merchant == "BestBuy"
        assert deal.category == "electronics"
        assert deal.source_id == source.id
        assert deal.source_item_id == "sd-1"
        assert deal.posted_at == datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def test_rss_merchant_from_title_beats_config(self):
        deal = self.normalizer.normalize(
            record("rss", title="LEGO Star Wars X-Wing $39.99 at Walmart", link="https://walmart.com/ip/1"),
            snapshot(merchant="BestBuy"),
        )
        assert deal.merchant == "Walmart"
        assert deal.category == "toys-collectibles"

    def test_rss_price_from_summary_and_free_shipping(self):
        deal = self.normalizer.normalize(
            record(
                "rss",
                title="Ryobi 18V Impact Driver",
                link="https://www.homedepot.com/p/1",
                summary="Now $79 (was $129) with free shipping",
            ),
            snapshot(),
        )
        assert deal.price == Decimal("79.00")
        assert deal.original_price == Decimal("129.00")
        assert deal.signals == {"free_shipping": True}

    def test_posted_at_defaults_to_fetch_time(self):
        deal = self.normalizer.normalize(
            record("rss", title="Widget $5", link="https://example.com/w"),
            snapshot(),
        )
        assert deal.posted_at == FETCHED_AT
        assert deal.merchant == "Deal Feed"
        assert deal.category == "general"

    def test_affiliate_sale_and_list_price(self):
        deal = self.normalizer.normalize(
            record(
                "affiliate",
                guid="SKU-1",
                title="Makita Circular Saw",
                link="https://shop.example.com/saw",
                price="179.99 USD",
                original_price="249.99 USD",
            ),
            snapshot("affiliate", merchant="Acme Tools"),
        )
        assert deal.price == Decimal("179.99")
        assert deal.original_price == Decimal("249.99")
        assert deal.discount_percentage == 28
        assert deal.merchant == "Acme Tools"

    def test_affiliate_product_type_fills_in_category(self):
        deal = self.normalizer.normalize(
            record(
                "affiliate",
                title="Vitamix E310 Explorian",
                link="https://shop.example.com/e310",
                price="289.95",
                product_type="Home & Garden > Kitchen Appliances > Blenders",
                brand="Vitamix",
            ),
            snapshot("affiliate", merchant="Acme Home", category="tools"),
        )
        assert deal.category == "home"

    def test_title_category_beats_product_type(self):
        deal = self.normalizer.normalize(
            record(
                "affiliate",
                title="Sony WH-1000XM5 Headphones",
                link="https://shop.example.com/xm5",
                price="299.99",
                product_type="Home & Garden > Kitchen Appliances > Blenders",
            ),
            snapshot("affiliate", merchant="Acme Home"),
        )
        assert deal.category == "electronics"

    def test_structured_record_with_field_map_and_cents(self):
        source = snapshot(
            "api",
            price_in_cents=True,
            fields={"title": "product.name", "url": "product.href"},
        )
        deal = self.normalizer.normalize(
            record(
                "api",
                product={"name": "Pixel 8 Pro", "href": "https://store.example.com/pixel"},
                sale_price=69900,
                regular_price=99900,
                id=42,
                votes=30,
                comments=12,
                shipping="Free",
                category="Phones",
            ),
            source,
        )
        assert deal.title == "Pixel 8 Pro"
        assert deal.price == Decimal("699.00")
        assert deal.original_price == Decimal("999.00")
        assert deal.source_item_id == "42"
        assert deal.category == "phones"
        assert deal.signals == {"votes": 30, "comments": 12, "free_shipping": True}

    def test_manual_record_uses_external_id(self):
        deal = self.normalizer.normalize(
            record(
                "manual",
                title="Fluval 407 Canister Filter",
                url="https://www.chewy.com/fluval-407",
                price="$219.99",
                merchant="Chewy",
                external_id="chewy-407",
            ),
            snapshot("manual"),
        )
        assert deal.merchant == "Chewy"
        assert deal.source_item_id == "chewy-407"
        assert deal.category == "home"

    def test_original_not_above_price_is_dropped(self):
        deal = self.normalizer.normalize(
            record("manual", title="Thing", url="https://example.com/t", price=50, original_price=40),
            snapshot("manual"),
        )
        assert deal.original_price is None
        assert deal.discount_percentage is None

    def test_unparseable_price_raises(self):
        with pytest.raises(NormalizationError):
            self.normalizer.normalize(
                record("manual", title="Thing", url="https://example.com/t", price="see site"),
                snapshot("manual"),
            )

    def test_missing_url_raises(self):
        with pytest.raises(NormalizationError):
            self.normalizer.normalize(
                record("manual", title="Thing", url="not a url", price=10),
                snapshot("manual"),
            )

    def test_canonical_deal_rejects_non_positive_price(self):
        with pytest.raises(NormalizationError):
            CanonicalDeal(
                title="x", url="https://e.com", price=Decimal("0"),
                merchant="m", category="c", posted_at=FETCHED_AT,
            )
