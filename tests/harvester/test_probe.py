"""Tests for the listing page probe.

HTTP is mocked with respx; no network access is needed.
"""

from __future__ import annotations

import httpx
import pytest
import respx

from review_harvester.harvester.probe import ProbeResult, parse_listing, probe_target

_URL = "https://yandex.ru/maps/org/kofeynya/42/"
_REVIEWS_URL = "https://yandex.ru/maps/org/kofeynya/42/reviews/"

_LISTING_HTML = """
<html>
<head><title>Кофейня на Арбате — Яндекс Карты</title></head>
<body>
  <div itemProp="aggregateRating">
    <meta itemProp="ratingValue" content="4,7"/>
    <meta itemProp="reviewCount" content="120"/>
  </div>
</body>
</html>
"""


class TestParseListing:
    def test_microdata(self) -> None:
        result = parse_listing(_LISTING_HTML)

        assert result == ProbeResult(name="Кофейня на Арбате", rating=4.7, review_count=120)

    @pytest.mark.parametrize(
        "markup",
        [
            "<meta itemprop='reviewCount' content='120'><meta itemprop='ratingValue' content='4.7'>",
            "<meta content=120 itemprop=reviewCount><meta   itemprop=ratingValue   content=4.7 >",
            '<span itemprop="reviewCount">120 отзывов</span><span itemprop="ratingValue">4,7</span>',
        ],
    )
    def test_microdata_attribute_variants(self, markup: str) -> None:
        result = parse_listing(f"<title>Kofe</title>{markup}")

        assert result == ProbeResult(name="Kofe", rating=4.7, review_count=120)

    def test_json_ld(self) -> None:
        page = (
            '<script type="application/ld+json">'
            '{"@type": "LocalBusiness", "aggregateRating": {"ratingValue": "4.2", "reviewCount": 57}}'
            "</script>"
        )

        result = parse_listing(page)

        assert result.rating == 4.2
        assert result.review_count == 57
        assert result.name is None

    def test_malformed_json_ld_is_ignored(self) -> None:
        page = '<script type="application/ld+json">{not json</script><title>Kofe</title>'

        assert parse_listing(page) == ProbeResult(name="Kofe", rating=None, review_count=None)

    def test_entities_in_title_are_decoded(self) -> None:
        result = parse_listing("<title>Tom &amp; Jerry — Яндекс Карты</title>")

        assert result.name == "Tom & Jerry"

    def test_reviews_title_prefix_is_stripped(self) -> None:
        result = parse_listing("<title>Отзывы о «Пекарня №1» – Яндекс Карты</title>")

        assert result.name == "Пекарня №1"

    def test_nothing_recognisable(self) -> None:
        assert parse_listing("<html><body>captcha</body></html>") is None


class TestProbeTarget:
    @respx.mock
    def test_fetches_reviews_page(self) -> None:
        route = respx.get(_REVIEWS_URL).mock(return_value=httpx.Response(200, text=_LISTING_HTML))

        result = probe_target(_URL, timeout=1.0)

        assert route.called
        assert result.review_count == 120
        assert result.as_metadata() == {"name": "Кофейня на Арбате", "rating": 4.7, "review_count": 120}
        assert "Mozilla" in route.calls.last.request.headers["User-Agent"]

    @respx.mock
    @pytest.mark.parametrize(
        "side_effect",
        [
            httpx.Response(503),
            httpx.ConnectTimeout("timed out"),
            httpx.ConnectError("refused"),
        ],
    )
    def test_failures_return_none(self, side_effect) -> None:
        if isinstance(side_effect, httpx.Response):
            respx.get(_REVIEWS_URL).mock(return_value=side_effect)
        else:
            respx.get(_REVIEWS_URL).mock(side_effect=side_effect)

        assert probe_target(_URL, timeout=1.0) is None

    def test_injected_client_is_not_closed(self) -> None:
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text=_LISTING_HTML))
        client = httpx.Client(transport=transport)

        result = probe_target(_URL, client=client, timeout=1.0)

        assert result.rating == 4.7
        assert not client.is_closed
        client.close()
