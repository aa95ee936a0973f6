"""Unit tests for target id extraction and listing URLs."""

from __future__ import annotations

import pytest

from review_harvester.core.exceptions import InvalidTargetError
from review_harvester.harvester.targets import extract_target_id, reviews_url


class TestExtractTargetId:
    @pytest.mark.parametrize(
        "reference",
        [
            "https://yandex.ru/maps/org/kofeynya/1234567890/",
            "https://yandex.ru/maps/org/kofeynya/1234567890/reviews/",
            "https://yandex.ru/maps/org/other_slug/1234567890/?ll=37.6,55.7&z=16",
            "https://yandex.com/maps/213/moscow/org/kofeynya/1234567890",
            "  1234567890 ",
        ],
    )
    def test_url_variants_share_one_target(self, reference: str) -> None:
        assert extract_target_id(reference) == "1234567890"

    @pytest.mark.parametrize(
        "reference",
        ["", "https://yandex.ru/maps/", "https://example.com/org/", "not a url"],
    )
    def test_unrecognised_reference_raises(self, reference: str) -> None:
        with pytest.raises(InvalidTargetError) as exc_info:
            extract_target_id(reference)

        assert exc_info.value.reference == reference


class TestReviewsUrl:
    def test_appends_reviews_suffix(self) -> None:
        assert (
            reviews_url("https://yandex.ru/maps/org/kofeynya/42/")
            == "https://yandex.ru/maps/org/kofeynya/42/reviews/"
        )

    def test_existing_suffix_and_query_are_normalised(self) -> None:
        assert (
            reviews_url("https://yandex.ru/maps/org/kofeynya/42/reviews?tab=new")
            == "https://yandex.ru/maps/org/kofeynya/42/reviews/"
        )
