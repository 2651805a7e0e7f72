"""Tests for LLM output parsing, allocation normalization and fallbacks."""

import pytest

RAW = {
    "title": "Balanced Aptos Yield",
    "summary": "Split between staking and lending.",
    "allocation": [
        {"protocol": "Amnis", "product": "Liquid Staking", "percentage": 60, "expectedApr": 7.5},
        {"protocol": "aries", "product": "Lending", "percentage": 40, "expectedApr": "4.5%"},
    ],
    "totalApr": 6.3,
    "rationale": "Staking carries most of the yield.",
    "risks": ["Smart contract risk"],
    "mitigations": ["Diversify"],
    "steps": ["Stake", "Lend"],
}


class TestExtractJson:
    """Test JSON extraction from LLM text."""

    def test_fenced_json_matches_raw(self):
        """A ```json fence parses to the same object as raw JSON."""
        import json
        from app.services.recommendation.allocation import extract_json

        raw = json.dumps(RAW)
        fenced = f"Here is the strategy:\n```json\n{raw}\n```\nLet me know!"

        assert extract_json(fenced) == extract_json(raw) == RAW

    def test_bare_fence(self):
        """Fences without a language tag are accepted."""
        import json
        from app.services.recommendation.allocation import extract_json

        assert extract_json(f"```\n{json.dumps(RAW)}\n```") == RAW

    def test_json_inside_prose(self):
        """An object surrounded by prose is found."""
        from app.services.recommendation.allocation import extract_json

        text = 'Sure. {"title": "x", "allocation": []} Hope this helps.'

        assert extract_json(text) == {"title": "x", "allocation": []}

    @pytest.mark.parametrize("text", ["", "   ", "no json here", "[1, 2, 3]", "{broken"])
    def test_unparseable(self, text):
        """Text without a JSON object raises a parse error."""
        from app.services.recommendation.allocation import RecommendationParseError, extract_json

        with pytest.raises(RecommendationParseError):
            extract_json(text)


class TestNormalizeAllocation:
    """Test percentage normalization."""

    def _entries(self, percentages):
        from app.services.recommendation.allocation import AllocationEntry

        return [
            AllocationEntry(protocol=f"p{i}", product="", percentage=p, expected_apr=5.0)
            for i, p in enumerate(percentages)
        ]

    def test_sum_of_97_scaled_to_100(self):
        """Three entries summing to 97 end at exactly 100, remainder on the last."""
        from app.services.recommendation.allocation import normalize_allocation

        entries = normalize_allocation(self._entries([50, 25, 22]))

        assert [e.percentage for e in entries] == [52, 26, 22]
        assert sum(e.percentage for e in entries) == 100

    def test_already_100_untouched(self):
        """Allocations summing to 100 keep their values."""
        from app.services.recommendation.allocation import normalize_allocation

        entries = normalize_allocation(self._entries([33.5, 33.5, 33]))

        assert [e.percentage for e in entries] == [33.5, 33.5, 33]

    def test_oversubscribed_scaled_down(self):
        """Sums over 100 are scaled down."""
        from app.services.recommendation.allocation import normalize_allocation

        entries = normalize_allocation(self._entries([60, 60]))

        assert [e.percentage for e in entries] == [50, 50]

    def test_zero_total_is_empty(self):
        """Nothing can be scaled from zero."""
        from app.services.recommendation.allocation import normalize_allocation

        assert normalize_allocation(self._entries([0, 0])) == []

    def test_rounding_overshoot_never_negative(self):
        """A remainder larger than the last entry goes to the largest entry."""
        from app.services.recommendation.allocation import normalize_allocation

        entries = normalize_allocation(self._entries([16.5] * 6 + [0.5]))
        percentages = [e.percentage for e in entries]

        assert all(p >= 0 for p in percentages)
        assert sum(percentages) == 100
        assert percentages == [14, 17, 17, 17, 17, 17, 1]

    def test_negative_entries_dropped(self):
        """Negative percentages are removed even when the raw sum is 100."""
        from app.services.recommendation.allocation import normalize_allocation

        entries = normalize_allocation(self._entries([110, -10]))

        assert [(e.protocol, e.percentage) for e in entries] == [("p0", 100)]

    def test_only_negative_is_empty(self):
        """Nothing positive means nothing to allocate."""
        from app.services.recommendation.allocation import normalize_allocation

        assert normalize_allocation(self._entries([-5, 0])) == []


class TestPostProcess:
    """Test post_process on validated LLM output."""

    def test_filters_unknown_protocols_and_renormalizes(self):
        """Unknown protocols are dropped and the rest rescaled."""
        from app.services.recommendation.allocation import (
            LLMRecommendation,
            RecommendationSource,
            RecommendationType,
            RiskProfile,
            post_process,
        )

        data = dict(RAW)
        data["allocation"] = RAW["allocation"] + [
            {"protocol": "scamswap", "percentage": 20, "expectedApr": 400},
        ]
        raw = LLMRecommendation.model_validate(data)

        rec = post_process(raw, {"amnis", "aries"}, RiskProfile.BALANCED, RecommendationType.PERSONALIZED, 50.0)

        assert [a.protocol for a in rec.allocation] == ["amnis", "aries"]
        assert sum(a.percentage for a in rec.allocation) == 100
        assert rec.source == RecommendationSource.AI
        assert rec.allocation[0].amount == 30.0
        assert rec.total_investment == 50.0

    def test_negative_llm_percentage_dropped(self):
        """A negative share from the LLM never reaches the target allocation."""
        from app.services.recommendation.allocation import (
            LLMRecommendation,
            RecommendationType,
            RiskProfile,
            post_process,
        )

        raw = LLMRecommendation.model_validate({
            "allocation": [
                {"protocol": "amnis", "percentage": 110, "expectedApr": 7},
                {"protocol": "aries", "percentage": -10, "expectedApr": 4},
            ],
        })

        rec = post_process(raw, {"amnis", "aries"}, RiskProfile.BALANCED, RecommendationType.GENERAL)

        assert [(a.protocol, a.percentage) for a in rec.allocation] == [("amnis", 100)]
        assert rec.total_apr == 7.0

    def test_total_apr_recomputed(self):
        """total_apr is the weighted average, not the LLM's claim."""
        from app.services.recommendation.allocation import (
            LLMRecommendation,
            RecommendationType,
            RiskProfile,
            post_process,
        )

        raw = LLMRecommendation.model_validate({**RAW, "totalApr": 99})

        rec = post_process(raw, {"amnis", "aries"}, RiskProfile.BALANCED, RecommendationType.GENERAL)

        assert rec.total_apr == 6.3

    def test_missing_fields_filled(self):
        """Missing narrative fields get defaults."""
        from app.services.recommendation.allocation import (
            DEFAULT_RISKS,
            LLMRecommendation,
            RecommendationType,
            RiskProfile,
            post_process,
        )

        raw = LLMRecommendation.model_validate({"allocation": RAW["allocation"]})

        rec = post_process(raw, {"amnis", "aries"}, RiskProfile.AGGRESSIVE, RecommendationType.GENERAL)

        assert rec.title == "Aggressive Investment Strategy"
        assert rec.risks == DEFAULT_RISKS
        assert rec.steps

    def test_empty_after_filtering_raises(self):
        """An allocation of only unknown protocols is unusable."""
        from app.services.recommendation.allocation import (
            LLMRecommendation,
            RecommendationParseError,
            RecommendationType,
            RiskProfile,
            post_process,
        )

        raw = LLMRecommendation.model_validate(RAW)

        with pytest.raises(RecommendationParseError):
            post_process(raw, {"echo"}, RiskProfile.BALANCED, RecommendationType.GENERAL)


class TestFallbackRecommendation:
    """Test built-in strategies."""

    @pytest.mark.parametrize("profile", ["conservative", "balanced", "aggressive"])
    def test_fallback_sums_to_100(self, profile):
        """Every fallback allocation is complete."""
        from app.services.recommendation.allocation import (
            RecommendationSource,
            RiskProfile,
            fallback_recommendation,
        )

        rec = fallback_recommendation(RiskProfile(profile))

        assert sum(a.percentage for a in rec.allocation) == 100
        assert rec.source == RecommendationSource.FALLBACK
        assert rec.risks and rec.mitigations and rec.steps

    def test_round_trip_through_dict(self):
        """Cached recommendations restore to equal objects."""
        from app.services.recommendation.allocation import (
            Recommendation,
            RiskProfile,
            fallback_recommendation,
        )

        rec = fallback_recommendation(RiskProfile.BALANCED, amount=100.0)

        assert Recommendation.from_dict(rec.to_dict()) == rec


class TestParseRiskProfile:
    """Test risk profile parsing."""

    def test_case_insensitive(self):
        """Profiles are matched ignoring case."""
        from app.services.recommendation.allocation import RiskProfile, parse_risk_profile

        assert parse_risk_profile("Aggressive") == RiskProfile.AGGRESSIVE

    def test_unknown_rejected(self):
        """Unknown profiles raise ValueError."""
        from app.services.recommendation.allocation import parse_risk_profile

        with pytest.raises(ValueError):
            parse_risk_profile("degen")
