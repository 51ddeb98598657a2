"""Property tests for feature id derivation.

Feature ids name a run and its artifact directory, so they must be
deterministic, safe as a single path segment, and stable when derived
again from themselves.

Testing Configuration:
- Framework: pytest with hypothesis
- Minimum iterations: 100 per property test
"""

from hypothesis import given, settings
from hypothesis import strategies as st

from src.rpi.feature import (
    FALLBACK_FEATURE_ID,
    FEATURE_ID_MAX_LENGTH,
    feature_id,
    is_valid_feature_id,
    item_feature_id,
)


# =============================================================================
# Hypothesis Strategies
# =============================================================================


@st.composite
def issue_title(draw: st.DrawFn) -> str:
    """Generate issue titles mixing words, punctuation and unicode."""
    words = draw(
        st.lists(
            st.one_of(
                st.text(
                    alphabet=st.sampled_from(
                        "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
                    ),
                    min_size=1,
                    max_size=12,
                ),
                st.sampled_from(["Café", "naïve", "façade", "日本", "::", "../", "#42"]),
            ),
            min_size=0,
            max_size=15,
        )
    )
    separator = draw(st.sampled_from([" ", "  ", "_", "/", " - ", "\t"]))
    return separator.join(words)


# =============================================================================
# Property Tests
# =============================================================================


class TestFeatureIdProperties:
    """Property tests for feature_id."""

    @given(title=st.text(max_size=200))
    @settings(max_examples=100)
    def test_any_text_yields_a_path_safe_id(self, title: str):
        result = feature_id(title)

        assert is_valid_feature_id(result)
        assert "/" not in result
        assert ".." not in result
        assert 0 < len(result) <= FEATURE_ID_MAX_LENGTH

    @given(title=issue_title())
    @settings(max_examples=100)
    def test_derivation_is_deterministic(self, title: str):
        assert feature_id(title) == feature_id(title)

    @given(title=issue_title())
    @settings(max_examples=100)
    def test_derivation_is_idempotent(self, title: str):
        once = feature_id(title)
        assert feature_id(once) == once

    @given(title=issue_title())
    @settings(max_examples=100)
    def test_case_does_not_change_the_id(self, title: str):
        assert feature_id(title.upper()) == feature_id(title.lower())


class TestFeatureIdExamples:
    """Concrete feature id examples."""

    def test_rate_limiting_title(self):
        assert (
            feature_id("Add rate limiting to API endpoints")
            == "add-rate-limiting-to-api-endpoints"
        )

    def test_punctuation_collapses_to_single_separator(self):
        assert feature_id("Fix: crash on   save!!") == "fix-crash-on-save"

    def test_accents_are_folded(self):
        assert feature_id("Café menu") == "cafe-menu"

    def test_path_traversal_is_neutralized(self):
        assert feature_id("../../etc/passwd") == "etc-passwd"

    def test_empty_and_symbol_only_titles_fall_back(self):
        assert feature_id("") == FALLBACK_FEATURE_ID
        assert feature_id("!!!") == FALLBACK_FEATURE_ID
        assert feature_id(None) == FALLBACK_FEATURE_ID

    def test_long_titles_are_truncated_without_trailing_separator(self):
        result = feature_id("word " * 40)
        assert len(result) <= FEATURE_ID_MAX_LENGTH
        assert not result.endswith("-")

    def test_is_valid_feature_id_rejects_unsafe_values(self):
        assert not is_valid_feature_id("")
        assert not is_valid_feature_id("Upper")
        assert not is_valid_feature_id("-leading")
        assert not is_valid_feature_id("a--b")
        assert not is_valid_feature_id("a/b")
        assert not is_valid_feature_id(None)
        assert is_valid_feature_id("add-cache-2")


class TestItemFeatureId:
    """Issue-number qualification for colliding feature ids."""

    @given(title=issue_title(), number=st.integers(min_value=1, max_value=10**9))
    @settings(max_examples=100)
    def test_qualified_id_is_valid_and_numbered(self, title: str, number: int):
        qualified = item_feature_id(feature_id(title), number)

        assert is_valid_feature_id(qualified)
        assert len(qualified) <= FEATURE_ID_MAX_LENGTH
        assert qualified.endswith(f"-{number}")

    def test_untitled_issues_are_told_apart(self):
        assert item_feature_id(feature_id("发布 新功能"), 8) == "untitled-8"
        assert item_feature_id(feature_id("修复 登录"), 9) == "untitled-9"

    def test_long_base_is_shortened_to_fit(self):
        base = feature_id("word " * 40)
        qualified = item_feature_id(base, 12345)

        assert len(qualified) <= FEATURE_ID_MAX_LENGTH
        assert qualified.endswith("-12345")
        assert "--" not in qualified
