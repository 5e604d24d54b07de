"""Тесты косинусного сходства, усреднения и моделей профилей."""
from __future__ import annotations

import numpy as np
import pytest

from speakerid.errors import EmbeddingDimensionMismatch, InvalidName
from speakerid.speaker.models import MatchResult, SpeakerProfile, as_embedding, validate_name
from speakerid.speaker.similarity import SimilarityScorer, average_embeddings, cosine_similarity


class TestCosineSimilarity:
    def test_identical_vectors(self):
        v = np.array([0.3, -1.2, 4.0, 0.5], dtype=np.float32)
        assert cosine_similarity(v, v) == pytest.approx(1.0)

    def test_scale_invariant(self):
        v = np.array([1.0, 2.0, 3.0])
        assert cosine_similarity(v, 10 * v) == pytest.approx(1.0)

    def test_opposite_vectors(self):
        v = np.array([1.0, 2.0, 3.0])
        assert cosine_similarity(v, -v) == pytest.approx(-1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity(np.array([1.0, 0.0]), np.array([0.0, 1.0])) == pytest.approx(0.0)

    def test_symmetric(self):
        rng = np.random.default_rng(7)
        a, b = rng.normal(size=256), rng.normal(size=256)
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_zero_vector_gives_zero(self):
        """Нулевой вектор: 0.0 вместо NaN."""
        zero = np.zeros(4)
        assert cosine_similarity(zero, np.ones(4)) == 0.0
        assert cosine_similarity(zero, zero) == 0.0

    def test_result_within_bounds(self):
        rng = np.random.default_rng(1)
        for _ in range(20):
            sim = cosine_similarity(rng.normal(size=16), rng.normal(size=16))
            assert -1.0 <= sim <= 1.0

    def test_dimension_mismatch(self):
        with pytest.raises(EmbeddingDimensionMismatch):
            cosine_similarity(np.ones(4), np.ones(5))


class TestAverageEmbeddings:
    def test_elementwise_mean(self):
        mean = average_embeddings([np.array([1.0, 0.0]), np.array([0.0, 1.0]), np.array([2.0, 2.0])])
        np.testing.assert_allclose(mean, [1.0, 1.0])
        assert mean.dtype == np.float32

    def test_identical_inputs_are_idempotent(self):
        v = np.array([0.1, 0.2, 0.3], dtype=np.float32)
        np.testing.assert_allclose(average_embeddings([v, v, v]), v, rtol=1e-6)

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            average_embeddings([])

    def test_mixed_dimensions_rejected(self):
        with pytest.raises(EmbeddingDimensionMismatch):
            average_embeddings([np.ones(3), np.ones(4)])


class TestSimilarityScorer:
    def _profiles(self, *pairs):
        return [SpeakerProfile(name=n, embedding=np.array(v, dtype=np.float32)) for n, v in pairs]

    def test_best_match_picks_highest(self):
        profiles = self._profiles(("Alice", [1, 0, 0]), ("Bob", [0, 1, 0]))
        name, score = SimilarityScorer().best_match(np.array([0.1, 0.9, 0.0]), profiles)
        assert name == "Bob"
        assert score > 0.9

    def test_tie_keeps_first_registered(self):
        profiles = self._profiles(("Alice", [1, 0]), ("Bob", [1, 0]))
        name, _ = SimilarityScorer().best_match(np.array([1.0, 0.0]), profiles)
        assert name == "Alice"

    def test_no_profiles(self):
        assert SimilarityScorer().best_match(np.ones(3), []) == (None, None)


class TestModels:
    def test_profile_embedding_is_readonly_float32(self):
        profile = SpeakerProfile(name=" Alice ", embedding=[1, 2, 3])
        assert profile.name == "Alice"
        assert profile.dim == 3
        assert profile.embedding.dtype == np.float32
        assert not profile.embedding.flags.writeable

    @pytest.mark.parametrize("name", ["", "   ", None])
    def test_empty_name_rejected(self, name):
        with pytest.raises(InvalidName):
            validate_name(name)

    def test_invalid_embeddings_rejected(self):
        with pytest.raises(ValueError):
            as_embedding([])
        with pytest.raises(ValueError):
            as_embedding([[1.0, 2.0]])
        with pytest.raises(ValueError):
            as_embedding([1.0, float("nan")])
        with pytest.raises(ValueError):
            as_embedding([1.0, 2.0], dim=3)

    def test_match_result(self):
        assert MatchResult(outcome="match", name="Alice", score=0.9).is_match
        assert not MatchResult(outcome="no_speakers").is_match
