"""Сопоставление окна с реестром (режим распознавания)."""
from __future__ import annotations

from typing import Optional

import numpy as np

from speakerid.errors import ErrorKind, InferenceFailed
from speakerid.events import EventChannel, RecognitionEvent
from speakerid.utils.logging import get_logger

from .embedder import EmbeddingProvider, generate_embedding
from .models import MatchResult
from .registry import SimilarityThreshold, SpeakerRegistry
from .similarity import SimilarityScorer

logger = get_logger("speaker.matcher")


class SpeakerMatcher:
    """embedding окна → лучший профиль → событие MATCH / NO_MATCH.

    Неудачный embedding не повторяется: окно выбрасывается, следующее
    окно его заменит.
    """

    def __init__(
        self,
        embedder: EmbeddingProvider,
        registry: SpeakerRegistry,
        threshold: SimilarityThreshold,
        events: EventChannel,
        scorer: Optional[SimilarityScorer] = None,
        window_size: Optional[int] = None,
    ) -> None:
        self.embedder = embedder
        self.registry = registry
        self.threshold = threshold
        self.events = events
        self.scorer = scorer or SimilarityScorer()
        self.window_size = window_size

        self.windows_matched = 0
        self.matches = 0
        self.no_matches = 0
        self.inference_failures = 0

    def match(self, window: np.ndarray) -> Optional[MatchResult]:
        """Обрабатывает одно окно и публикует результат.

        Returns:
            MatchResult или None, если embedding построить не удалось.
        """
        self.windows_matched += 1
        try:
            embedding = generate_embedding(
                self.embedder,
                window,
                expected_dim=self.registry.embedding_dim,
                window_size=self.window_size,
            )
        except InferenceFailed as e:
            self.inference_failures += 1
            logger.warning("recognition_window_dropped", error=str(e))
            self.events.publish(RecognitionEvent.error(ErrorKind.INFERENCE_FAILED, str(e)))
            return None

        profiles = self.registry.profiles()
        if not profiles:
            logger.debug("no_enrolled_speakers")
            self.events.publish(RecognitionEvent.no_enrolled_speakers())
            return MatchResult(outcome="no_speakers")

        best_name, best_score = self.scorer.best_match(embedding, profiles)
        threshold = self.threshold.value

        if best_name is not None and best_score is not None and best_score >= threshold:
            self.matches += 1
            logger.info("speaker_matched", name=best_name, score=round(best_score, 4), threshold=threshold)
            self.events.publish(RecognitionEvent.match(best_name, best_score))
            return MatchResult(outcome="match", name=best_name, score=best_score)

        self.no_matches += 1
        logger.debug(
            "speaker_not_matched",
            best_name=best_name,
            best_score=None if best_score is None else round(best_score, 4),
            threshold=threshold,
        )
        self.events.publish(RecognitionEvent.no_match(best_score))
        return MatchResult(outcome="no_match", name=best_name, score=best_score)
