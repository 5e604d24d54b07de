"""Распознавание и регистрация спикеров по embedding'ам.

Архитектура:
    models.py     SpeakerProfile, MatchResult, EnrollmentResult
    similarity.py косинусное сходство, усреднение embedding'ов
    embedder.py   EmbeddingProvider и реализация на resemblyzer
    storage.py    SQLite: профили и скалярные настройки
    registry.py   реестр в памяти + порог сходства
    matcher.py    сопоставление окна с реестром
    enrollment.py машина состояний регистрации
"""
from .embedder import EmbeddingProvider, ResemblyzerEmbedder, generate_embedding
from .enrollment import EnrollmentSession, EnrollmentState, EnrollmentStateMachine
from .matcher import SpeakerMatcher
from .models import EnrollmentResult, MatchResult, SpeakerProfile
from .registry import PersistedScalar, SimilarityThreshold, SpeakerRegistry
from .similarity import SimilarityScorer, average_embeddings, cosine_similarity
from .storage import ProfileStore, SQLiteProfileStore, coerce_embedding

__all__ = [
    "EmbeddingProvider",
    "ResemblyzerEmbedder",
    "generate_embedding",
    "EnrollmentSession",
    "EnrollmentState",
    "EnrollmentStateMachine",
    "SpeakerMatcher",
    "EnrollmentResult",
    "MatchResult",
    "SpeakerProfile",
    "PersistedScalar",
    "SimilarityThreshold",
    "SpeakerRegistry",
    "SimilarityScorer",
    "average_embeddings",
    "cosine_similarity",
    "ProfileStore",
    "SQLiteProfileStore",
    "coerce_embedding",
]
