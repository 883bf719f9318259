"""
EGRA scoring for learner assessment rows.

Main components:
- classify: story-reading WPM to fluency level
- summarize: class averages, boys/girls splits and level distribution
- build_assessment_payload: the normalized payload stored with an assessment
"""

from .egra import (
    DomainAverages,
    EgraClassSummary,
    FLUENCY_BANDS,
    LevelShare,
    NormalizedLearner,
    build_assessment_payload,
    classify,
    coerce_rows,
    normalize_learner,
    parse_level,
    resolve_level,
    summarize,
)

__all__ = [
    'DomainAverages',
    'EgraClassSummary',
    'FLUENCY_BANDS',
    'LevelShare',
    'NormalizedLearner',
    'build_assessment_payload',
    'classify',
    'coerce_rows',
    'normalize_learner',
    'parse_level',
    'resolve_level',
    'summarize',
]
