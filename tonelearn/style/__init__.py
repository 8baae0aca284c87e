"""Writing style profiles: LLM pattern analysis and counted summaries."""

from tonelearn.style.aggregation import AggregatedStyle, StyleAggregationService
from tonelearn.style.merge import aggregate_patterns
from tonelearn.style.models import (
    AnalysisEmail,
    BatchAnalysisResult,
    WritingPatterns,
)
from tonelearn.style.pattern_analyzer import WritingPatternAnalyzer

__all__ = [
    "AggregatedStyle",
    "AnalysisEmail",
    "BatchAnalysisResult",
    "StyleAggregationService",
    "WritingPatternAnalyzer",
    "WritingPatterns",
    "aggregate_patterns",
]
