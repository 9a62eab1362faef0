"""Estudios Monte Carlo sobre grids de parámetros y pivot de resultados a tablas."""

from simstudy.analytics.pivot import PivotTable, make_table
from simstudy.errors import (
    AggregationError,
    ConfigurationError,
    SchemaMismatch,
    SimStudyError,
    TrialFailure,
)
from simstudy.pipeline.study_runner import StudyMetadata, StudyResult, run_study

__all__ = [
    "AggregationError",
    "ConfigurationError",
    "PivotTable",
    "SchemaMismatch",
    "SimStudyError",
    "StudyMetadata",
    "StudyResult",
    "TrialFailure",
    "make_table",
    "run_study",
]
