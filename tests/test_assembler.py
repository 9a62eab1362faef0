from __future__ import annotations

import itertools
import random

import numpy as np
import pytest

from simstudy.engine.assembler import (
    ResultAssembler,
    ResultSchema,
    collapse_repetitions,
    reduce_present,
)
from simstudy.engine.grid import validate_grid
from simstudy.engine.trials import TrialTask
from simstudy.errors import AggregationError, ConfigurationError, SchemaMismatch, TrialFailure

GRID = validate_grid({"a": [1, 2], "b": [10, 20, 30]})


def _task(combination, repetition) -> TrialTask:
    params = {"a": GRID["a"][combination[0]], "b": GRID["b"][combination[1]]}
    return TrialTask(task_id=0, combination=combination, repetition=repetition, params=params)


def _pairs(repetitions: int = 2):
    pairs = []
    for i, j in itertools.product(range(2), range(3)):
        for r in range(repetitions):
            a, b = GRID["a"][i], GRID["b"][j]
            pairs.append((_task((i, j), r), {"x": a * b + r, "y": a - b}))
    return pairs


def test_raw_shape_and_placement() -> None:
    assembler = ResultAssembler(GRID, repetitions=2)
    for task, result in _pairs():
        assembler.ingest(task, result)

    values, summary = assembler.finalize(raw=True)

    assert values.shape == (2, 3, 2, 2)
    assert summary.fields == ("x", "y")
    assert values[1, 2, 1, 0] == 2 * 30 + 1
    assert values[0, 1, 0, 1] == 1 - 20
    assert summary.failure_count == 0
    assert not values.flags.writeable


def test_collapsed_shape_is_mean_over_repetitions() -> None:
    assembler = ResultAssembler(GRID, repetitions=2)
    for task, result in _pairs():
        assembler.ingest(task, result)

    values, summary = assembler.finalize(raw=False)

    assert values.shape == (2, 3, 2)
    assert values[1, 2, 0] == pytest.approx(60.5)
    assert summary.raw is False


def test_ingestion_order_does_not_change_the_array() -> None:
    pairs = _pairs(repetitions=3)
    reference = ResultAssembler(GRID, repetitions=3)
    for task, result in pairs:
        reference.ingest(task, result)
    expected, _ = reference.finalize()

    shuffled = list(pairs)
    random.Random(0).shuffle(shuffled)
    assembler = ResultAssembler(GRID, repetitions=3)
    for task, result in shuffled:
        assembler.ingest(task, result)
    values, _ = assembler.finalize()

    np.testing.assert_array_equal(values, expected)


def test_failures_leave_cells_missing_and_are_counted() -> None:
    assembler = ResultAssembler(GRID, repetitions=2)
    failure = TrialFailure(combination=(0, 0), repetition=0, error_type="ValueError", message="boom")
    assembler.ingest(_task((0, 0), 0), failure)
    assembler.ingest(_task((0, 0), 1), {"x": 5.0})

    raw, summary = assembler.finalize(raw=True)

    assert summary.failure_count == 1
    assert np.isnan(raw[0, 0, 0, 0])
    assert raw[0, 0, 1, 0] == 5.0


def test_cell_without_valid_repetitions_stays_missing_after_collapse() -> None:
    assembler = ResultAssembler(GRID, repetitions=2)
    assembler.ingest(_task((0, 1), 0), {"x": 1.0})
    assembler.ingest(_task((0, 1), 1), {"x": 3.0})
    for r in range(2):
        assembler.ingest(
            _task((1, 1), r),
            TrialFailure(combination=(1, 1), repetition=r, error_type="RuntimeError", message=""),
        )

    values, summary = assembler.finalize(raw=False)

    assert values[0, 1, 0] == 2.0
    assert np.isnan(values[1, 1, 0])
    assert summary.missing_cells == 5


def test_schema_mismatch_is_recorded_as_failure() -> None:
    assembler = ResultAssembler(GRID, repetitions=1)
    assembler.ingest(_task((0, 0), 0), {"x": 1.0, "y": 2.0})
    assembler.ingest(_task((0, 1), 0), {"x": 1.0})
    assembler.ingest(_task((0, 2), 0), {"x": "no es número", "y": 1.0})

    values, summary = assembler.finalize()

    assert summary.failure_count == 2
    assert summary.failures[0].error_type == "SchemaMismatch"
    assert np.isnan(values[0, 1, 0]).all()


def test_explicit_schema_is_fixed_before_ingestion() -> None:
    assembler = ResultAssembler(GRID, repetitions=1, schema=ResultSchema(("y", "x")))

    assert assembler.shape == (2, 3, 1, 2)
    assembler.ingest(_task((0, 0), 0), {"x": 1.0, "y": 2.0})
    values, summary = assembler.finalize()

    assert summary.fields == ("y", "x")
    np.testing.assert_array_equal(values[0, 0, 0], [2.0, 1.0])


def test_all_failed_run_returns_empty_field_axis() -> None:
    assembler = ResultAssembler(GRID, repetitions=1)
    assembler.ingest(
        _task((0, 0), 0),
        TrialFailure(combination=(0, 0), repetition=0, error_type="ValueError", message=""),
    )

    values, summary = assembler.finalize()

    assert values.shape == (2, 3, 1, 0)
    assert summary.fields == ()


def test_schema_validation_errors() -> None:
    with pytest.raises(ConfigurationError):
        ResultSchema(("x", "x"))
    with pytest.raises(SchemaMismatch):
        ResultSchema(("x",)).validate({"z": 1})


def test_finalize_twice_is_rejected() -> None:
    assembler = ResultAssembler(GRID, repetitions=1)
    assembler.finalize()

    with pytest.raises(RuntimeError):
        assembler.finalize()


def test_collapse_and_reduce_present_keep_missing() -> None:
    values = np.array([[1.0, 3.0], [np.nan, np.nan], [2.0, np.nan]])

    collapsed = collapse_repetitions(values, axis=-1)

    np.testing.assert_array_equal(collapsed, [2.0, np.nan, 2.0])
    assert np.isnan(reduce_present(values[1], np.median))
    assert reduce_present(values[0], np.max) == 3.0
    with pytest.raises(AggregationError):
        reduce_present(values[0], lambda x: x)
