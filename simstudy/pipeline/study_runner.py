from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import numpy as np

from simstudy.config.study_config import StudyConfig, resolve_trial
from simstudy.engine.assembler import ResultAssembler, schema_from_fields
from simstudy.engine.grid import (
    DEFAULT_MAX_GRID_SIZE,
    ParameterGrid,
    check_grid_size,
    validate_grid,
)
from simstudy.engine.trials import TrialFunction, WorkerContext
from simstudy.errors import ConfigurationError, TrialFailure
from simstudy.pipeline.dispatcher import (
    TimeEstimate,
    build_tasks,
    estimate_run_time,
    schedule_tasks,
)
from simstudy.utils.seeding import resolve_base_seed
from simstudy.utils.timing import format_duration, timed_step

logger = logging.getLogger(__name__)


@dataclass
class StudyTrace:
    """Traza opcional de la ejecución (``trace=True``)."""

    failures: List[TrialFailure] = field(default_factory=list)
    seeds: Dict[Tuple[Tuple[int, ...], int], int] = field(default_factory=dict)
    durations: Dict[Tuple[Tuple[int, ...], int], float] = field(default_factory=dict)


@dataclass
class StudyMetadata:
    """Resumen del estudio que acompaña al array de resultados."""

    param_names: Tuple[str, ...]
    param_sizes: Tuple[int, ...]
    grid: Dict[str, Tuple[Any, ...]]
    repetitions: int
    fields: Tuple[str, ...]
    raw: bool
    failure_count: int
    missing_cells: int
    elapsed_seconds: float
    degree: int = 1
    base_seed: Optional[int] = None
    timings: Dict[str, float] = field(default_factory=dict)
    time_estimate: Optional[TimeEstimate] = None
    trace: Optional[StudyTrace] = None

    @property
    def n_tasks(self) -> int:
        return int(np.prod(self.param_sizes)) * self.repetitions

    @property
    def axis_names(self) -> Tuple[str, ...]:
        axes = self.param_names + (("rep",) if self.raw else ())
        return axes + ("field",)


class StudyResult(NamedTuple):
    """``(array, metadata)``; se puede desempaquetar directamente."""

    values: np.ndarray
    metadata: StudyMetadata


def _check_auxiliary(grid: Mapping[str, Any], auxiliary: Mapping[str, Any] | None) -> None:
    if not auxiliary:
        return
    clashes = sorted(set(auxiliary) & set(grid))
    if clashes:
        raise ConfigurationError(
            f"Los objetos exportados no pueden llamarse como parámetros del grid: {clashes}"
        )


def run_study(
    trial_fn: TrialFunction,
    repetitions: int,
    grid: ParameterGrid,
    degree: int = 1,
    max_grid_size: int = DEFAULT_MAX_GRID_SIZE,
    raw: bool = True,
    auxiliary_exports: Mapping[str, Any] | None = None,
    estimate_time: bool = False,
    *,
    save_estimate: bool = False,
    seed: int | None = None,
    fields: Sequence[str] | None = None,
    memory_limit_mb: int | None = None,
    trace: bool = False,
    save_results: str | Path | None = None,
) -> StudyResult:
    """Ejecuta ``repetitions`` trials en cada celda del grid y ensambla el array.

    Toda la validación ocurre antes de ejecutar el primer trial. Los trials
    fallidos quedan como celdas ``NaN`` y se cuentan en ``failure_count``;
    un estudio con el 100% de fallos se devuelve igualmente.

    Returns
    -------
    StudyResult
        Array con shape ``(*tamaños_grid, repetitions, n_campos)`` si ``raw``,
        o ``(*tamaños_grid, n_campos)`` con la media por celda si no.
    """

    if repetitions < 1:
        raise ConfigurationError("El número de repeticiones debe ser >= 1")
    if degree < 1:
        raise ConfigurationError("El grado de paralelismo debe ser >= 1")
    if not callable(trial_fn):
        raise ConfigurationError("trial_fn debe ser invocable")

    normalized = validate_grid(grid, max_grid_size)
    size = check_grid_size(normalized, max_grid_size)
    _check_auxiliary(normalized, auxiliary_exports)
    assembler = ResultAssembler(normalized, repetitions, schema=schema_from_fields(fields))

    base_seed = resolve_base_seed(seed)
    context = WorkerContext.build(trial_fn, auxiliary_exports)
    if degree > 1:
        context.ensure_picklable()
    tasks = build_tasks(normalized, repetitions, base_seed=base_seed)
    logger.info(
        "Estudio: %s combinaciones x %s repeticiones = %s tareas (degree=%s)",
        size,
        repetitions,
        len(tasks),
        degree,
    )

    timings: Dict[str, float] = {}
    estimate: TimeEstimate | None = None
    if estimate_time:
        with timed_step(timings, "estimate"):
            estimate = estimate_run_time(
                tasks, context, degree=degree, memory_limit_mb=memory_limit_mb
            )
        if save_estimate:
            from simstudy.analytics.exporters import save_time_estimate

            save_time_estimate(estimate)

    start = time.perf_counter()
    with timed_step(timings, "dispatch"):
        outcomes = schedule_tasks(
            tasks, context, degree=degree, memory_limit_mb=memory_limit_mb
        )

    with timed_step(timings, "assemble"):
        # orden de enumeración: el esquema implícito no depende del orden de llegada
        outcomes.sort(key=lambda outcome: outcome.task.task_id)
        for outcome in outcomes:
            assembler.ingest_outcome(outcome)
        values, summary = assembler.finalize(raw=raw)
    elapsed = time.perf_counter() - start

    study_trace: StudyTrace | None = None
    if trace:
        study_trace = StudyTrace(
            failures=list(summary.failures),
            seeds={(o.task.combination, o.task.repetition): o.task.seed for o in outcomes},
            durations={(o.task.combination, o.task.repetition): o.elapsed for o in outcomes},
        )

    metadata = StudyMetadata(
        param_names=summary.param_names,
        param_sizes=summary.param_sizes,
        grid=normalized,
        repetitions=summary.repetitions,
        fields=summary.fields,
        raw=summary.raw,
        failure_count=summary.failure_count,
        missing_cells=summary.missing_cells,
        elapsed_seconds=elapsed,
        degree=degree,
        base_seed=base_seed,
        timings=timings,
        time_estimate=estimate,
        trace=study_trace,
    )

    if summary.failure_count == len(tasks):
        logger.warning("Todos los trials (%s) fallaron", len(tasks))
    logger.info(
        "Estudio terminado en %s; fallos: %s/%s",
        format_duration(elapsed),
        summary.failure_count,
        len(tasks),
    )

    result = StudyResult(values=values, metadata=metadata)
    if save_results is not None:
        from simstudy.analytics.exporters import save_study_results

        save_study_results(result, save_results)
    return result


def run_study_from_config(
    config: StudyConfig, trial_fn: TrialFunction | None = None
) -> StudyResult:
    """Ejecuta un estudio descrito por un :class:`StudyConfig`."""

    if trial_fn is None:
        if not config.trial:
            raise ConfigurationError("La configuración no indica función de trial")
        trial_fn = resolve_trial(config.trial)

    return run_study(
        trial_fn,
        config.repetitions,
        config.grid,
        degree=config.degree,
        max_grid_size=config.max_grid_size,
        raw=config.raw,
        auxiliary_exports=config.auxiliary_exports,
        estimate_time=config.estimate_time,
        save_estimate=config.save_estimate,
        seed=config.seed,
        fields=config.fields,
        memory_limit_mb=config.memory_limit_mb,
        trace=config.trace,
        save_results=config.save_results,
    )
