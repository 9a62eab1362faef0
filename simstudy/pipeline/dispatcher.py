"""Reparto de trials entre unidades de ejecución.

Construye las tareas (combinación, repetición) de un estudio y las ejecuta en
serie o en paralelo con `multiprocessing.Pool`. Cada resultado vuelve
etiquetado con su tarea, de modo que el orden de llegada no importa.
"""

from __future__ import annotations

import logging
import multiprocessing as mp
import time
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from functools import partial

from simstudy.engine.grid import ParameterGrid, combination_params, iter_combinations
from simstudy.engine.trials import TrialOutcome, TrialTask, WorkerContext, run_trial
from simstudy.errors import ConfigurationError
from simstudy.utils.seeding import derive_task_seed
from simstudy.utils.timing import format_duration

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATE_SAMPLE_REPETITIONS = 1


def build_tasks(
    grid: ParameterGrid,
    repetitions: int,
    *,
    base_seed: int | None = None,
) -> list[TrialTask]:
    """Genera las tareas en orden de enumeración: combinación fuera, repetición dentro."""

    tasks: list[TrialTask] = []
    for combination in iter_combinations(grid):
        params = combination_params(grid, combination)
        for repetition in range(repetitions):
            seed = None if base_seed is None else derive_task_seed(base_seed, combination, repetition)
            tasks.append(
                TrialTask(
                    task_id=len(tasks),
                    combination=combination,
                    repetition=repetition,
                    params=params,
                    seed=seed,
                )
            )
    return tasks


def _limit_memory(memory_limit_mb: int | None) -> None:
    if memory_limit_mb is None:
        return
    try:
        import resource

        soft = hard = int(memory_limit_mb * 1024 * 1024)
        resource.setrlimit(resource.RLIMIT_AS, (soft, hard))
        logger.info("Límite de memoria aplicado: %s MB", memory_limit_mb)
    except Exception as exc:  # pragma: no cover - dependiente de SO
        logger.warning("No se pudo aplicar límite de memoria: %s", exc)


@contextmanager
def _soft_memory_limit(memory_limit_mb: int | None) -> Iterator[None]:
    """Límite blando en el propio proceso; al salir se restauran los límites previos."""

    if memory_limit_mb is None:
        yield
        return
    try:
        import resource

        previous = resource.getrlimit(resource.RLIMIT_AS)
        soft = int(memory_limit_mb * 1024 * 1024)
        hard = previous[1]
        if hard != resource.RLIM_INFINITY:
            soft = min(soft, hard)
        resource.setrlimit(resource.RLIMIT_AS, (soft, hard))
    except (ImportError, OSError, ValueError) as exc:  # pragma: no cover - dependiente de SO
        logger.warning("No se pudo aplicar límite de memoria: %s", exc)
        yield
        return

    logger.info("Límite de memoria (blando) aplicado: %s MB", memory_limit_mb)
    try:
        yield
    finally:
        resource.setrlimit(resource.RLIMIT_AS, previous)


def _chunksize(n_tasks: int, degree: int) -> int:
    return max(1, n_tasks // (degree * 4))


def schedule_tasks(
    tasks: Sequence[TrialTask],
    context: WorkerContext,
    *,
    degree: int = 1,
    memory_limit_mb: int | None = None,
) -> list[TrialOutcome]:
    """Ejecuta las tareas con ``degree`` workers.

    Con ``degree == 1`` se ejecutan en el propio proceso y en orden de
    enumeración. Con más workers el orden de la lista devuelta es el de
    finalización; cada outcome conserva su tarea.
    """

    if degree < 1:
        raise ConfigurationError("El grado de paralelismo debe ser >= 1")

    if degree == 1 or len(tasks) <= 1:
        with _soft_memory_limit(memory_limit_mb):
            return [run_trial(context, task) for task in tasks]

    worker = partial(run_trial, context)
    with mp.Pool(
        processes=degree, initializer=_limit_memory, initargs=(memory_limit_mb,)
    ) as pool:
        outcomes = list(
            pool.imap_unordered(worker, tasks, chunksize=_chunksize(len(tasks), degree))
        )
    return outcomes


@dataclass
class TimeEstimate:
    """Estimación lineal del tiempo total a partir de una muestra de tareas."""

    sample_tasks: int
    total_tasks: int
    sample_seconds: float
    estimated_seconds: float
    degree: int = 1
    sample_failures: int = 0

    def to_dict(self) -> dict[str, object]:
        return asdict(self)

    def describe(self) -> str:
        return (
            f"{self.sample_tasks} tareas de muestra en {format_duration(self.sample_seconds)}; "
            f"estimado para {self.total_tasks} tareas: {format_duration(self.estimated_seconds)}"
        )


def sample_tasks(
    tasks: Sequence[TrialTask], repetitions: int = DEFAULT_ESTIMATE_SAMPLE_REPETITIONS
) -> list[TrialTask]:
    """Primeras ``repetitions`` repeticiones de cada combinación."""

    return [task for task in tasks if task.repetition < repetitions]


def estimate_run_time(
    tasks: Sequence[TrialTask],
    context: WorkerContext,
    *,
    degree: int = 1,
    sample_repetitions: int = DEFAULT_ESTIMATE_SAMPLE_REPETITIONS,
    memory_limit_mb: int | None = None,
) -> TimeEstimate:
    """Ejecuta una muestra de tareas y extrapola linealmente al total.

    Es puramente orientativo: los valores de la muestra se descartan y solo
    se cuentan sus fallos.
    """

    sample = sample_tasks(tasks, sample_repetitions)
    if not sample:
        return TimeEstimate(0, len(tasks), 0.0, 0.0, degree)

    start = time.perf_counter()
    outcomes = schedule_tasks(sample, context, degree=degree, memory_limit_mb=memory_limit_mb)
    elapsed = time.perf_counter() - start

    estimate = TimeEstimate(
        sample_tasks=len(sample),
        total_tasks=len(tasks),
        sample_seconds=elapsed,
        estimated_seconds=elapsed * len(tasks) / len(sample),
        degree=degree,
        sample_failures=sum(1 for outcome in outcomes if outcome.failed),
    )
    logger.info("Estimación de tiempo: %s", estimate.describe())
    if estimate.sample_failures:
        logger.warning(
            "%s de %s tareas de la muestra fallaron", estimate.sample_failures, len(sample)
        )
    return estimate
