"""Ensamblado de resultados de trials en el array N-dimensional canónico.

Layout del array crudo: ``(param_1, ..., param_k, repetición, campo)``.
En modo colapsado desaparece el eje de repetición: ``(param_1, ..., param_k, campo)``.
Las celdas sin valor se representan con ``NaN``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, List, Mapping, Sequence, Tuple, Union

import numpy as np

from simstudy.engine.grid import ParameterGrid, grid_shape
from simstudy.engine.trials import TrialOutcome, TrialResult, TrialTask
from simstudy.errors import AggregationError, ConfigurationError, SchemaMismatch, TrialFailure

logger = logging.getLogger(__name__)

MISSING = np.nan
REPETITION_AXIS = -2


@dataclass(frozen=True)
class ResultSchema:
    """Conjunto ordenado de campos que debe devolver cada trial."""

    fields: Tuple[str, ...]

    def __post_init__(self) -> None:
        if len(set(self.fields)) != len(self.fields):
            raise ConfigurationError(f"Campos de resultado duplicados: {list(self.fields)}")
        for name in self.fields:
            if not isinstance(name, str) or not name:
                raise ConfigurationError(f"Nombre de campo inválido: {name!r}")

    @classmethod
    def from_result(cls, result: Mapping[str, Any]) -> "ResultSchema":
        return cls(fields=tuple(result.keys()))

    def __len__(self) -> int:
        return len(self.fields)

    def validate(self, result: Mapping[str, Any]) -> np.ndarray:
        """Comprueba el conjunto de campos y devuelve los valores en orden del esquema."""

        received = tuple(result.keys())
        if set(received) != set(self.fields):
            raise SchemaMismatch(self.fields, received)
        return np.array([float(result[name]) for name in self.fields], dtype=float)


@dataclass
class AssemblySummary:
    param_names: Tuple[str, ...]
    param_sizes: Tuple[int, ...]
    repetitions: int
    fields: Tuple[str, ...]
    raw: bool
    failure_count: int
    missing_cells: int
    failures: List[TrialFailure] = field(default_factory=list)


class ResultAssembler:
    """Coloca cada resultado en su celda según la etiqueta de su tarea.

    El orden de llegada es irrelevante para los valores. El esquema se fija en
    la construcción (``schema``) o con el primer trial correcto ingerido; a
    partir de ahí cada resultado se valida contra él.
    """

    def __init__(
        self,
        grid: ParameterGrid,
        repetitions: int,
        schema: ResultSchema | None = None,
    ) -> None:
        if repetitions < 1:
            raise ConfigurationError("El número de repeticiones debe ser >= 1")
        self.param_names: Tuple[str, ...] = tuple(grid.keys())
        self.param_sizes: Tuple[int, ...] = grid_shape(grid)
        self.repetitions = int(repetitions)
        self.schema: ResultSchema | None = None
        self.failures: List[TrialFailure] = []
        self._values: np.ndarray | None = None
        self._finalized = False
        if schema is not None:
            self._lock_schema(schema)

    @property
    def failure_count(self) -> int:
        return len(self.failures)

    @property
    def shape(self) -> Tuple[int, ...] | None:
        if self.schema is None:
            return None
        return (*self.param_sizes, self.repetitions, len(self.schema))

    def _lock_schema(self, schema: ResultSchema) -> None:
        self.schema = schema
        self._values = np.full(self.shape, MISSING, dtype=float)
        logger.debug("Esquema de resultados fijado: %s", list(schema.fields))

    def _record_failure(self, failure: TrialFailure) -> None:
        self.failures.append(failure)
        logger.warning("Trial fallido: %s", failure.describe())

    def ingest(self, task: TrialTask, result: Union[TrialResult, TrialFailure]) -> None:
        if self._finalized:
            raise RuntimeError("El ensamblador ya fue finalizado")
        if isinstance(result, TrialFailure):
            self._record_failure(result)
            return

        if self.schema is None:
            try:
                self._lock_schema(ResultSchema.from_result(result))
            except ConfigurationError as exc:
                self._record_failure(
                    TrialFailure.from_exception(
                        exc, combination=task.combination, repetition=task.repetition, params=task.params
                    )
                )
                return

        try:
            values = self.schema.validate(result)
        except (SchemaMismatch, TypeError, ValueError) as exc:
            self._record_failure(
                TrialFailure.from_exception(
                    exc, combination=task.combination, repetition=task.repetition, params=task.params
                )
            )
            return

        self._values[(*task.combination, task.repetition)] = values

    def ingest_outcome(self, outcome: TrialOutcome) -> None:
        self.ingest(outcome.task, outcome.result)

    def finalize(self, raw: bool = True) -> Tuple[np.ndarray, AssemblySummary]:
        """Cierra el ensamblado y devuelve el array (inmutable) y su resumen."""

        if self._finalized:
            raise RuntimeError("El ensamblador ya fue finalizado")
        self._finalized = True

        if self.schema is None:
            logger.warning("Ningún trial terminó correctamente; el array no tiene campos")
            self._lock_schema(ResultSchema(fields=()))

        values = self._values if raw else collapse_repetitions(self._values)
        missing_cells = int(np.isnan(values).sum())
        if not raw and missing_cells:
            logger.warning(
                "%s celdas sin ninguna repetición válida quedan como missing", missing_cells
            )

        values.flags.writeable = False
        summary = AssemblySummary(
            param_names=self.param_names,
            param_sizes=self.param_sizes,
            repetitions=self.repetitions,
            fields=self.schema.fields,
            raw=raw,
            failure_count=self.failure_count,
            missing_cells=missing_cells,
            failures=list(self.failures),
        )
        return values, summary


def collapse_repetitions(values: np.ndarray, axis: int = REPETITION_AXIS) -> np.ndarray:
    """Media sobre las repeticiones no-missing; sin ninguna, la celda queda missing."""

    present = ~np.isnan(values)
    counts = present.sum(axis=axis)
    totals = np.where(present, values, 0.0).sum(axis=axis)
    with np.errstate(invalid="ignore", divide="ignore"):
        means = totals / counts
    return np.where(counts > 0, means, MISSING)


def reduce_present(samples: np.ndarray, reduction: Callable[[np.ndarray], Any]) -> float:
    """Aplica ``reduction`` a los valores presentes de un vector; vacío -> missing."""

    samples = np.asarray(samples, dtype=float)
    present = samples[~np.isnan(samples)]
    if present.size == 0:
        return MISSING
    reduced = np.asarray(reduction(present), dtype=float)
    if reduced.size != 1:
        raise AggregationError(
            f"La reducción debe devolver un escalar; devolvió {reduced.size} valores"
        )
    return float(reduced.reshape(-1)[0])


def schema_from_fields(fields: Sequence[str] | None) -> ResultSchema | None:
    if fields is None:
        return None
    if isinstance(fields, str):
        fields = [fields]
    return ResultSchema(fields=tuple(fields))
