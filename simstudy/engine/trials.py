"""Ejecución aislada de un trial del usuario.

El runner es pura fontanería: llama a la función del usuario con los
parámetros de la combinación como argumentos con nombre y convierte cualquier
excepción en un :class:`~simstudy.errors.TrialFailure`, de modo que una celda
defectuosa nunca aborta el estudio completo.
"""

from __future__ import annotations

import inspect
import logging
import pickle
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Tuple, Union

from simstudy.errors import ConfigurationError, TrialFailure

logger = logging.getLogger(__name__)

TrialFunction = Callable[..., Mapping[str, Any]]
TrialResult = Dict[str, Any]

SEED_ARGUMENT = "seed"


@dataclass(frozen=True)
class TrialTask:
    """Descriptor de una tarea: qué combinación, qué repetición y con qué valores."""

    task_id: int
    combination: Tuple[int, ...]
    repetition: int
    params: Dict[str, Any]
    seed: int | None = None


@dataclass(frozen=True)
class WorkerContext:
    """Paquete de solo lectura que se envía a cada worker.

    Contiene la función de trial y los objetos auxiliares exportados de forma
    explícita. Debe ser serializable con ``pickle`` cuando se usa más de un
    proceso.
    """

    trial_fn: TrialFunction
    auxiliary: Mapping[str, Any] = field(default_factory=dict)
    pass_seed: bool = False

    @classmethod
    def build(
        cls, trial_fn: TrialFunction, auxiliary: Mapping[str, Any] | None = None
    ) -> "WorkerContext":
        return cls(
            trial_fn=trial_fn,
            auxiliary=dict(auxiliary or {}),
            pass_seed=accepts_argument(trial_fn, SEED_ARGUMENT),
        )

    def ensure_picklable(self) -> None:
        """Comprueba que la función y cada objeto exportado se pueden enviar a un worker."""

        targets = [("trial_fn", self.trial_fn)]
        targets += [
            (f"auxiliary_exports['{name}']", value) for name, value in self.auxiliary.items()
        ]
        for label, value in targets:
            try:
                pickle.dumps(value)
            except (pickle.PicklingError, AttributeError, TypeError) as exc:
                raise ConfigurationError(
                    f"{label} ({value!r}) no se puede serializar con pickle; "
                    f"degree > 1 lo requiere: {exc}"
                ) from exc


@dataclass
class TrialOutcome:
    """Resultado etiquetado con la tarea que lo produjo."""

    task: TrialTask
    result: Union[TrialResult, TrialFailure]
    elapsed: float = 0.0

    @property
    def failed(self) -> bool:
        return isinstance(self.result, TrialFailure)


def accepts_argument(fn: Callable[..., Any], name: str) -> bool:
    """Indica si ``fn`` admite el argumento ``name`` (explícito o vía ``**kwargs``)."""

    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        return False
    for param in signature.parameters.values():
        if param.kind is inspect.Parameter.VAR_KEYWORD:
            return True
        if param.name == name and param.kind is not inspect.Parameter.POSITIONAL_ONLY:
            return True
    return False


def run_trial(context: WorkerContext, task: TrialTask) -> TrialOutcome:
    """Ejecuta un trial y devuelve siempre un :class:`TrialOutcome`."""

    kwargs: Dict[str, Any] = {**task.params, **context.auxiliary}
    if context.pass_seed and task.seed is not None:
        kwargs[SEED_ARGUMENT] = task.seed

    start = time.perf_counter()
    try:
        raw = context.trial_fn(**kwargs)
        if not isinstance(raw, Mapping):
            raise TypeError(
                f"La función de trial debe devolver un mapping campo->valor, no {type(raw).__name__}"
            )
        result: Union[TrialResult, TrialFailure] = dict(raw)
    except Exception as exc:
        result = TrialFailure.from_exception(
            exc,
            combination=task.combination,
            repetition=task.repetition,
            params=task.params,
        )
        logger.debug("Trial fallido: %s", result.describe())
    return TrialOutcome(task=task, result=result, elapsed=time.perf_counter() - start)
