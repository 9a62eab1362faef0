"""Taxonomía de errores del motor de estudios Monte Carlo."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Tuple


class SimStudyError(Exception):
    """Base de todos los errores propios del paquete."""


class ConfigurationError(SimStudyError, ValueError):
    """Configuración inválida detectada antes de ejecutar ningún trial."""


class AggregationError(ConfigurationError):
    """Una celda del pivot no resuelve a exactamente una coordenada del array."""


class SchemaMismatch(SimStudyError):
    """Un trial devolvió un conjunto de campos distinto al esquema fijado."""

    def __init__(self, expected: Tuple[str, ...], received: Tuple[str, ...]) -> None:
        self.expected = tuple(expected)
        self.received = tuple(received)
        super().__init__(
            f"Campos esperados {list(self.expected)}, recibidos {list(self.received)}"
        )


@dataclass(frozen=True)
class TrialFailure:
    """Marcador de fallo de un trial concreto.

    No es una excepción: se devuelve como resultado de la celda y el
    ensamblador lo contabiliza como celda ``missing``.
    """

    combination: Tuple[int, ...]
    repetition: int
    error_type: str
    message: str
    params: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        *,
        combination: Tuple[int, ...],
        repetition: int,
        params: Dict[str, Any] | None = None,
    ) -> "TrialFailure":
        return cls(
            combination=tuple(combination),
            repetition=int(repetition),
            error_type=type(exc).__name__,
            message=str(exc),
            params=dict(params or {}),
        )

    def describe(self) -> str:
        return (
            f"combinación={self.combination} repetición={self.repetition} "
            f"params={self.params} -> {self.error_type}: {self.message}"
        )
