from __future__ import annotations

from importlib.metadata import EntryPoints, entry_points
from typing import Any, Callable, Dict, Generic, Iterable, Mapping, Optional, TypeVar, Union

import numpy as np

from simstudy.errors import ConfigurationError

T = TypeVar("T")


class Registry(Generic[T]):
    """Registro simple de funciones por nombre (reducciones, transformaciones, trials).

    Permite referenciar funciones desde archivos de configuración o CLI.
    Los nombres se almacenan en minúsculas para evitar problemas
    de mayúsculas/minúsculas.
    """

    def __init__(self, kind: str) -> None:
        self.kind = kind
        self._items: Dict[str, Callable[..., T]] = {}

    def register(self, name: Optional[str] = None) -> Callable[[Callable[..., T]], Callable[..., T]]:
        """Decorator para registrar una función.

        Si ``name`` es ``None`` se usa el nombre de la función.
        """

        def decorator(factory: Callable[..., T]) -> Callable[..., T]:
            key = (name or factory.__name__).lower()
            self._items[key] = factory
            return factory

        return decorator

    def add(self, name: str, factory: Callable[..., T]) -> None:
        self._items[name.lower()] = factory

    def get(self, name: str) -> Callable[..., T]:
        key = name.lower()
        if key not in self._items:
            available = ", ".join(sorted(self._items)) or "<vacío>"
            raise ConfigurationError(
                f"No se encontró {self.kind} con nombre '{name}'. Disponible: {available}"
            )
        return self._items[key]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def names(self) -> Iterable[str]:
        return sorted(self._items)

    def load_entrypoints(self, group: str) -> None:
        """Carga funciones registradas vía entry points del grupo ``group``."""

        eps: EntryPoints = entry_points()
        selected = eps.select(group=group) if hasattr(eps, "select") else eps.get(group, [])

        for ep in selected:
            if ep.name.lower() in self._items:
                continue
            self._items[ep.name.lower()] = ep.load()


Reduction = Callable[[np.ndarray], float]
Transform = Callable[[float], float]

reduction_registry: Registry[float] = Registry("reducción")
transform_registry: Registry[float] = Registry("transformación")
trial_registry: Registry[Mapping[str, Any]] = Registry("función de trial")

reduction_registry.add("mean", np.mean)
reduction_registry.add("median", np.median)
reduction_registry.add("min", np.min)
reduction_registry.add("max", np.max)
reduction_registry.add("sum", np.sum)
reduction_registry.add("std", lambda x: np.std(x, ddof=1) if len(x) > 1 else np.nan)
reduction_registry.add("var", lambda x: np.var(x, ddof=1) if len(x) > 1 else np.nan)


@transform_registry.register()
def identity(value: float) -> float:
    return value


@transform_registry.register()
def percent(value: float) -> float:
    return value * 100.0


transform_registry.add("abs", abs)
transform_registry.add("log", np.log)
transform_registry.add("sqrt", np.sqrt)


ENTRYPOINT_GROUPS = {
    "reductions": "simstudy.reductions",
    "transforms": "simstudy.transforms",
    "trials": "simstudy.trials",
}


def load_plugin_entrypoints() -> None:
    """Carga todos los plugins declarados vía entry points."""

    reduction_registry.load_entrypoints(ENTRYPOINT_GROUPS["reductions"])
    transform_registry.load_entrypoints(ENTRYPOINT_GROUPS["transforms"])
    trial_registry.load_entrypoints(ENTRYPOINT_GROUPS["trials"])


def resolve_callable(
    spec: Union[str, Callable[..., Any]], registry: Registry[Any]
) -> Callable[..., Any]:
    """Acepta un callable o un nombre registrado."""

    if callable(spec):
        return spec
    if isinstance(spec, str):
        return registry.get(spec)
    raise ConfigurationError(f"Se esperaba un callable o un nombre de {registry.kind}: {spec!r}")
