"""Enumeración determinista del producto cartesiano de parámetros."""

from __future__ import annotations

import math
from itertools import product
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence, Sized, Tuple

from simstudy.errors import ConfigurationError

ParameterGrid = Mapping[str, Sequence[Any]]
CombinationIndex = Tuple[int, ...]

DEFAULT_MAX_GRID_SIZE = 1000


def validate_grid(
    grid: ParameterGrid, max_grid_size: int | None = None
) -> Dict[str, Tuple[Any, ...]]:
    """Normaliza el grid a ``{nombre: tupla de valores}`` preservando el orden.

    Rechaza grids vacíos, listas de valores vacías y valores duplicados
    dentro de un mismo parámetro (harían ambigua la selección por valor).
    Con ``max_grid_size`` el tamaño se comprueba con ``len()`` antes de copiar
    ningún valor.
    """

    if not isinstance(grid, Mapping) or not grid:
        raise ConfigurationError("El grid de parámetros debe ser un mapping no vacío")
    if max_grid_size is not None:
        _reject_oversized(_declared_size(grid), max_grid_size)

    normalized: Dict[str, Tuple[Any, ...]] = {}
    for name, values in grid.items():
        if not isinstance(name, str) or not name:
            raise ConfigurationError(f"Nombre de parámetro inválido: {name!r}")
        # un escalar o una cadena equivale a un parámetro fijo
        if isinstance(values, (str, bytes)) or not isinstance(values, Iterable):
            values = [values]
        values = tuple(values)
        if not values:
            raise ConfigurationError(f"El parámetro '{name}' no tiene valores en el grid")
        if len(set(map(repr, values))) != len(values):
            raise ConfigurationError(f"El parámetro '{name}' contiene valores duplicados")
        normalized[name] = values
    return normalized


def _declared_size(grid: ParameterGrid) -> int:
    """Cota inferior del tamaño usando solo ``len()``; los iterables sin longitud cuentan 1."""

    sizes = []
    for values in grid.values():
        if isinstance(values, Sized) and not isinstance(values, (str, bytes)):
            sizes.append(len(values))
        else:
            sizes.append(1)
    return math.prod(sizes)


def _reject_oversized(size: int, max_grid_size: int) -> None:
    if size > max_grid_size:
        raise ConfigurationError(
            f"El grid tiene {size} combinaciones y supera el máximo permitido ({max_grid_size})"
        )


def grid_shape(grid: ParameterGrid) -> Tuple[int, ...]:
    return tuple(len(values) for values in grid.values())


def grid_size(grid: ParameterGrid) -> int:
    """Número de celdas del grid (producto de longitudes)."""

    return math.prod(grid_shape(grid))


def check_grid_size(grid: ParameterGrid, max_grid_size: int = DEFAULT_MAX_GRID_SIZE) -> int:
    """Valida el tamaño del grid contra el techo configurado sin materializarlo."""

    size = grid_size(grid)
    if max_grid_size is not None:
        _reject_oversized(size, max_grid_size)
    return size


def iter_combinations(grid: ParameterGrid) -> Iterator[CombinationIndex]:
    """Itera índices de combinación en orden row-major.

    El primer parámetro declarado varía más despacio y el último más deprisa,
    igual que ``itertools.product`` y que el orden C de numpy.
    """

    for index in product(*(range(n) for n in grid_shape(grid))):
        yield index


def combination_params(grid: ParameterGrid, index: CombinationIndex) -> Dict[str, Any]:
    """Traduce un índice de combinación a ``{parámetro: valor}``."""

    return {name: values[pos] for (name, values), pos in zip(grid.items(), index)}


def enumerate_grid(
    grid: ParameterGrid, max_grid_size: int = DEFAULT_MAX_GRID_SIZE
) -> List[CombinationIndex]:
    normalized = validate_grid(grid, max_grid_size)
    check_grid_size(normalized, max_grid_size)
    return list(iter_combinations(normalized))
