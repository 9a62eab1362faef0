"""Pivot del array de resultados a una tabla 2-D con índices jerárquicos.

Los parámetros del grid se reparten entre filas y columnas. Dentro de cada eje
el orden declarado va de dentro hacia fuera: el primer nombre es el nivel más
interno (el que varía más deprisa). En el DataFrame resultante los niveles del
``MultiIndex`` aparecen de fuera hacia dentro, como es habitual en pandas.
"""

from __future__ import annotations

import logging
import math
import numbers
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

import numpy as np
import pandas as pd

from simstudy.engine.assembler import MISSING, collapse_repetitions, reduce_present
from simstudy.engine.registries import reduction_registry, resolve_callable, transform_registry
from simstudy.errors import AggregationError, ConfigurationError

logger = logging.getLogger(__name__)

REPETITION_NAME = "rep"
FIELD_LEVEL = "field"
EMPTY_AXIS_LABEL = "value"
FIELD_LAYOUTS = ("columns", "rows", "separate")
# ancho de columna en to_string: (digits + relleno) * width_scale
BASE_COLUMN_PADDING = 4

FieldFunctions = Union[None, str, Callable[..., Any], Mapping[str, Union[str, Callable[..., Any]]]]
AxisLevel = Tuple[str, Sequence[Tuple[int, Any]]]


@dataclass(frozen=True)
class IndexNode:
    """Nodo del árbol de etiquetas de un eje.

    ``position`` es la posición del valor en el grid original; la raíz no
    tiene nombre ni valor.
    """

    name: Optional[str] = None
    value: Any = None
    position: int = -1
    children: Tuple["IndexNode", ...] = ()

    @property
    def is_leaf(self) -> bool:
        return not self.children

    @property
    def depth(self) -> int:
        return 0 if self.is_leaf else 1 + self.children[0].depth

    @property
    def span(self) -> int:
        """Número de hojas bajo el nodo (columnas/filas que ocupa al renderizar)."""

        if self.is_leaf:
            return 1
        return sum(child.span for child in self.children)

    def level_names(self) -> List[str]:
        names: List[str] = []
        node = self
        while node.children:
            node = node.children[0]
            names.append(node.name)
        return names

    def leaves(self) -> Iterator[Tuple["IndexNode", ...]]:
        """Caminos raíz->hoja en orden de lectura (el nivel más interno varía más deprisa)."""

        if self.is_leaf:
            yield ()
            return
        for child in self.children:
            for path in child.leaves():
                yield (child, *path)

    def keys(self) -> List[Tuple[Any, ...]]:
        return [tuple(node.value for node in path) for path in self.leaves()]


def build_index_tree(levels: Sequence[AxisLevel]) -> IndexNode:
    """Construye el árbol de un eje a partir de niveles ordenados de fuera a dentro."""

    def _children(remaining: Sequence[AxisLevel]) -> Tuple[IndexNode, ...]:
        if not remaining:
            return ()
        name, entries = remaining[0]
        below = _children(remaining[1:])
        return tuple(IndexNode(name, value, position, below) for position, value in entries)

    return IndexNode(children=_children(levels))


def _tree_to_index(tree: IndexNode) -> pd.Index:
    names = tree.level_names()
    if not names:
        return pd.Index([EMPTY_AXIS_LABEL])
    keys = tree.keys()
    if len(names) == 1:
        return pd.Index([key[0] for key in keys], name=names[0])
    return pd.MultiIndex.from_tuples(keys, names=names)


@dataclass(frozen=True)
class PivotTable:
    """Tabla pivotada; vista materializada sin referencia al array de origen."""

    frame: pd.DataFrame
    blocks: Dict[str, pd.DataFrame]
    row_tree: IndexNode
    col_tree: IndexNode
    rows: Tuple[str, ...]
    cols: Tuple[str, ...]
    fields: Tuple[str, ...]
    fixed: Dict[str, Any] = field(default_factory=dict)
    field_layout: str = "columns"
    digits: int = 4
    width_scale: float = 1.0
    caption: Optional[str] = None

    @property
    def shape(self) -> Tuple[int, int]:
        return self.frame.shape

    def to_string(self) -> str:
        """Render de texto plano; el redondeo a ``digits`` solo se aplica aquí.

        ``width_scale`` escala el ancho mínimo de cada columna.
        """

        digits = self.digits
        col_space = math.ceil(self.width_scale * (digits + BASE_COLUMN_PADDING))
        text = self.frame.to_string(
            float_format=lambda v: f"{v:.{digits}f}", na_rep="NA", col_space=col_space
        )
        if self.caption:
            text = f"{text}\n\n{self.caption}"
        return text


def _check_names(
    names: Sequence[str], available: Sequence[str], label: str
) -> None:
    unknown = [name for name in names if name not in available]
    if unknown:
        raise ConfigurationError(
            f"Nombres desconocidos en {label}: {unknown}. Disponibles: {list(available)}"
        )


def _validate_axes(rows: Sequence[str], cols: Sequence[str], available: Sequence[str]) -> None:
    _check_names(rows, available, "rows")
    _check_names(cols, available, "cols")
    for label, names in (("rows", rows), ("cols", cols)):
        repeated = sorted({name for name in names if list(names).count(name) > 1})
        if repeated:
            raise ConfigurationError(f"Nombres repetidos en {label}: {repeated}")
    both = [name for name in rows if name in cols]
    if both:
        raise ConfigurationError(f"Parámetros en filas y columnas a la vez: {both}")


def _is_real(value: Any) -> bool:
    return isinstance(value, (numbers.Real, np.floating, np.integer)) and not isinstance(value, bool)


def _restrict(
    name: str, values: Sequence[Any], requested: Sequence[Any]
) -> List[Tuple[int, Any]]:
    """Posiciones retenidas por el partial grid, en el orden original del grid."""

    if isinstance(requested, (str, bytes)) or not isinstance(requested, (Sequence, np.ndarray)):
        requested = [requested]
    if len(requested) == 0:
        raise AggregationError(f"partial_grid['{name}'] no puede estar vacío")

    keep = set()
    for wanted in requested:
        matches = [pos for pos, value in enumerate(values) if value == wanted]
        if not matches and _is_real(wanted):
            matches = [
                pos
                for pos, value in enumerate(values)
                if _is_real(value) and math.isclose(value, wanted, rel_tol=1e-9, abs_tol=1e-12)
            ]
        if not matches:
            raise AggregationError(
                f"El valor {wanted!r} de partial_grid['{name}'] no existe en el grid: {list(values)}"
            )
        keep.update(matches)
    return [(pos, values[pos]) for pos in sorted(keep)]


def _per_field(
    spec: FieldFunctions,
    fields: Sequence[str],
    registry,
    default: Callable[..., Any],
    label: str,
) -> Dict[str, Callable[..., Any]]:
    if spec is None:
        return {name: default for name in fields}
    if isinstance(spec, Mapping):
        _check_names(list(spec), fields, label)
        return {
            name: resolve_callable(spec[name], registry) if name in spec else default
            for name in fields
        }
    fn = resolve_callable(spec, registry)
    return {name: fn for name in fields}


def _apply_transform(block: np.ndarray, transform: Callable[[float], Any]) -> np.ndarray:
    out = np.full(block.shape, MISSING, dtype=float)
    present = ~np.isnan(block)
    out[present] = [float(transform(value)) for value in block[present]]
    return out


def _collapse_axis(
    values: np.ndarray, axis: int, reduction: Callable[[np.ndarray], Any]
) -> np.ndarray:
    if reduction is np.mean:
        return collapse_repetitions(values, axis=axis)
    return np.apply_along_axis(reduce_present, axis, values, reduction)


def _concat_blocks(
    blocks: Dict[str, pd.DataFrame], axis: int, no_inner_levels: bool
) -> pd.DataFrame:
    frames = list(blocks.values())
    if len(frames) == 1 or no_inner_levels:
        return pd.concat(frames, axis=axis)
    return pd.concat(frames, axis=axis, keys=list(blocks), names=[FIELD_LEVEL])


def pivot(
    values: np.ndarray,
    param_names: Sequence[str],
    grid: Mapping[str, Sequence[Any]],
    result_fields: Sequence[str],
    rows: Sequence[str],
    cols: Sequence[str],
    *,
    raw: bool,
    collapse: FieldFunctions = None,
    transform: FieldFunctions = None,
    partial_grid: Mapping[str, Sequence[Any]] | None = None,
    fields: Sequence[str] | None = None,
    field_layout: str = "columns",
) -> PivotTable:
    """Reordena el array en una tabla 2-D.

    Cada parámetro del grid debe estar en ``rows``, en ``cols`` o quedar fijado
    a un único valor (por tener un solo valor en el grid o por ``partial_grid``).
    Con arrays crudos el eje de repeticiones se colapsa con ``collapse`` salvo
    que el pseudo-parámetro ``"rep"`` se coloque en filas o columnas.
    """

    rows, cols = list(rows), list(cols)
    if field_layout not in FIELD_LAYOUTS:
        raise ConfigurationError(f"field_layout debe ser uno de {FIELD_LAYOUTS}")

    axis_names = list(param_names) + ([REPETITION_NAME] if raw else [])
    axis_values: Dict[str, Sequence[Any]] = {name: tuple(grid[name]) for name in param_names}
    if raw:
        axis_values[REPETITION_NAME] = tuple(range(values.shape[len(param_names)]))

    _validate_axes(rows, cols, axis_names)
    partial_grid = dict(partial_grid or {})
    _check_names(list(partial_grid), axis_names, "partial_grid")

    selected = {
        name: _restrict(name, axis_values[name], partial_grid[name])
        if name in partial_grid
        else list(enumerate(axis_values[name]))
        for name in axis_names
    }

    collapse_reps = raw and REPETITION_NAME not in rows and REPETITION_NAME not in cols
    unassigned = [
        name for name in param_names if name not in rows and name not in cols
    ]
    unfixed = [name for name in unassigned if len(selected[name]) != 1]
    if unfixed:
        raise AggregationError(
            f"Los parámetros {unfixed} no están en rows/cols ni fijados a un único valor; "
            "cada celda tendría varias coordenadas"
        )
    fixed = {name: selected[name][0][1] for name in unassigned}

    if fields is None:
        fields = list(result_fields)
    elif isinstance(fields, str):
        fields = [fields]
    _check_names(fields, result_fields, "fields")

    reductions = _per_field(collapse, fields, reduction_registry, np.mean, "collapse")
    transforms = _per_field(transform, fields, transform_registry, None, "transform")
    if not collapse_reps and collapse is not None:
        logger.debug("El array no tiene repeticiones que colapsar; se ignora collapse")

    row_tree = build_index_tree([(name, selected[name]) for name in reversed(rows)])
    col_tree = build_index_tree([(name, selected[name]) for name in reversed(cols)])
    row_index = _tree_to_index(row_tree)
    col_index = _tree_to_index(col_tree)

    # orden final de ejes: filas (fuera->dentro), columnas (fuera->dentro), fijos
    order = list(reversed(rows)) + list(reversed(cols)) + unassigned
    n_rows = len(row_index)
    n_cols = len(col_index)

    blocks: Dict[str, pd.DataFrame] = {}
    for name in fields:
        sub = values[..., list(result_fields).index(name)]
        for axis, axis_name in enumerate(axis_names):
            sub = np.take(sub, [pos for pos, _ in selected[axis_name]], axis=axis)

        remaining = list(axis_names)
        if collapse_reps:
            rep_axis = remaining.index(REPETITION_NAME)
            sub = _collapse_axis(sub, rep_axis, reductions[name])
            remaining.pop(rep_axis)

        sub = np.transpose(sub, [remaining.index(axis_name) for axis_name in order])
        block = sub.reshape(n_rows, n_cols)
        if transforms[name] is not None:
            block = _apply_transform(block, transforms[name])

        block_cols = col_index
        block_rows = row_index
        if not cols and field_layout != "rows":
            block_cols = pd.Index([name], name=FIELD_LEVEL)
        if not rows and field_layout == "rows":
            block_rows = pd.Index([name], name=FIELD_LEVEL)
        blocks[name] = pd.DataFrame(block, index=block_rows, columns=block_cols)

    if not blocks:
        logger.warning("El resultado no tiene campos: ningún trial terminó correctamente")
        frame = pd.DataFrame(MISSING, index=row_index, columns=col_index)
    elif field_layout == "rows":
        frame = _concat_blocks(blocks, axis=0, no_inner_levels=not rows)
    else:
        frame = _concat_blocks(blocks, axis=1, no_inner_levels=not cols)

    return PivotTable(
        frame=frame,
        blocks=blocks,
        row_tree=row_tree,
        col_tree=col_tree,
        rows=tuple(rows),
        cols=tuple(cols),
        fields=tuple(fields),
        fixed=fixed,
        field_layout=field_layout,
    )


def _caption(metadata, fixed: Mapping[str, Any]) -> str:
    parts = [
        f"Repeticiones: {metadata.repetitions}",
        f"Trials fallidos: {metadata.failure_count}",
        f"Celdas missing: {metadata.missing_cells}",
    ]
    if fixed:
        parts.append("Fijos: " + ", ".join(f"{k}={v}" for k, v in fixed.items()))
    return ". ".join(parts) + "."


def make_table(
    result,
    rows: Sequence[str],
    cols: Sequence[str],
    digits: int = 4,
    collapse: FieldFunctions = None,
    transform: FieldFunctions = None,
    partial_grid: Mapping[str, Sequence[Any]] | None = None,
    width_scale: float = 1.0,
    include_metadata: bool = True,
    *,
    fields: Sequence[str] | None = None,
    field_layout: str = "columns",
) -> PivotTable:
    """Construye la tabla de un :class:`~simstudy.pipeline.study_runner.StudyResult`.

    ``digits``, ``width_scale`` e ``include_metadata`` solo afectan a la
    presentación; los valores de la tabla conservan la precisión completa.
    """

    values, metadata = result
    if digits < 0:
        raise ConfigurationError("digits debe ser >= 0")
    if width_scale <= 0:
        raise ConfigurationError("width_scale debe ser > 0")

    table = pivot(
        values,
        metadata.param_names,
        metadata.grid,
        metadata.fields,
        rows,
        cols,
        raw=metadata.raw,
        collapse=collapse,
        transform=transform,
        partial_grid=partial_grid,
        fields=fields,
        field_layout=field_layout,
    )

    caption = _caption(metadata, table.fixed) if include_metadata else None
    return PivotTable(
        frame=table.frame,
        blocks=table.blocks,
        row_tree=table.row_tree,
        col_tree=table.col_tree,
        rows=table.rows,
        cols=table.cols,
        fields=table.fields,
        fixed=table.fixed,
        field_layout=table.field_layout,
        digits=int(digits),
        width_scale=float(width_scale),
        caption=caption,
    )
