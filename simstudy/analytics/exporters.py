"""Exportadores ligeros: estimaciones de tiempo, resultados de estudios y tablas."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Mapping, Tuple

import numpy as np
import pandas as pd

from simstudy.config.paths import ESTIMATE_FILENAME, results_dir
from simstudy.pipeline.dispatcher import TimeEstimate
from simstudy.pipeline.study_runner import StudyMetadata, StudyResult

logger = logging.getLogger(__name__)

# La traza puede ser enorme y tiene claves tupla: no se persiste
_METADATA_SKIP = {"trace"}


def _to_serializable(value: Any) -> Any:
    """Convierte valores anidados a tipos compatibles con JSON."""

    if is_dataclass(value) and not isinstance(value, type):
        return {k: _to_serializable(v) for k, v in asdict(value).items()}

    if isinstance(value, (bool, np.bool_)):
        return bool(value)

    if isinstance(value, np.integer):
        return int(value)

    if isinstance(value, np.floating):
        return None if np.isnan(value) else float(value)

    if isinstance(value, float) and np.isnan(value):
        return None

    if isinstance(value, np.ndarray):
        return [_to_serializable(v) for v in value.tolist()]

    if isinstance(value, Path):
        return str(value)

    if isinstance(value, Mapping):
        return {str(k): _to_serializable(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [_to_serializable(v) for v in list(value)]

    return value


def _ensure_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def save_time_estimate(estimate: TimeEstimate, path: str | Path | None = None) -> Path:
    """Guarda la estimación de tiempo como JSON (por defecto en el directorio de resultados)."""

    output_path = Path(path) if path is not None else results_dir() / ESTIMATE_FILENAME
    _ensure_dir(output_path)
    with open(output_path, "w", encoding="utf-8") as f:
        json.dump(_to_serializable(estimate.to_dict()), f, ensure_ascii=False, indent=2)
    logger.info("Estimación de tiempo guardada en %s", output_path)
    return output_path


def _metadata_payload(metadata: StudyMetadata) -> dict[str, Any]:
    payload = {
        k: v for k, v in vars(metadata).items() if k not in _METADATA_SKIP
    }
    return _to_serializable(payload)


def save_study_results(result: StudyResult, path: str | Path) -> Tuple[Path, Path]:
    """Guarda el array en ``<path>.npz`` y los metadatos en ``<path>.json``."""

    base = Path(path)
    if base.suffix in {".npz", ".json"}:
        base = base.with_suffix("")
    array_path = base.with_suffix(".npz")
    meta_path = base.with_suffix(".json")
    _ensure_dir(array_path)

    np.savez_compressed(array_path, values=np.asarray(result.values))
    with open(meta_path, "w", encoding="utf-8") as f:
        json.dump(_metadata_payload(result.metadata), f, ensure_ascii=False, indent=2)
    logger.info("Resultados guardados en %s y %s", array_path, meta_path)
    return array_path, meta_path


def load_study_results(path: str | Path) -> StudyResult:
    """Reconstruye un :class:`StudyResult` guardado con :func:`save_study_results`."""

    base = Path(path)
    if base.suffix in {".npz", ".json"}:
        base = base.with_suffix("")
    array_path = base.with_suffix(".npz")
    meta_path = base.with_suffix(".json")
    if not array_path.exists() or not meta_path.exists():
        raise FileNotFoundError(f"Resultados no encontrados en {base}")

    with np.load(array_path) as data:
        values = data["values"]
    values.flags.writeable = False

    with open(meta_path, "r", encoding="utf-8") as f:
        payload = json.load(f)

    estimate = payload.get("time_estimate")
    metadata = StudyMetadata(
        param_names=tuple(payload["param_names"]),
        param_sizes=tuple(payload["param_sizes"]),
        grid={name: tuple(vals) for name, vals in payload["grid"].items()},
        repetitions=int(payload["repetitions"]),
        fields=tuple(payload["fields"]),
        raw=bool(payload["raw"]),
        failure_count=int(payload["failure_count"]),
        missing_cells=int(payload["missing_cells"]),
        elapsed_seconds=float(payload["elapsed_seconds"]),
        degree=int(payload.get("degree", 1)),
        base_seed=payload.get("base_seed"),
        timings=dict(payload.get("timings") or {}),
        time_estimate=TimeEstimate(**estimate) if estimate else None,
    )
    return StudyResult(values=values, metadata=metadata)


def results_to_frame(result: StudyResult) -> pd.DataFrame:
    """Formato largo: una fila por celda, una columna por parámetro y por campo."""

    values, metadata = result
    axes = [pd.Index(metadata.grid[name], name=name) for name in metadata.param_names]
    if metadata.raw:
        axes.append(pd.RangeIndex(metadata.repetitions, name="rep"))

    index = pd.MultiIndex.from_product(axes)
    flat = np.asarray(values).reshape(len(index), len(metadata.fields))
    return pd.DataFrame(flat, index=index, columns=list(metadata.fields)).reset_index()


def export_table_to_csv(table, path: str | Path) -> Path:
    """Guarda el ``frame`` de una :class:`~simstudy.analytics.pivot.PivotTable` a CSV."""

    output_path = Path(path)
    _ensure_dir(output_path)
    table.frame.to_csv(output_path)
    logger.info("Tabla exportada a %s", output_path)
    return output_path
