"""Configuración de estudios cargada desde archivos JSON."""

from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from simstudy.engine.grid import DEFAULT_MAX_GRID_SIZE
from simstudy.engine.registries import load_plugin_entrypoints, trial_registry
from simstudy.engine.trials import TrialFunction
from simstudy.errors import ConfigurationError
from simstudy.trials import examples as _builtin_trials  # noqa: F401 - registra trials de referencia

logger = logging.getLogger(__name__)


@dataclass
class StudyConfig:
    """Todos los parámetros de ``run_study`` salvo la función de trial."""

    repetitions: int
    grid: Dict[str, List[Any]]
    trial: Optional[str] = None
    degree: int = 1
    max_grid_size: int = DEFAULT_MAX_GRID_SIZE
    raw: bool = True
    estimate_time: bool = False
    save_estimate: bool = False
    seed: Optional[int] = None
    fields: Optional[List[str]] = None
    memory_limit_mb: Optional[int] = None
    trace: bool = False
    save_results: Optional[Path] = None
    auxiliary_exports: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if int(self.repetitions) < 1:
            raise ConfigurationError("repetitions debe ser >= 1")
        if int(self.degree) < 1:
            raise ConfigurationError("degree debe ser >= 1")
        self.repetitions = int(self.repetitions)
        self.degree = int(self.degree)
        if self.save_results is not None:
            self.save_results = Path(self.save_results)


@dataclass
class TableConfig:
    """Parámetros de ``make_table`` declarados en el archivo de estudio."""

    rows: List[str] = field(default_factory=list)
    cols: List[str] = field(default_factory=list)
    digits: int = 4
    collapse: Any = None
    transform: Any = None
    partial_grid: Optional[Dict[str, List[Any]]] = None
    width_scale: float = 1.0
    include_metadata: bool = True
    fields: Optional[List[str]] = None
    field_layout: str = "columns"


def _build(cls, payload: Mapping[str, Any], source: Path):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(payload) - known)
    if unknown:
        raise ConfigurationError(f"Claves desconocidas en {source}: {', '.join(unknown)}")
    try:
        return cls(**payload)
    except TypeError as exc:
        raise ConfigurationError(f"Configuración inválida en {source}: {exc}") from exc


def load_study_config(path: str | Path) -> tuple[StudyConfig, Optional[TableConfig]]:
    """Lee un archivo JSON con una sección de estudio y, opcionalmente, ``table``.

    Raises
    ------
    FileNotFoundError
        Si el archivo no existe.
    ConfigurationError
        Si el JSON es inválido o contiene claves desconocidas.
    """

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Archivo de estudio no encontrado: {config_path}")

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"JSON inválido en {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigurationError(f"{config_path} debe contener un objeto JSON")

    table_payload = payload.pop("table", None)
    study = _build(StudyConfig, payload, config_path)
    table = _build(TableConfig, table_payload, config_path) if table_payload is not None else None
    logger.info("Estudio cargado desde %s (trial=%s)", config_path, study.trial)
    return study, table


def resolve_trial(ref: str) -> TrialFunction:
    """Resuelve ``"paquete.modulo:funcion"`` o un nombre del registro de trials."""

    if ":" not in ref:
        load_plugin_entrypoints()
        return trial_registry.get(ref)

    module_name, _, attr = ref.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"No se pudo importar el módulo '{module_name}': {exc}") from exc

    target: Any = module
    for part in attr.split("."):
        if not hasattr(target, part):
            raise ConfigurationError(f"'{module_name}' no define '{attr}'")
        target = getattr(target, part)
    if not callable(target):
        raise ConfigurationError(f"'{ref}' no es invocable")
    return target


def split_names(values: Sequence[str] | str | None) -> List[str]:
    """Normaliza listas de nombres de CLI (``a,b`` o ``a b``)."""

    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    names: List[str] = []
    for value in values:
        names.extend(part.strip() for part in value.split(",") if part.strip())
    return names
