# simstudy/config/paths.py

from __future__ import annotations

import os
from pathlib import Path

RESULTS_DIR_ENV = "SIMSTUDY_RESULTS_DIR"

ESTIMATE_FILENAME = "time_estimate.json"


def results_dir() -> Path:
    """Carpeta donde se guardan estimaciones y resultados.

    Por defecto es el directorio de trabajo actual; la variable de entorno
    ``SIMSTUDY_RESULTS_DIR`` permite redirigirla.
    """

    override = os.environ.get(RESULTS_DIR_ENV)
    path = Path(override) if override else Path.cwd()
    path.mkdir(parents=True, exist_ok=True)
    return path
