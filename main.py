# main.py
"""
Punto de entrada para lanzar un estudio Monte Carlo desde un archivo JSON
y obtener la tabla pivotada de resultados.

Los valores de la línea de comandos tienen prioridad sobre los del archivo
de estudio, y estos sobre los defaults en código.
"""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import Iterable, Sequence

from simstudy.analytics.exporters import export_table_to_csv
from simstudy.analytics.pivot import make_table
from simstudy.config.study_config import TableConfig, load_study_config, split_names
from simstudy.pipeline.study_runner import run_study_from_config


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ejecuta un estudio Monte Carlo sobre un grid")
    parser.add_argument("--config", required=True, help="Archivo JSON con el estudio")
    parser.add_argument("--trial", default=None, help="Función de trial (modulo:funcion o nombre)")
    parser.add_argument("--repetitions", type=int, default=None, help="Repeticiones por celda")
    parser.add_argument("--degree", type=int, default=None, help="Número de procesos worker")
    parser.add_argument("--seed", type=int, default=None, help="Seed base del estudio")
    parser.add_argument(
        "--max-grid-size", type=int, default=None, help="Máximo de combinaciones permitidas"
    )
    parser.add_argument(
        "--raw",
        default=None,
        choices=["true", "false"],
        help="Conservar el eje de repeticiones (true) o colapsarlo con la media (false)",
    )
    parser.add_argument(
        "--estimate-time",
        action="store_true",
        default=None,
        help="Estimar la duración con una muestra antes de lanzar el estudio",
    )
    parser.add_argument(
        "--save-estimate",
        action="store_true",
        default=None,
        help="Guardar la estimación de tiempo en el directorio de resultados",
    )
    parser.add_argument("--save-results", default=None, help="Ruta base para guardar el array")
    parser.add_argument("--rows", nargs="*", default=None, help="Parámetros en filas (interno primero)")
    parser.add_argument("--cols", nargs="*", default=None, help="Parámetros en columnas (interno primero)")
    parser.add_argument("--digits", type=int, default=None, help="Decimales al renderizar")
    parser.add_argument("--output", default=None, help="CSV donde guardar la tabla")
    parser.add_argument("--verbose", action="store_true", help="Logging a nivel DEBUG")
    return parser.parse_args(argv)


def _get_setting(
    cli_value,
    config: dict,
    key: str,
    default,
    transform=lambda x: x,
):
    if cli_value is not None:
        return cli_value
    if key in config:
        return transform(config[key])
    return default


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    study, table_config = load_study_config(args.config)
    file_values = vars(study)

    study = replace(
        study,
        trial=_get_setting(args.trial, file_values, "trial", None),
        repetitions=_get_setting(args.repetitions, file_values, "repetitions", 1, int),
        degree=_get_setting(args.degree, file_values, "degree", 1, int),
        seed=_get_setting(args.seed, file_values, "seed", None),
        max_grid_size=_get_setting(args.max_grid_size, file_values, "max_grid_size", 1000, int),
        raw=_get_setting(
            None if args.raw is None else args.raw == "true", file_values, "raw", True, bool
        ),
        estimate_time=_get_setting(args.estimate_time, file_values, "estimate_time", False, bool),
        save_estimate=_get_setting(args.save_estimate, file_values, "save_estimate", False, bool),
        save_results=_get_setting(args.save_results, file_values, "save_results", None),
    )

    result = run_study_from_config(study)

    table_config = table_config or TableConfig()
    table_values = vars(table_config)
    rows = split_names(_get_setting(args.rows, table_values, "rows", []))
    cols = split_names(_get_setting(args.cols, table_values, "cols", []))
    if not rows and not cols:
        cols = list(result.metadata.param_names)

    table = make_table(
        result,
        rows=rows,
        cols=cols,
        digits=_get_setting(args.digits, table_values, "digits", 4, int),
        collapse=table_config.collapse,
        transform=table_config.transform,
        partial_grid=table_config.partial_grid,
        width_scale=table_config.width_scale,
        include_metadata=table_config.include_metadata,
        fields=table_config.fields,
        field_layout=table_config.field_layout,
    )
    print(table.to_string())

    if args.output:
        export_table_to_csv(table, args.output)


if __name__ == "__main__":
    main()
