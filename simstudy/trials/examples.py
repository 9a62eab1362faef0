"""Funciones de trial de referencia.

Viven a nivel de módulo para poder enviarse a procesos worker con ``pickle``.
"""

from __future__ import annotations

import math

import numpy as np

from simstudy.engine.registries import trial_registry

# Cuantil 0.975 de la normal estándar
Z_CRITICAL_5PCT = 1.959963984540054


@trial_registry.register("z_test")
def z_test_decision(n: int, loc: float, scale: float, seed: int | None = None) -> dict:
    """Rechazo (1) o no (0) de H0: mu = 0 con un z-test bilateral al 5%."""

    rng = np.random.default_rng(seed)
    sample = rng.normal(loc=loc, scale=scale, size=int(n))
    stat = math.sqrt(n) * sample.mean() / sample.std(ddof=1)
    return {"decision": int(abs(stat) > Z_CRITICAL_5PCT)}


@trial_registry.register("sample_moments")
def sample_moments(n: int, loc: float, scale: float, seed: int | None = None) -> dict:
    rng = np.random.default_rng(seed)
    sample = rng.normal(loc=loc, scale=scale, size=int(n))
    return {"mean": float(sample.mean()), "sd": float(sample.std(ddof=1))}


def scaled_sum(a: float, b: float, factor: float = 1.0) -> dict:
    """Trial determinista; ``factor`` suele llegar como objeto auxiliar exportado."""

    return {"total": (a + b) * factor}


def failing_when_negative(a: float, b: float) -> dict:
    if a < 0:
        raise ValueError(f"a negativo: {a}")
    return {"total": a + b}
