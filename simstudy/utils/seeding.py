from __future__ import annotations

import time
from typing import Sequence

import numpy as np


def resolve_base_seed(seed: int | None = None) -> int:
    """Devuelve la seed base del estudio.

    Si no se pasa seed, se genera una a partir del tiempo actual en milisegundos
    para que quede registrada en los metadatos y el estudio pueda repetirse.
    """

    return int(seed) if seed is not None else int(time.time() * 1000) % (2**32)


def derive_task_seed(base_seed: int, combination: Sequence[int], repetition: int) -> int:
    """Seed independiente y reproducible para un par (combinación, repetición).

    No toca los generadores globales de ``random`` ni de NumPy: cada trial
    recibe su seed y construye su propio generador.
    """

    sequence = np.random.SeedSequence(
        entropy=int(base_seed), spawn_key=(*map(int, combination), int(repetition))
    )
    return int(sequence.generate_state(1, dtype=np.uint32)[0])
