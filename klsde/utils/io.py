"""
Flat tabular interchange: observations, draws and comparison records.

All files are CSV, written with pandas and keyed by experiment name inside an
output directory.
"""

import os
from dataclasses import asdict
from typing import Dict, Iterable, Optional

import numpy as np
import pandas as pd

from .data_generation import Observations, TimeGrid


def observations_frame(obs: Observations) -> pd.DataFrame:
    """Columns ``time``, ``y`` and, for simulated data, ``x0, x1, ...``."""
    frame = pd.DataFrame({'time': obs.times, 'y': obs.y})
    if obs.x is not None:
        for j in range(obs.x.shape[1]):
            frame[f'x{j}'] = obs.x[:, j]
    return frame


def save_observations(obs: Observations, path: str) -> str:
    observations_frame(obs).to_csv(path, index=False)
    return path


def load_observations(path: str, T: Optional[float] = None, name: str = '') -> Observations:
    """
    Read observations written by ``save_observations``.

    ``T`` defaults to the last observation time.
    """
    frame = pd.read_csv(path)
    missing = {'time', 'y'} - set(frame.columns)
    if missing:
        raise ValueError(f"{path} is missing columns {sorted(missing)}")
    times = frame['time'].to_numpy(dtype=float)
    latent = sorted(c for c in frame.columns if c.startswith('x') and c[1:].isdigit())
    x = frame[latent].to_numpy(dtype=float) if latent else None
    grid = TimeGrid(times, T if T is not None else float(times[-1]))
    return Observations(grid, frame['y'].to_numpy(dtype=float), x, name=name)


def draws_frame(fit) -> pd.DataFrame:
    """
    Long table of posterior draws.

    Columns: ``value``, ``iteration``, ``chain``, ``N``, ``parameter``. Vector
    sites are split per component, e.g. ``Z[1]``, ``Z[2]``.
    """
    frames = []
    for name, values in fit.draws.items():
        chains, draws = values.shape[:2]
        flat = values.reshape(chains, draws, -1)
        for j in range(flat.shape[2]):
            label = name if values.ndim == 2 else f'{name}[{j + 1}]'
            frames.append(pd.DataFrame({
                'value': flat[:, :, j].ravel(),
                'iteration': np.tile(np.arange(draws), chains),
                'chain': np.repeat(np.arange(chains), draws),
                'N': fit.N,
                'parameter': label,
            }))
    return pd.concat(frames, ignore_index=True)


def save_sweep(
    name: str,
    output_dir: str,
    records: Iterable,
    fits: Optional[Dict] = None,
    obs: Optional[Observations] = None
) -> Dict[str, str]:
    """
    Persist the artifacts of a sweep.

    Writes ``{name}_records.csv``, ``{name}_draws.csv`` (posterior draws of
    every cell, with a ``trial`` column) and ``{name}_data.csv``.

    Returns
    -------
    dict
        Paths of the written files.
    """
    os.makedirs(output_dir, exist_ok=True)
    paths = {}

    paths['records'] = os.path.join(output_dir, f'{name}_records.csv')
    pd.DataFrame([asdict(record) for record in records]).to_csv(paths['records'], index=False)

    if fits:
        frames = []
        for (N, trial), cell in sorted(fits.items()):
            if 'posterior' in cell:
                frame = draws_frame(cell['posterior'])
                frame['trial'] = trial
                frames.append(frame)
        if frames:
            paths['draws'] = os.path.join(output_dir, f'{name}_draws.csv')
            pd.concat(frames, ignore_index=True).to_csv(paths['draws'], index=False)

    if obs is not None:
        paths['data'] = save_observations(obs, os.path.join(output_dir, f'{name}_data.csv'))
    return paths
