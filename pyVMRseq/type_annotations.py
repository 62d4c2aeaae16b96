"""
Type annotations for improved static type checking with mypy.

This module provides TypedDicts, NamedTuples and other custom type definitions for use in
pyVMRseq to improve static type checking and IDE support.
"""

from typing import TypedDict, Tuple, Union, Callable, Any, NamedTuple
import numpy as np
import pandas as pd

# Common types used across the codebase
Chromosome = Union[str, int]
SiteIndex = int
BetaPars = Tuple[float, float]
MethylationCount = np.ndarray
CoverageCount = np.ndarray
UnitFunction = Callable[..., Any]

class PriorParams(NamedTuple):
    """Beta shape parameters (alpha, beta) of the unmethylated and methylated populations."""
    pars_u: BetaPars
    pars_m: BetaPars

class OptimControl(NamedTuple):
    """Settings of the prevalence optimizer, see optim_control()."""
    inits: Tuple[float, ...]
    eta: float
    epsilon: float
    max_iter: int
    max_backtrack: int
    pi_bounds: Tuple[float, float]

# TypedDicts for structured return types
class PrevalenceFit(TypedDict):
    pi: float
    loglik: float
    n_iter: int
    converged: bool

class CRFitDiagnostic(TypedDict):
    cr_index: int
    pi: float
    loglik: float
    n_iter: int
    converged: bool
    n_vmr: int
    message: str

class VMRseqResult(TypedDict, total=False):
    sites: pd.DataFrame
    vmr_ranges: pd.DataFrame
    cr_ranges: pd.DataFrame
    alpha: float
    var_cutoff: float
    bb_params: PriorParams
    cr_fits: pd.DataFrame
