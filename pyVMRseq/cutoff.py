import numpy as np
from pyVMRseq.errors import DataInsufficient
from pyVMRseq.priors import MAX_VARIANCE,draw_cell_levels,level_variance

# Smallest accepted number of simulated sites. At alpha = 0.05 this keeps the standard error of the
# tail probability below 0.0022; the default of 500000 brings it to about 0.0003.
MIN_NUM_SIM = 10000

# Upper bound on simulated cell levels held in memory at once
CHUNK_CELLS = 2000000

def compute_var_cutoff(alpha: float,meth,total,pars_u,pars_m,n_sim: int=500000,seed: int=2023) -> float:
    """
    Compute the variance threshold for candidate regions as the (1-alpha) quantile of a simulated null distribution
    of site variance, i.e. the variance expected at sites where all cells share one methylation state.

    Parameters:
        alpha (float): Significance level, between 0 and 1.
        meth (1D numpy array): Number of methylated cells at each site.
        total (1D numpy array): Number of cells covering each site.
        pars_u (tuple): (alpha, beta) of the beta prior of unmethylated sites.
        pars_m (tuple): (alpha, beta) of the beta prior of methylated sites.
        n_sim (integer, default: 500000): Number of null sites to simulate. Must be at least MIN_NUM_SIM.
        seed (integer, default: 2023): Seed of the random generator, so the cutoff is reproducible.

    Returns:
        float: The variance cutoff.

    Raises:
        DataInsufficient: If no site is covered, no site is covered by more than one cell, or the cutoff reaches
            MAX_VARIANCE so that no site could exceed it.

    Notes:
        Each simulated site takes the coverage n of a randomly drawn observed site, so the null follows the empirical
        coverage distribution. It is methylated with probability equal to the observed fraction of sites with
        methylation level >= 0.5 and unmethylated otherwise. The smoothed levels of its n cells are drawn from the
        matching population (see draw_cell_levels), and their variance across cells (level_variance) is the statistic
        compared against the cutoff.
    """
    assert 0 < alpha < 1, "alpha must be between 0 and 1"
    assert isinstance(n_sim,int), "n_sim must be positive integer"
    if n_sim < MIN_NUM_SIM:
        raise ValueError(f"n_sim must be at least {MIN_NUM_SIM} for a stable quantile estimate, got {n_sim}.")

    meth = np.asarray(meth, dtype='float64')
    total = np.asarray(total, dtype='float64')
    covered = total > 0
    if not covered.any():
        raise DataInsufficient("No site has non-zero coverage, cannot simulate null distribution of variance.")

    cov = total[covered].astype(np.int64)
    if cov.max() < 2:
        raise DataInsufficient("No site is covered by more than one cell, variance across cells is undefined.")
    prop_meth = np.mean(meth[covered] / total[covered] >= 0.5)

    rng = np.random.default_rng(seed)
    n = cov[rng.integers(0, cov.size, size=n_sim)]
    is_meth = rng.random(n_sim) < prop_meth

    n_max = int(n.max())
    chunk = max(1, CHUNK_CELLS // n_max)
    sim_var = np.empty(n_sim)
    for start in range(0, n_sim, chunk):
        rows = slice(start, start + chunk)
        levels = draw_cell_levels(rng, is_meth[rows], n_max, pars_u, pars_m)
        cells = np.arange(n_max)[np.newaxis, :] < n[rows, np.newaxis]
        sim_var[rows] = level_variance(levels, cells)

    cutoff = float(np.quantile(sim_var, 1 - alpha))
    if cutoff >= MAX_VARIANCE:
        raise DataInsufficient(f"Variance cutoff at alpha={alpha} reaches the largest possible variance {MAX_VARIANCE}, coverage is too low to detect variable sites.")
    return cutoff
